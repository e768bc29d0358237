"""Similarity scoring for product identity decisions.

One formula serves every caller; callers differ only in the threshold:
- CANDIDATE_MATCH (0.7): attach a new listing to an existing product
- MERGE (0.8): merge two catalog products (destructive, so stricter)
- The standalone cleanup job reuses MERGE with an even stricter threshold
  (0.85, see Settings.cleanup_merge_threshold)

Scores are weighted averages of brand / model / title sub-scores, normalized
by the weight actually applied: a missing field adds neither score nor weight.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from pricecatalog.services.registry_cache import RegistrySnapshot
from pricecatalog.services.text_normalizer import calculate_title_similarity


class ScoringMode(Enum):
    """Which decision a score feeds."""

    CANDIDATE_MATCH = "candidate_match"
    MERGE = "merge"


MATCH_THRESHOLD = 0.7
MERGE_THRESHOLD = 0.8

_DEFAULT_THRESHOLDS = {
    ScoringMode.CANDIDATE_MATCH: MATCH_THRESHOLD,
    ScoringMode.MERGE: MERGE_THRESHOLD,
}

BRAND_WEIGHT = 0.3
MODEL_WEIGHT = 0.5
TITLE_WEIGHT = 0.2

# Penalty multiplier for tokens present in only one model string
_UNIQUE_TOKEN_CAP = 0.7
_UNIQUE_TOKEN_STEP = 0.2

_DIGITS = re.compile(r"\d+")


class ProductLike(Protocol):
    brand: str | None
    model: str | None
    name: str


@dataclass
class ExtractedAttributes:
    """Brand/model/title of a listing being matched."""

    brand: str | None
    model: str | None
    title: str | None


def threshold_for(mode: ScoringMode) -> float:
    return _DEFAULT_THRESHOLDS[mode]


def is_match(score: float, mode: ScoringMode, threshold: float | None = None) -> bool:
    """Whether a score clears the mode's threshold (or an explicit override)."""
    return score >= (threshold if threshold is not None else threshold_for(mode))


# ============================================================
# Model similarity
# ============================================================


def _numeric_part(token: str) -> str:
    return "".join(_DIGITS.findall(token))


def _tokens_equivalent(a: str, b: str) -> bool:
    if a == b:
        return True
    digits_a = _numeric_part(a)
    return bool(digits_a) and digits_a == _numeric_part(b)


def context_aware_similarity(model_a: str, model_b: str) -> float:
    """Token Dice coefficient that treats "s21" ~ "s-21" and punishes extra tokens.

    Base score is 2*common / (len_a + len_b). Each token with no equivalent on
    the other side counts as unique, and any unique tokens multiply the base
    by min(0.7, 1 - 0.2*unique), floored at 0. "S21" vs "S21 Ultra" therefore
    scores well below plain overlap, which keeps model tiers apart.
    """
    tokens_a = model_a.lower().split()
    tokens_b = model_b.lower().split()
    if not tokens_a or not tokens_b:
        return 0.0

    common: set[str] = set()
    unique: set[str] = set()
    for ta in tokens_a:
        if any(_tokens_equivalent(ta, tb) for tb in tokens_b):
            common.add(ta)
        else:
            unique.add(ta)
    for tb in tokens_b:
        if not any(_tokens_equivalent(ta, tb) for ta in tokens_a):
            unique.add(tb)

    score = 2.0 * len(common) / (len(tokens_a) + len(tokens_b))
    if unique:
        score *= max(0.0, min(_UNIQUE_TOKEN_CAP, 1.0 - _UNIQUE_TOKEN_STEP * len(unique)))
    return min(1.0, score)


def model_similarity(model_a: str | None, model_b: str | None) -> float:
    """1.0 on case-insensitive equality, else the context-aware score."""
    if not model_a or not model_b:
        return 0.0
    if model_a.strip().lower() == model_b.strip().lower():
        return 1.0
    return context_aware_similarity(model_a, model_b)


# ============================================================
# Weighted scores
# ============================================================


def _weighted_score(
    *,
    brand_a: str | None,
    brand_b: str | None,
    model_a: str | None,
    model_b: str | None,
    title_a: str | None,
    title_b: str | None,
    registry: RegistrySnapshot,
) -> float:
    total = 0.0
    weight = 0.0

    if brand_a and brand_b:
        total += BRAND_WEIGHT * (1.0 if brand_a.strip().lower() == brand_b.strip().lower() else 0.0)
        weight += BRAND_WEIGHT

    if model_a and model_b:
        total += MODEL_WEIGHT * model_similarity(model_a, model_b)
        weight += MODEL_WEIGHT

    if title_a and title_b:
        total += TITLE_WEIGHT * calculate_title_similarity(title_a, title_b, registry=registry)
        weight += TITLE_WEIGHT

    return total / weight if weight > 0 else 0.0


def score_candidate(
    extracted: ExtractedAttributes,
    product: ProductLike,
    *,
    registry: RegistrySnapshot,
) -> float:
    """Similarity of a listing's extracted attributes to a catalog product."""
    return _weighted_score(
        brand_a=extracted.brand,
        brand_b=product.brand,
        model_a=extracted.model,
        model_b=product.model,
        title_a=extracted.title,
        title_b=product.name,
        registry=registry,
    )


def score_products(a: ProductLike, b: ProductLike, *, registry: RegistrySnapshot) -> float:
    """Similarity of two catalog products (merge detection)."""
    return _weighted_score(
        brand_a=a.brand,
        brand_b=b.brand,
        model_a=a.model,
        model_b=b.model,
        title_a=a.name,
        title_b=b.name,
        registry=registry,
    )
