"""Title normalization and attribute extraction for catalog matching.

Extraction is registry-driven, not learned: a brand is only ever one of the
registry's brands, and model numbers are picked by shape. Precision beats
recall here, because a wrong brand/model cascades into bad merges.

Extracts:
- brand (registry brands only, earliest mention wins)
- model (model-number shaped token, with tier modifiers: "S21 Ultra", "14 Pro")
- color (registry colors, longest first)
- storage ("8+128GB" combos, then registry storage patterns)
- RAM ("8+128GB" combos, then "8GB RAM")

Every function takes the registry snapshot explicitly, so the same title and
snapshot always produce the same result regardless of caller.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any

from pricecatalog.services.registry_cache import RegistrySnapshot


class ExtractionConfidence(Enum):
    """Confidence level of model extraction."""

    HIGH = "high"  # Model-number shaped token or short number (+ modifiers)
    MEDIUM = "medium"  # Joined leftover words
    LOW = "low"  # Nothing usable; first raw token or no model at all


@dataclass
class NormalizedTitle:
    """Everything the matching engine extracts from one raw title."""

    raw_title: str
    cleaned_title: str
    category: str
    brand: str | None = None
    model: str | None = None
    model_confidence: ExtractionConfidence = ExtractionConfidence.LOW
    color: str | None = None
    storage: str | None = None
    ram: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cleanedTitle": self.cleaned_title,
            "category": self.category,
            "brand": self.brand,
            "model": self.model,
            "modelConfidence": self.model_confidence.value,
            "color": self.color,
            "storageInfo": self.storage,
            "ramInfo": self.ram,
        }


# ============================================================
# Cleaning
# ============================================================

_BRACKETED = re.compile(r"\([^)]*\)|\[[^\]]*\]|\{[^}]*\}")
_HASHTAG = re.compile(r"#\w+")
_SPECIAL_CHARS = re.compile(r"[^\w\s\-+]")
_WHITESPACE = re.compile(r"\s+")


def _word_pattern(words: list[str]) -> re.Pattern[str]:
    # Longest first so "space gray" is tried before "gray".
    ordered = sorted(words, key=lambda w: (-len(w), w))
    alternation = "|".join(re.escape(w) for w in ordered)
    return re.compile(rf"(?<!\w)(?:{alternation})(?!\w)", re.IGNORECASE)


@lru_cache(maxsize=16)
def _common_words_regex(words: frozenset[str]) -> re.Pattern[str] | None:
    if not words:
        return None
    return _word_pattern(list(words))


@lru_cache(maxsize=16)
def _single_word_regexes(words: tuple[str, ...]) -> tuple[tuple[str, re.Pattern[str]], ...]:
    return tuple(
        (w, re.compile(rf"(?<!\w){re.escape(w)}(?!\w)", re.IGNORECASE)) for w in words
    )


def _collapse(s: str) -> str:
    return _WHITESPACE.sub(" ", s).strip()


def _capitalize_first(s: str) -> str:
    if not s or s.startswith("iPhone"):
        return s
    return s[0].upper() + s[1:]


def clean_title(title: str | None, *, registry: RegistrySnapshot) -> str:
    """Lowercase a title and strip everything that is not product identity.

    Removes bracketed/parenthetical/braced content, hashtags, punctuation other
    than '-' and '+', and registry common words. Idempotent.

    Args:
        title: Raw listing title.
        registry: Registry snapshot (common words).

    Returns:
        Cleaned title, or "" for empty input.
    """
    if not title:
        return ""

    s = title.lower()
    s = _BRACKETED.sub(" ", s)
    s = _HASHTAG.sub(" ", s)
    s = _SPECIAL_CHARS.sub(" ", s)
    s = _collapse(s)

    common = _common_words_regex(registry.common_words)
    if common is not None and s:
        s = _collapse(common.sub(" ", s))
    return s


def calculate_title_similarity(a: str | None, b: str | None, *, registry: RegistrySnapshot) -> float:
    """Jaccard similarity of cleaned title word sets (0.0 when both are empty)."""
    words_a = set(clean_title(a, registry=registry).split())
    words_b = set(clean_title(b, registry=registry).split())
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


# ============================================================
# Brand
# ============================================================


def extract_brand(title: str | None, *, registry: RegistrySnapshot) -> str | None:
    """Find the registry brand a title is about.

    All registry brands found in the cleaned title are collected with their
    position. A brand that is also a tier word (pro, ultra, ...) and appears
    after other text is treated as a modifier when any other candidate exists.
    The earliest remaining mention wins; same-position ties go to the longer
    brand.

    Returns:
        Capitalized brand, or None when the title names no known brand.
    """
    cleaned = clean_title(title, registry=registry)
    if not cleaned or not registry.brands:
        return None

    matches: list[tuple[str, int]] = []
    for brand, pattern in _single_word_regexes(registry.brands):
        m = pattern.search(cleaned)
        if m:
            matches.append((brand, m.start()))

    if not matches:
        return None

    if len(matches) > 1:
        standalone = [
            (brand, pos)
            for brand, pos in matches
            if not (brand in registry.brand_modifiers and cleaned[:pos].strip())
        ]
        if standalone:
            matches = standalone

    brand, _ = min(matches, key=lambda m: (m[1], -len(m[0]), m[0]))
    return _capitalize_first(brand)


# ============================================================
# Model
# ============================================================

_MODEL_SHAPES: tuple[re.Pattern[str], ...] = (
    re.compile(r"^[a-z]+\d+[a-z0-9-]*$"),  # s21, a52s, g9-pro
    re.compile(r"^[a-z]+-[a-z0-9]+$"),  # x-cover5
    re.compile(r"^\d+[a-z]+\d*$"),  # 11t, 5x2
)
_SHORT_NUMBER = re.compile(r"^\d{1,3}$")
_NUMBER = re.compile(r"^\d+$")
_STORAGE_TOKEN = re.compile(r"^\d+(?:gb|tb)$")
_UNIT_TOKEN = re.compile(r"^(?:gb|tb)$")
_COMBO_TOKEN = re.compile(r"^\d+\+\d+(?:gb|tb)?$")
_COLOR_CONNECTORS = {"in", "color", "colour"}
_MAX_TRAILING_MODIFIERS = 2


def _excluded_token_indexes(tokens: list[str], registry: RegistrySnapshot) -> set[int]:
    """Indexes of storage, RAM, combo and color tokens (plus color connectors)."""
    excluded: set[int] = set()

    for i, tok in enumerate(tokens):
        if _COMBO_TOKEN.match(tok):
            excluded.add(i)
        elif _STORAGE_TOKEN.match(tok):
            excluded.add(i)
        elif _UNIT_TOKEN.match(tok):
            excluded.add(i)
            if i > 0 and _NUMBER.match(tokens[i - 1]):
                excluded.add(i - 1)
        elif tok == "ram":
            excluded.add(i)
            if i > 0 and (_STORAGE_TOKEN.match(tokens[i - 1]) or _NUMBER.match(tokens[i - 1])):
                excluded.add(i - 1)

    for color in registry.colors:
        parts = color.split()
        n = len(parts)
        for i in range(len(tokens) - n + 1):
            if tokens[i : i + n] != parts:
                continue
            excluded.update(range(i, i + n))
            if i > 0 and tokens[i - 1] in _COLOR_CONNECTORS:
                excluded.add(i - 1)

    return excluded


def _with_modifiers(
    tokens: list[str], start: int, excluded: set[int], registry: RegistrySnapshot
) -> str:
    parts = [tokens[start]]
    j = start + 1
    while (
        j < len(tokens)
        and len(parts) <= _MAX_TRAILING_MODIFIERS
        and j not in excluded
        and tokens[j] in registry.brand_modifiers
    ):
        parts.append(tokens[j].capitalize())
        j += 1
    return " ".join(parts)


def extract_model_with_confidence(
    title: str | None,
    brand: str | None,
    *,
    registry: RegistrySnapshot,
) -> tuple[str | None, ExtractionConfidence]:
    """Extract a model string and how much to trust it.

    Preference order:
    1. First model-number shaped token ("s21", "a52s", "11t"), plus tier words
    2. First standalone number of up to 3 digits ("14"), plus tier words
    3. Up to 3 remaining tokens joined
    4. First raw token after the brand

    Storage, RAM, "8+128GB" combos and colors never become the model, and the
    brand is stripped before tokenizing.
    """
    cleaned = clean_title(title, registry=registry)
    if brand:
        brand_re = re.compile(rf"(?<!\w){re.escape(brand.lower())}(?!\w)", re.IGNORECASE)
        cleaned = _collapse(brand_re.sub(" ", cleaned))

    tokens = cleaned.split()
    if not tokens:
        return None, ExtractionConfidence.LOW

    excluded = _excluded_token_indexes(tokens, registry)

    for i, tok in enumerate(tokens):
        if i in excluded:
            continue
        if any(shape.match(tok) for shape in _MODEL_SHAPES):
            return _capitalize_first(_with_modifiers(tokens, i, excluded, registry)), ExtractionConfidence.HIGH

    for i, tok in enumerate(tokens):
        if i not in excluded and _SHORT_NUMBER.match(tok):
            return _capitalize_first(_with_modifiers(tokens, i, excluded, registry)), ExtractionConfidence.HIGH

    remaining = [tok for i, tok in enumerate(tokens) if i not in excluded]
    if remaining:
        return _capitalize_first(" ".join(remaining[:3])), ExtractionConfidence.MEDIUM

    return _capitalize_first(tokens[0]), ExtractionConfidence.LOW


def extract_model(title: str | None, brand: str | None, *, registry: RegistrySnapshot) -> str | None:
    """Extract the model string from a title (see extract_model_with_confidence)."""
    model, _ = extract_model_with_confidence(title, brand, registry=registry)
    return model


_SAMSUNG_FAMILY = {"samsung"}
_GALAXY_PREFIX = re.compile(r"^galaxy\s+", re.IGNORECASE)
_LETTER_NUMBER_GAP = re.compile(r"\b([a-z])\s+(\d+)", re.IGNORECASE)
_IPHONE_NUMBER = re.compile(r"\biphone\s*(\d+)", re.IGNORECASE)
_IPHONE_WORD = re.compile(r"\biphone\b", re.IGNORECASE)
_GLUED_SUFFIX = re.compile(r"(\d)(pro|max|plus|mini)\b", re.IGNORECASE)
_PRO_MAX = re.compile(r"\bpro\s*max\b", re.IGNORECASE)
_HYPHEN_SPACING = re.compile(r"\s*-\s*")
_MODIFIER_WORD = re.compile(r"\b(lite|pro|plus|ultra|max|mini)\b", re.IGNORECASE)


def standardize_model_name(brand: str | None, model: str | None) -> str | None:
    """Brand-specific cleanup of an extracted model.

    - Samsung: drop "Galaxy " and close letter-number gaps ("S 21" -> "S21")
    - Apple: "iPhone 13", "13 Pro Max" spacing
    - All: tight hyphens, capitalized tier words
    """
    if not model:
        return model

    m = _collapse(model)
    b = (brand or "").strip().lower()

    if b in _SAMSUNG_FAMILY or m.lower().startswith("galaxy "):
        m = _GALAXY_PREFIX.sub("", m)
        m = _LETTER_NUMBER_GAP.sub(lambda x: f"{x.group(1).upper()}{x.group(2)}", m)

    if b == "apple" or "iphone" in m.lower():
        m = _IPHONE_NUMBER.sub(r"iPhone \1", m)
        m = _IPHONE_WORD.sub("iPhone", m)
        m = _GLUED_SUFFIX.sub(r"\1 \2", m)
        m = _PRO_MAX.sub("Pro Max", m)

    m = _HYPHEN_SPACING.sub("-", m)
    m = _MODIFIER_WORD.sub(lambda x: x.group(1).capitalize(), m)
    return _capitalize_first(_collapse(m))


# ============================================================
# Color / storage / RAM
# ============================================================

_STORAGE_COMBO = re.compile(r"(\d+)\s*\+\s*(\d+)\s*(gb|tb)", re.IGNORECASE)
_RAM_COMBO = re.compile(r"(\d+)\s*\+\s*(\d+)\s*(?:gb|tb)?", re.IGNORECASE)
_RAM_EXPLICIT = re.compile(r"(\d+)\s*gb\s*ram\b", re.IGNORECASE)


def extract_color(title: str | None, *, registry: RegistrySnapshot) -> str | None:
    """First registry color found in the cleaned title (lowercase)."""
    cleaned = clean_title(title, registry=registry)
    if not cleaned:
        return None
    for color, pattern in _single_word_regexes(registry.colors):
        if pattern.search(cleaned):
            return color
    return None


def extract_storage_info(title: str | None, *, registry: RegistrySnapshot) -> str | None:
    """Storage size like "128GB".

    "8+256GB" yields the second number; otherwise the first registry storage
    pattern that matches the raw title wins (its first group, or the whole
    match for group-less patterns).
    """
    if not title:
        return None

    m = _STORAGE_COMBO.search(title)
    if m:
        return f"{m.group(2)}{m.group(3).upper()}"

    for pattern in registry.storage_patterns:
        m = pattern.search(title)
        if not m:
            continue
        value = m.group(1) if pattern.groups and m.group(1) else m.group(0)
        return _WHITESPACE.sub("", value).upper()
    return None


def extract_ram_info(title: str | None) -> str | None:
    """RAM size like "8GB" from "8+128GB" or "8GB RAM"."""
    if not title:
        return None
    m = _RAM_COMBO.search(title)
    if m:
        return f"{m.group(1)}GB"
    m = _RAM_EXPLICIT.search(title)
    if m:
        return f"{m.group(1)}GB"
    return None


# ============================================================
# Misc helpers
# ============================================================


def extract_category(config_code: str | None) -> str:
    """Category code from a crawler config code ("shop.ba/smartphones" -> "smartphones")."""
    code = (config_code or "").strip()
    if "/" in code:
        code = code.rsplit("/", 1)[1].strip()
    return code or "unknown"


def key_search_term(text: str | None) -> str | None:
    """First word with at least 3 non-digit characters (for broad text search)."""
    for word in (text or "").split():
        if len(re.sub(r"\d", "", word)) >= 3:
            return word
    return None


def extract_brand_and_model(
    title: str | None, *, registry: RegistrySnapshot
) -> tuple[str | None, str | None]:
    """Brand and standardized model, exactly as matching computes them."""
    brand = extract_brand(title, registry=registry)
    model = standardize_model_name(brand, extract_model(title, brand, registry=registry))
    return brand, model


def normalize_title(
    title: str | None,
    *,
    registry: RegistrySnapshot,
    config_code: str | None = None,
    include_ram: bool = False,
) -> NormalizedTitle:
    """Run the full extraction pipeline for one raw title."""
    brand = extract_brand(title, registry=registry)
    model, confidence = extract_model_with_confidence(title, brand, registry=registry)

    return NormalizedTitle(
        raw_title=title or "",
        cleaned_title=clean_title(title, registry=registry),
        category=extract_category(config_code),
        brand=brand,
        model=standardize_model_name(brand, model),
        model_confidence=confidence,
        color=extract_color(title, registry=registry),
        storage=extract_storage_info(title, registry=registry),
        ram=extract_ram_info(title) if include_ram else None,
    )
