"""Tests for title cleaning and attribute extraction."""

import pytest

from pricecatalog.services.registry_cache import build_snapshot
from pricecatalog.services.text_normalizer import (
    ExtractionConfidence,
    calculate_title_similarity,
    clean_title,
    extract_brand,
    extract_brand_and_model,
    extract_category,
    extract_color,
    extract_model,
    extract_model_with_confidence,
    extract_ram_info,
    extract_storage_info,
    key_search_term,
    normalize_title,
    standardize_model_name,
)


class TestCleanTitle:
    """Tests for clean_title."""

    def test_strips_brackets_hashtags_and_punctuation(self, registry):
        title = "Samsung Galaxy S21 (2021) [EU] #deal 128GB, Phantom Black!"
        assert clean_title(title, registry=registry) == "samsung galaxy s21 128gb phantom black"

    def test_removes_common_words(self, registry):
        title = "Mobitel Samsung A52 Dual SIM 128GB"
        assert clean_title(title, registry=registry) == "samsung a52 128gb"

    def test_keeps_plus_and_hyphen(self, registry):
        assert clean_title("Xiaomi Redmi Note 12 8+256GB X-Cover", registry=registry) == (
            "xiaomi redmi note 12 8+256gb x-cover"
        )

    @pytest.mark.parametrize(
        "title",
        [
            "Samsung Galaxy S21 (2021) [EU] #deal 128GB, Phantom Black!",
            "  Apple iPhone 13 Pro Max | 256GB  ",
            "Mobitel smartphone Dual SIM",
            "",
        ],
    )
    def test_idempotent(self, registry, title):
        once = clean_title(title, registry=registry)
        assert clean_title(once, registry=registry) == once

    def test_empty(self, registry):
        assert clean_title(None, registry=registry) == ""


class TestTitleSimilarity:
    """Tests for calculate_title_similarity."""

    def test_identical(self, registry):
        t = "Samsung Galaxy S21 128GB"
        assert calculate_title_similarity(t, t, registry=registry) == 1.0

    def test_symmetric(self, registry):
        a = "Samsung Galaxy S21 128GB Black"
        b = "Samsung S21 Ultra 256GB"
        assert calculate_title_similarity(a, b, registry=registry) == calculate_title_similarity(
            b, a, registry=registry
        )

    def test_disjoint(self, registry):
        assert calculate_title_similarity("apple", "xiaomi", registry=registry) == 0.0


class TestExtractBrand:
    """Tests for extract_brand."""

    def test_registry_brand_capitalized(self, registry):
        assert extract_brand("SAMSUNG Galaxy S21", registry=registry) == "Samsung"

    def test_earliest_mention_wins(self, registry):
        assert extract_brand("Case for Apple iPhone by Samsung", registry=registry) == "Apple"

    def test_modifier_brand_after_text_is_ignored(self, registry):
        assert extract_brand("Xiaomi Redmi Note 12 Pro", registry=registry) == "Xiaomi"

    def test_unknown_brand_is_none(self, registry):
        assert extract_brand("Nokia 3310 Blue", registry=registry) is None

    def test_never_fabricates(self, registry):
        for title in ["Huawei P30", "Generic phone 64GB", "Samsung A52", "apple watch"]:
            brand = extract_brand(title, registry=registry)
            assert brand is None or brand.lower() in registry.brands

    def test_not_brand_is_excluded(self):
        snapshot = build_snapshot(brands=["samsung", "mobi"], not_brands=["mobi"])
        assert extract_brand("Mobi Samsung A52", registry=snapshot) == "Samsung"

    def test_longer_brand_wins_same_position(self):
        snapshot = build_snapshot(brands=["one", "one plus"])
        assert extract_brand("One Plus 9 Pro", registry=snapshot) == "One plus"


class TestExtractModel:
    """Tests for model extraction."""

    def test_model_number_token(self, registry):
        model, confidence = extract_model_with_confidence(
            "Samsung Galaxy S21 128GB Phantom Black", "Samsung", registry=registry
        )
        assert model == "S21"
        assert confidence is ExtractionConfidence.HIGH

    def test_tier_modifiers(self, registry):
        assert extract_model("Samsung S21 Ultra 256GB", "Samsung", registry=registry) == "S21 Ultra"

    def test_at_most_two_modifiers(self, registry):
        assert extract_model("Apple iPhone 14 Pro Max Plus", "Apple", registry=registry) == "14 Pro Max"

    def test_short_number(self, registry):
        model, confidence = extract_model_with_confidence("Apple iPhone 13 128GB Blue", "Apple", registry=registry)
        assert model == "13"
        assert confidence is ExtractionConfidence.HIGH

    def test_storage_and_combo_never_model(self, registry):
        model = extract_model("Xiaomi Note 8+256GB 12GB RAM", "Xiaomi", registry=registry)
        assert model not in {"8+256gb", "12gb", "256gb"}
        assert model == "Note"

    def test_leftover_words_medium(self, registry):
        model, confidence = extract_model_with_confidence(
            "Xiaomi Redmi Note Black", "Xiaomi", registry=registry
        )
        assert model == "Redmi note"
        assert confidence is ExtractionConfidence.MEDIUM

    def test_only_storage_left_is_low(self, registry):
        model, confidence = extract_model_with_confidence("Samsung 128GB", "Samsung", registry=registry)
        assert confidence is ExtractionConfidence.LOW
        assert model == "128gb"

    def test_never_returns_brand(self, registry):
        for title in ["Samsung Galaxy S21", "Apple iPhone 13", "Xiaomi 12T Pro"]:
            brand = extract_brand(title, registry=registry)
            model = extract_model(title, brand, registry=registry)
            assert model is not None
            assert model.lower() != brand.lower()

    def test_empty_title(self, registry):
        assert extract_model_with_confidence("", None, registry=registry) == (None, ExtractionConfidence.LOW)


class TestStandardizeModelName:
    """Tests for standardize_model_name."""

    def test_samsung_drops_galaxy_and_closes_gap(self):
        assert standardize_model_name("Samsung", "Galaxy S 21") == "S21"

    def test_apple_iphone_spacing(self):
        assert standardize_model_name("Apple", "iphone13pro") == "iPhone 13 Pro"
        assert standardize_model_name("Apple", "iphone 13 promax") == "iPhone 13 Pro Max"

    def test_hyphens_and_modifiers(self):
        assert standardize_model_name("Xiaomi", "redmi - note 12 pro") == "Redmi-note 12 Pro"

    def test_none(self):
        assert standardize_model_name("Samsung", None) is None


class TestAttributes:
    """Tests for color / storage / RAM / category helpers."""

    def test_longest_color_first(self, registry):
        assert extract_color("Samsung S21 Phantom Black", registry=registry) == "phantom black"
        assert extract_color("Apple iPhone 13 Space Gray", registry=registry) == "space gray"

    def test_no_color(self, registry):
        assert extract_color("Samsung S21", registry=registry) is None

    def test_storage_from_pattern(self, registry):
        assert extract_storage_info("Samsung Galaxy S21 128GB Phantom Black", registry=registry) == "128GB"
        assert extract_storage_info("Apple iPhone 15 Pro 1 TB", registry=registry) == "1TB"

    def test_storage_from_combo(self, registry):
        assert extract_storage_info("Xiaomi Note 12 8+256GB", registry=registry) == "256GB"

    def test_ram(self):
        assert extract_ram_info("Xiaomi Note 12 8+256GB") == "8GB"
        assert extract_ram_info("Samsung A52 6GB RAM 128GB") == "6GB"
        assert extract_ram_info("Samsung A52 128GB") is None

    def test_category(self):
        assert extract_category("shop.ba/smartphones") == "smartphones"
        assert extract_category("tablets") == "tablets"
        assert extract_category(None) == "unknown"

    def test_key_search_term(self):
        assert key_search_term("S21 Ultra") == "Ultra"
        assert key_search_term("Redmi Note 12") == "Redmi"
        assert key_search_term("13") is None


class TestNormalizeTitle:
    """Tests for the full extraction pipeline."""

    def test_end_to_end_samsung(self, registry):
        n = normalize_title(
            "Samsung Galaxy S21 128GB Phantom Black",
            registry=registry,
            config_code="shop.ba/smartphones",
        )
        assert n.brand == "Samsung"
        assert n.model == "S21"
        assert n.storage == "128GB"
        assert n.color == "phantom black"
        assert n.category == "smartphones"
        assert n.ram is None

    def test_ram_only_when_requested(self, registry):
        title = "Xiaomi Redmi Note 12 8+256GB"
        assert normalize_title(title, registry=registry).ram is None
        assert normalize_title(title, registry=registry, include_ram=True).ram == "8GB"

    def test_to_dict_keys(self, registry):
        d = normalize_title("Apple iPhone 13", registry=registry).to_dict()
        assert d["brand"] == "Apple"
        assert d["model"] == "13"
        assert d["modelConfidence"] == "high"

    def test_brand_and_model_helper(self, registry):
        assert extract_brand_and_model("Samsung Galaxy S21 Ultra 5G", registry=registry) == ("Samsung", "S21 Ultra")
