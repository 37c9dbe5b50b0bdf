#!/usr/bin/env python3
"""
Normalizer and confidence scorer tests.

Covers price / unit / category normalization, the validity filter, the
confidence heuristic, idempotence and the legacy product projection.

Usage:
    pytest tests/test_normalizer.py -v
"""

import os
import sys
sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), os.pardir))

import pytest

from flyer_promotions.config import FlyerVocabulary
from flyer_promotions.graph.state import DiscountType, PageMeta, Promotion
from flyer_promotions.normalize import (
    PromotionNormalizer,
    clean_text,
    to_legacy_products,
)


@pytest.fixture
def normalizer():
    return PromotionNormalizer(FlyerVocabulary())


# ---------------------------------------------------------------------------
# Field normalizers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0 99 €", "0,99 €"),
        ("2.50", "2,50 €"),
        ("€ 3,10", "3,10 €"),
        ("1,29€", "1,29 €"),
        ("€1.99", "1,99 €"),
        ("  4,99   € ", "4,99 €"),
        ("3 €", "3,00 €"),
        ("12,49 €", "12,49 €"),
    ],
)
def test_price_normalization(normalizer, raw, expected):
    assert normalizer.normalize_price(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "nemokamai", "€"])
def test_price_without_digits_becomes_null(normalizer, raw):
    assert normalizer.normalize_price(raw) is None


@pytest.mark.parametrize("raw", ["2 vnt. už 3 €", "-30%", "5", "1,2,3 €"])
def test_unrecognised_price_with_digits_becomes_null(normalizer, raw):
    assert normalizer.normalize_price(raw) is None


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("kilogramas", "kg"),
        ("KG", "kg"),
        ("vienetas", "vnt."),
        ("vienetai", "vnt."),
        ("vnt", "vnt."),
        ("Pakuotė", "pak."),
        ("  l. ", "l"),
        ("butelis", "butelis"),
    ],
)
def test_unit_synonyms(normalizer, raw, expected):
    assert normalizer.normalize_unit(raw) == expected


def test_category_exact_match_wins_over_substring(normalizer):
    assert normalizer.normalize_category("Alkoholiniai gėrimai") == "alkoholiniai gėrimai"
    assert normalizer.normalize_category("gėrimai") == "gėrimai"


def test_category_substring_either_direction(normalizer):
    assert normalizer.normalize_category("pieno") == "pieno produktai"
    assert normalizer.normalize_category("šviežia mėsa ir žuvis") == "mėsa ir žuvis"
    assert normalizer.normalize_category("Elektronika") == "Elektronika"


def test_tags_deduplicated_case_insensitively(normalizer):
    tags = ["SUPER KAINA", " super kaina ", "", "1+1", "  TIK  ", "tik"]
    assert normalizer.normalize_tags(tags) == ["SUPER KAINA", "1+1", "TIK"]


def test_clean_text_collapses_whitespace():
    assert clean_text("  Sūris \t DŽIUGAS\n 36 mėn. ") == "Sūris DŽIUGAS 36 mėn."
    assert clean_text("   ") is None


# ---------------------------------------------------------------------------
# Validity filter
# ---------------------------------------------------------------------------

def test_promotion_without_signal_is_dropped(normalizer):
    promo = Promotion(name="Tik vaizdas", price=None, discount_percent=None, special_tags=[], loyalty_required=False)
    assert normalizer.normalize_promotions([promo]) == []


def test_percent_only_promotion_is_kept(normalizer):
    promo = Promotion(discount_percent=25)
    kept = normalizer.normalize_promotions([promo])
    assert len(kept) == 1
    assert kept[0].discount_percent == 25


@pytest.mark.parametrize(
    "promo",
    [
        Promotion(name="Kava", price="4,99 €"),
        Promotion(name="Sultys", special_tags=["1+1"]),
        Promotion(name="Vanduo", discount_type=DiscountType.BUNDLE),
        Promotion(name="Sūris", loyalty_required=True),
        Promotion(name="Jogurtas", discount_type=DiscountType.LOYALTY),
    ],
)
def test_each_signal_keeps_the_promotion(normalizer, promo):
    assert len(normalizer.normalize_promotions([promo])) == 1


def test_out_of_range_percent_is_nulled_and_dropped(normalizer):
    promo = Promotion(name="Akcija", discount_percent=150)
    assert normalizer.normalize(promo).discount_percent is None
    assert normalizer.normalize_promotions([promo]) == []


def test_malformed_price_alone_does_not_keep_promotion(normalizer):
    promo = Promotion(name="Akcija", price="kaina nežinoma 5")
    assert normalizer.normalize_promotions([promo]) == []


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def test_full_promotion_scores_one(normalizer):
    promo = Promotion(
        name="Pienas DVARO",
        brand="DVARO",
        category_guess="pieno produktai",
        unit="l",
        price="0,99 €",
    )
    [scored] = normalizer.normalize_promotions([promo])
    assert scored.confidence == pytest.approx(1.0)


def test_percent_only_scores_base(normalizer):
    [scored] = normalizer.normalize_promotions([Promotion(discount_percent=30)])
    assert scored.confidence == pytest.approx(0.5)


def test_unknown_name_is_penalised(normalizer):
    [scored] = normalizer.normalize_promotions([Promotion(name="Unknown product", price="1,00 €")])
    # 0.5 + name 0.1 + price 0.2 + valid price 0.05 - unknown 0.2
    assert scored.confidence == pytest.approx(0.65)


def test_unknown_as_part_of_word_is_not_penalised(normalizer):
    [scored] = normalizer.normalize_promotions([Promotion(name="Unknowns", price="1,00 €")])
    assert scored.confidence == pytest.approx(0.85)


# ---------------------------------------------------------------------------
# Idempotence and page handling
# ---------------------------------------------------------------------------

def test_normalizing_twice_is_a_no_op(normalizer):
    promotions = [
        Promotion(name="  Sūris   DŽIUGAS ", price="3 49 €", unit="Kilogramas", category_guess="pieno",
                  special_tags=["TIK", "tik", "MEILĖ IKI"]),
        Promotion(name="Mėsos gaminiams", discount_percent=30, category_guess="mėsa"),
        Promotion(name="Sultys", special_tags=["1+1"], price="€ 2.10"),
    ]
    once = normalizer.normalize_promotions(promotions)
    twice = normalizer.normalize_promotions(once)
    assert once == twice
    assert once[0].price == "3,49 €"
    assert once[0].unit == "kg"
    assert once[0].category_guess == "pieno produktai"


def test_page_number_backfilled_when_missing(normalizer):
    meta, _ = normalizer.normalize_page(PageMeta(page_number=0), [], page_number=4, store_code="IKI")
    assert meta.page_number == 4
    assert meta.store_code == "iki"

    meta, _ = normalizer.normalize_page(PageMeta(page_number=7, store_code="rimi"), [], page_number=4)
    assert meta.page_number == 7
    assert meta.store_code == "rimi"


def test_missing_page_meta_is_defaulted(normalizer):
    meta, _ = normalizer.normalize_page(None, [], page_number=2, store_code="maxima")
    assert meta.page_number == 2
    assert meta.currency == "EUR"
    assert meta.locale == "lt-LT"


# ---------------------------------------------------------------------------
# Legacy projection
# ---------------------------------------------------------------------------

def test_legacy_products_are_priced_subset_in_order(normalizer):
    promotions = normalizer.normalize_promotions([
        Promotion(name="Kava", price="4,99 €", original_price="6,49 €", discount_percent=23),
        Promotion(name="Mėsai", discount_percent=30),
        Promotion(name="Sultys", price="2,10 €", special_tags=["1+1", "TIK"], discount_text="1+1"),
    ])
    products = to_legacy_products(promotions)
    assert [p.name for p in products] == ["Kava", "Sultys"]
    assert products[0].discount == "-23%"
    assert products[0].original_price == "6,49 €"
    assert products[1].discount == "1+1"
    assert products[1].special_discount == "1+1, TIK"
    priced = [p.name for p in promotions if p.price]
    assert [p.name for p in products] == priced


def test_percent_badge_in_price_field_stays_out_of_legacy_view(normalizer):
    [promo] = normalizer.normalize_promotions([Promotion(name="Mėsai", price="-30%", discount_percent=30)])
    assert promo.price is None
    assert promo.discount_percent == 30
    assert to_legacy_products([promo]) == []


def test_legacy_view_skips_non_canonical_prices():
    promotions = [Promotion(name="Kava", price="4,99 €"), Promotion(name="Akcija", price="2 vnt. už 3 €")]
    assert [p.name for p in to_legacy_products(promotions)] == ["Kava"]


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
