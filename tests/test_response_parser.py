#!/usr/bin/env python3
"""
Response parser tests: fences, commentary, smart quotes and lenient fields.

Usage:
    pytest tests/test_response_parser.py -v
"""

import os
import sys
sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), os.pardir))

import json

import pytest

from flyer_promotions import parsing
from flyer_promotions.graph.state import DiscountType, PromotionType
from flyer_promotions.parsing import (
    ResponseParseError,
    clean_response_text,
    extract_balanced_object,
    parse_promotion_response,
)


PAGE_JSON = json.dumps(
    {
        "page_meta": {"store_code": "IKI", "currency": "EUR", "locale": "lt-LT", "page_number": 3},
        "promotions": [
            {
                "promotion_type": "single_product",
                "name_lt": "Pienas DVARO 2,5 %",
                "price_eur": "0,99 €",
                "discount_pct": 25,
                "special_tags": ["SUPER KAINA"],
                "bounding_box": {"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.2},
                "confidence": 0.9,
            }
        ],
    },
    ensure_ascii=False,
)


def test_plain_json_parses():
    page = parse_promotion_response(PAGE_JSON)
    assert page.page_meta.store_code == "iki"
    assert page.page_meta.page_number == 3
    assert len(page.promotions) == 1
    promo = page.promotions[0]
    assert promo.name == "Pienas DVARO 2,5 %"
    assert promo.price == "0,99 €"
    assert promo.discount_percent == 25
    assert promo.promotion_type == PromotionType.SINGLE_PRODUCT


@pytest.mark.parametrize("fence", ["```json\n", "```\n", "```JSON \n", "```javascript\n"])
def test_fenced_block_parses_like_unwrapped(fence):
    wrapped = f"{fence}{PAGE_JSON}\n```"
    assert parse_promotion_response(wrapped) == parse_promotion_response(PAGE_JSON)


def test_empty_page_in_fence():
    page = parse_promotion_response('```json\n{"page_meta":{"page_number":1},"promotions":[]}\n```')
    assert page.promotions == []
    assert page.page_meta.page_number == 1


def test_trailing_commentary_recovered_by_brace_matching():
    text = f"Here is the result:\n{PAGE_JSON}\nLet me know if you need more."
    page = parse_promotion_response(text)
    assert len(page.promotions) == 1
    assert page.promotions[0].price == "0,99 €"


def test_smart_quotes_are_straightened():
    text = "{“page_meta”: {“page_number”: 2}, “promotions”: []}"
    page = parse_promotion_response(text)
    assert page.page_meta.page_number == 2


def test_brace_inside_string_does_not_end_object():
    payload = '{"promotions": [{"name_lt": "Akcija }{ 1+1", "discount_pct": 30}]} trailing }'
    obj = extract_balanced_object("prefix " + payload)
    assert obj == payload[: payload.rindex(" trailing")]
    page = parse_promotion_response("prefix " + payload)
    assert page.promotions[0].name == "Akcija }{ 1+1"
    assert page.promotions[0].discount_percent == 30


def test_escaped_quote_inside_string():
    payload = r'{"promotions": [{"name_lt": "Sūris \"Džiugas\" {36 mėn.}", "price_eur": "3,49 €"}]}'
    assert extract_balanced_object("note: " + payload + " end") == payload


def test_no_object_raises_parse_error():
    with pytest.raises(ResponseParseError) as exc_info:
        parse_promotion_response("Sorry, I cannot read this image.")
    assert exc_info.value.raw_text == "Sorry, I cannot read this image."


@pytest.mark.parametrize("raw", ["", "   ", "```json\n```", "[1, 2, 3]", '{"promotions": [', "null"])
def test_garbage_only_raises_parse_error(raw):
    with pytest.raises(ResponseParseError):
        parse_promotion_response(raw)


def test_lenient_field_coercion():
    text = json.dumps({
        "promotions": [
            {
                "promotion_type": "mystery",
                "name_lt": "  null ",
                "discount_pct": "-30%",
                "discount_type": "weird",
                "price_eur": 1.5,
                "special_tags": None,
                "loyalty_required": "true",
                "confidence": 7,
                "bounding_box": {"x": -0.2, "y": 1.4, "width": 0.5, "height": 0.5},
            }
        ]
    })
    promo = parse_promotion_response(text).promotions[0]
    assert promo.promotion_type == PromotionType.SINGLE_PRODUCT
    assert promo.name is None
    assert promo.discount_percent == 30
    assert promo.discount_type is None
    assert promo.price == "1.50"
    assert promo.special_tags == []
    assert promo.loyalty_required is True
    assert promo.confidence == 1.0
    assert promo.bounding_box.x == 0.0
    assert promo.bounding_box.y == 1.0


def test_non_finite_numbers_are_nulled_not_raised():
    # json.loads accepts these literals even though they are not strict JSON
    text = (
        '{"page_meta": {"page_number": 1e999}, "promotions": ['
        '{"name_lt": "Kava", "discount_pct": 1e999, "confidence": NaN,'
        ' "bounding_box": {"x": Infinity, "y": -Infinity, "width": NaN, "height": 0.5}},'
        '{"name_lt": "Arbata", "discount_pct": -Infinity, "price_eur": Infinity},'
        '{"name_lt": "Sultys", "discount_pct": NaN}'
        ']}'
    )
    page = parse_promotion_response(text)
    assert page.page_meta.page_number == 0
    first, second, third = page.promotions
    assert first.discount_percent is None
    assert first.confidence == 0.0
    assert (first.bounding_box.x, first.bounding_box.y, first.bounding_box.width) == (0.0, 0.0, 0.0)
    assert second.discount_percent is None
    assert third.discount_percent is None


def test_unexpected_decode_error_becomes_parse_error(monkeypatch):
    def overflow(candidate):
        raise OverflowError("cannot convert float infinity to integer")

    monkeypatch.setattr(parsing, "_decode", overflow)
    with pytest.raises(ResponseParseError, match="infinity"):
        parse_promotion_response('{"promotions": []}')


def test_python_field_names_are_accepted():
    text = json.dumps({"promotions": [{"name": "Duona", "price": "1,29 €", "discount_type": "loyalty"}]})
    promo = parse_promotion_response(text).promotions[0]
    assert promo.name == "Duona"
    assert promo.price == "1,29 €"
    assert promo.discount_type == DiscountType.LOYALTY


def test_clean_response_text_keeps_straight_single_quotes():
    assert clean_response_text("```json\n{\"name_lt\": \"Ąžuolo 'medus'\"}\n```") == '{"name_lt": "Ąžuolo \'medus\'"}'


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
