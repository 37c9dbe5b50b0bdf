#!/usr/bin/env python3
"""
Prompt builder tests: required rules, shared schema and store context.

Usage:
    pytest tests/test_prompts.py -v
"""

import os
import sys
sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), os.pardir))

import json
import threading

import pytest

from flyer_promotions.config import FlyerVocabulary
from flyer_promotions.prompts.flyer_prompts import PromptBuilder


@pytest.fixture
def builder():
    return PromptBuilder(FlyerVocabulary())


def test_all_core_prompts_embed_the_same_schema(builder):
    schema = builder.schema()
    boxes = json.dumps([{"name_lt": "Pienas", "discount_pct": 25}], ensure_ascii=False)
    prompts = [
        builder.detection_prompt("IKI", 1),
        builder.fill_details_prompt("IKI", 1, boxes),
        builder.unified_prompt("IKI", 1),
    ]
    for prompt in prompts:
        assert schema in prompt
        assert "STORE: iki | PAGE: 1" in prompt


def test_schema_lists_enumerations_and_null_semantics(builder):
    schema = builder.schema()
    for token in ("single_product|category|brand_line|equipment|bundle|loyalty",
                  "percentage|absolute|bundle|loyalty",
                  "discount_pct", "loyalty_required", "bounding_box", "null"):
        assert token in schema
    assert "{{" not in schema
    assert "X,XX €" in schema


def test_detection_prompt_states_strongest_discount_rule(builder):
    prompt = builder.detection_prompt("maxima", 2)
    assert "PERCENT-ONLY MODULES ARE VALID" in prompt
    assert "STRONGEST" in prompt
    assert "numerically highest" in prompt
    assert "Never average" in prompt
    assert "loyalty_required=true" in prompt


def test_fill_details_prompt_embeds_boxes_and_count(builder):
    boxes = json.dumps(
        [{"name_lt": "Sūris DŽIUGAS", "price_eur": "3,49 €"}, {"discount_pct": 30}],
        ensure_ascii=False,
    )
    prompt = builder.fill_details_prompt("rimi", 5, boxes)
    assert boxes in prompt
    assert "SAME number of promotions as PROMOTION_BOXES (2)" in prompt
    assert "read ONLY inside that rectangle" in prompt


def test_prompts_embed_category_vocabulary(builder):
    prompt = builder.unified_prompt("iki", 1)
    for category in builder.available_categories():
        assert category in prompt


def test_unknown_store_uses_default_context(builder):
    prompt = builder.detection_prompt("lidl", 1)
    assert "STORE CONTEXT: Lietuvos prekybos tinklas" in prompt


def test_add_store_context_is_visible_in_prompts(builder):
    builder.add_store_context("LIDL", "LIDL (LT discounter). Yellow price tags.")
    assert "lidl" in builder.supported_stores()
    assert "Yellow price tags" in builder.detection_prompt("Lidl", 3)


def test_add_store_context_from_many_threads():
    builder = PromptBuilder(FlyerVocabulary())

    def register(i):
        builder.add_store_context(f"store{i}", f"context {i}")

    threads = [threading.Thread(target=register, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    stores = builder.supported_stores()
    assert all(f"store{i}" in stores for i in range(20))
    assert builder.store_context("store7") == "context 7"


def test_secondary_prompts_render(builder):
    assert "IKI flyer page" in builder.text_extraction_prompt("iki")
    assert 'TEXT: "Šokoladas ROSHEN"' in builder.category_classification_prompt("Šokoladas ROSHEN")
    analysis = builder.price_analysis_prompt([{"name_lt": "Kava", "price_eur": "4,99 €"}, "raw line"])
    assert '"name_lt": "Kava"' in analysis and "raw line" in analysis
    assert "EXTRACTED DATA:\n{}" in builder.quality_check_prompt("{}")
    assert "kg, g" in builder.repair_prompt('{"promotions": []}')


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
