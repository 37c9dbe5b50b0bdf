"""
Prompt templates for flyer promotion extraction.

Three prompts drive the extraction protocol:

- DETECTION (pass 1): find every promotion module and its coarse fields.
- FILL_DETAILS (pass 2): re-read inside the pass-1 boxes and fill details.
- UNIFIED: single-pass fallback used when pass 1 cannot be parsed.

All three embed the same OUTPUT_SCHEMA so the response parser can map any of
them onto the same PageExtraction model. Instructions are in English; text
printed on the flyer must be copied in the flyer's language, unchanged.

The secondary prompts at the bottom (text extraction, classification, price
analysis, quality check, repair) are helpers outside the main pipeline.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, List, Optional

from flyer_promotions.config import FlyerVocabulary

OUTPUT_SCHEMA = """\
{{
  "page_meta": {{
    "store_code": "iki|maxima|rimi|...(lowercase exact)",
    "currency": "{currency}",
    "locale": "{locale}",
    "valid_from": "YYYY-MM-DD|null",
    "valid_to": "YYYY-MM-DD|null",
    "page_number": 1,
    "detected_text_sample": "raw OCR snippet near main prices/percents"
  }},
  "promotions": [
    {{
      "promotion_type": "single_product|category|brand_line|equipment|bundle|loyalty",
      "name_lt": "EXACT {language} text printed near the price/percent (no translation, no paraphrase). If unreadable -> null",
      "brand": "string|null",
      "category_guess_lt": "one from fixed list|null",
      "unit": "{units}|null",
      "unit_size": "e.g., '125 g'|'1 kg'|null",
      "price_eur": "X,XX {symbol}|null",
      "original_price_eur": "X,XX {symbol}|null",
      "price_per_unit_eur": "X,XX {symbol}|null",
      "discount_pct": "integer 1-99|null",
      "discount_text": "e.g., '-25 %' as printed|null",
      "discount_type": "percentage|absolute|bundle|loyalty|null",
      "special_tags": ["SUPER KAINA","TIK","MEILĖ IKI","IKI EXPRESS","1+1","2+1","3+1","..."],
      "loyalty_required": true,
      "bundle_details": "e.g., '1+1','2+1','3 už 2'|null",
      "bounding_box": {{"x": 0.0, "y": 0.0, "width": 0.0, "height": 0.0}},
      "confidence": 0.0
    }}
  ],
  "warnings": []
}}
Null semantics: use JSON null for anything not printed or not readable. Never use empty strings or guesses.
loyalty_required is a JSON boolean. bounding_box values are fractions of the page width/height (0..1)."""

PROMOTION_TYPES_GUIDE = """\
PROMOTION TYPES:
- "single_product": one specific product with a price (e.g., "SUDOCREM kremas 125 g, 4,99 €")
- "category": generic category discount WITHOUT specific product names (e.g., "Vytintiems mėsos gaminiams -30%")
- "brand_line": brand-specific discount that may cover several products (e.g., "VIGO šiukšlių maišams -50%")
- "equipment": non-food items such as appliances (e.g., "Kapsulinis kavos aparatas LAVAZZA, 39,99 €")
- "bundle": offers like "1+1", "2+1", "3 už 2"
- "loyalty": loyalty-programme exclusive (loyalty hearts, card required)"""

DETECTION_PROMPT = """\
PASS 1: DETECT MODULES

ROLE
You find promotion modules on a {language} grocery flyer page.

TASK
List EVERY rectangular module that shows any of: a {symbol} price, a % badge, a bundle marker (1+1 / 2+1 / 3+1 / "3 už 2"), or a loyalty marker.

{types_guide}

CRITICAL RULES:
1. PERCENT-ONLY MODULES ARE VALID: many modules show only a percent badge and no price. Keep them, with discount_pct filled and price_eur=null. Never discard them.
2. MULTIPLE BADGES: if one module shows several discount badges (e.g., -30% and -50%), report the STRONGEST one, i.e. the numerically highest percent (here 50). Never average them.
3. LOYALTY: if any badge in the module carries a loyalty marker (heart, card, programme name), set loyalty_required=true.
4. EXACT TEXT: copy name_lt EXACTLY as printed near the discount/price, in {language}, with all diacritics.
5. NO HALLUCINATION: do not invent prices, weights or brands that are not visible.
6. Do not drop small corner modules. Skip page headers/footers unless they carry a promotion.

FIELDS TO FILL (coarse pass): promotion_type, name_lt, discount_pct, price_eur, discount_text, loyalty_required, special_tags, bounding_box, confidence. Leave the other fields null.

STORE: {store_code} | PAGE: {page_number}
STORE CONTEXT: {store_context}
CATEGORIES: [{categories}]

OUTPUT
Return ONE JSON object following the schema below. Strict JSON. No markdown. No commentary.
SCHEMA
{schema}
"""

FILL_DETAILS_PROMPT = """\
PASS 2: FILL DETAILS

You are given the same page image and a JSON list named PROMOTION_BOXES with the modules found in pass 1.
For each box, read ONLY inside that rectangle and fill or correct:
- brand, unit, unit_size
- price_eur, original_price_eur, price_per_unit_eur (only if printed inside the box)
- discount_pct and discount_text
- discount_type: percentage|absolute|bundle|loyalty
- category_guess_lt from: [{categories}]
- special_tags exactly as printed

CRITICAL RULES:
1. RESPECT PASS-1 FINDINGS: if pass 1 found discount_pct but no price_eur, do NOT invent a price. Keep price_eur=null.
2. PERCENT-ONLY IS VALID: category and brand_line modules often show only a percent badge.
3. MULTIPLE BADGES: report the STRONGEST (numerically highest) discount; any loyalty badge sets loyalty_required=true.
4. EXACT TEXT: keep name_lt exactly as printed in {language}.
5. NO HALLUCINATION: never guess values that are not printed inside the box. If unreadable or missing: null.
6. NORMALIZATION: prices as "X,XX {symbol}"; percent as an integer in discount_pct, printed form in discount_text.

OUTPUT: return the SAME number of promotions as PROMOTION_BOXES ({box_count}), in the SAME order, each with its bounding_box.

PROMOTION_BOXES
{boxes}

STORE: {store_code} | PAGE: {page_number}
STORE CONTEXT: {store_context}

Return ONE JSON object following the schema below. Strict JSON. No markdown. No commentary.
SCHEMA
{schema}
"""

UNIFIED_PROMPT = """\
ROLE
You extract promotion modules from a {language} grocery flyer image in a single pass.

WHAT TO CAPTURE
A "promotion" is one rectangular module showing any of: a price ({symbol}), a percent badge, a bundle (1+1/2+1), or a loyalty tag.

{types_guide}

CRITICAL RULES:
1. PRICE OR PERCENT, NOT BOTH REQUIRED: a promotion is valid with EITHER a price OR a percent badge (or a bundle/loyalty marker).
2. PERCENT-ONLY MODULES: extract them with discount_pct set and price_eur=null.
3. EXACT TEXT: name_lt is the EXACT {language} text printed near the discount/price. For category promotions copy the category headline verbatim.
4. MULTIPLE BADGES: report the STRONGEST (numerically highest) discount; if any badge has a loyalty marker set loyalty_required=true.
5. NO HALLUCINATION: do not invent prices, weights or brands not visible in the module.
6. IGNORE BANNERS: skip headers/footers unless they contain an actual promotion.
7. Fill every field you can read: brand, unit, unit_size, prices, discount_type, category_guess_lt from [{categories}], special_tags, bundle_details.

NORMALIZATION
- Prices must be "X,XX {symbol}". If you read "0 99 {symbol}", write "0,99 {symbol}". If no {symbol} symbol is visible, set the price to null.
- Percent is an integer (1-99) in discount_pct; the printed form (e.g., "-25 %") goes in discount_text.
- Unreadable or missing: null, never guess.

STORE: {store_code} | PAGE: {page_number}
STORE CONTEXT: {store_context}

OUTPUT
Return ONE JSON object matching the schema below. Strict JSON. No markdown. No commentary.
SCHEMA
{schema}
"""

TEXT_EXTRACTION_PROMPT = """\
Extract ALL legible text from this {store_upper} flyer page. Preserve {language} exactly.

CONTEXT:
{store_context}

Return strict JSON:
{{
  "header_text": "...",
  "products_text": "...",
  "prices_text": "...",
  "dates_text": "...",
  "promotional_text": "...",
  "other_text": "..."
}}

Notes:
- Keep diacritics.
- Do not normalize numbers.
- Include validity date ranges if present.
"""

CATEGORY_CLASSIFICATION_PROMPT = """\
Classify the {language} text below into ONE of:
[{categories}]

TEXT: "{text}"

Return: {{"category": "...", "confidence": 0.00}}
"""

PRICE_ANALYSIS_PROMPT = """\
Input: final promotions JSON
{items}

TASK
- Count items with price_eur vs percent-only.
- Average discount_pct over items that have it.
- Compute price_per_unit_eur where price and unit_size exist but it is missing.
- List format issues for prices not matching "X,XX {symbol}".

OUTPUT
{{
  "summary": {{"total_promotions": N, "with_price": N, "with_percent_only": N, "avg_discount_pct": null}},
  "repairs": [{{"index": 0, "field": "price_per_unit_eur", "value": "X,XX {symbol}", "note": "computed from ..."}}],
  "format_issues": ["..."]
}}
"""

QUALITY_CHECK_PROMPT = """\
Compare the extracted promotions below with the flyer page image and rate the extraction.

EXTRACTED DATA:
{data}

OUTPUT
{{
  "quality_score": 0.85,
  "completeness": 0.90,
  "accuracy": 0.80,
  "consistency": 0.85,
  "issues_found": [{{"type": "...", "description": "...", "severity": "high|medium|low", "suggestion": "..."}}],
  "missing_products": 0,
  "recommendations": ["..."]
}}
"""

REPAIR_PROMPT = """\
You will receive JSON that should match the flyer schema. Validate and repair it.

INPUT:
{data}

CHECKS
- price_eur / original_price_eur must be "X,XX {symbol}" or null. Convert "0 99 {symbol}" -> "0,99 {symbol}".
- discount_pct is an integer 1..99 or null; keep the printed form in discount_text.
- promotion_type is one of single_product, category, brand_line, equipment, bundle, loyalty.
- Remove obvious non-promotions (legal notes, page legends).
- If original_price_eur is lower than price_eur keep both and add a warning.
- Normalize unit to [{units}].
- Extract valid_from/valid_to as ISO dates if present.

OUTPUT
Return the same JSON schema plus a "warnings" array describing fixes. JSON only.
"""


class PromptBuilder:
    """Renders extraction prompts from an injected FlyerVocabulary."""

    def __init__(self, vocabulary: Optional[FlyerVocabulary] = None):
        self.vocabulary = vocabulary or FlyerVocabulary()

    # ---------------------------------------------------------------------------
    # Shared pieces
    # ---------------------------------------------------------------------------

    def schema(self) -> str:
        v = self.vocabulary
        return OUTPUT_SCHEMA.format(
            currency=v.currency,
            locale=v.locale,
            language=v.language,
            units="|".join(v.canonical_units()),
            symbol=v.currency_symbol,
        )

    def available_categories(self) -> List[str]:
        return list(self.vocabulary.categories)

    def store_context(self, store_code: str) -> str:
        return self.vocabulary.store_context(store_code)

    def add_store_context(self, store_code: str, context: str) -> None:
        self.vocabulary.add_store_context(store_code, context)

    def supported_stores(self) -> List[str]:
        return self.vocabulary.supported_stores()

    def _common(self, store_code: str, page_number: int) -> dict:
        v = self.vocabulary
        return {
            "language": v.language,
            "symbol": v.currency_symbol,
            "store_code": (store_code or "").lower(),
            "page_number": page_number,
            "store_context": self.store_context(store_code),
            "categories": ", ".join(v.categories),
            "types_guide": PROMOTION_TYPES_GUIDE,
            "schema": self.schema(),
        }

    # ---------------------------------------------------------------------------
    # Core prompts
    # ---------------------------------------------------------------------------

    def detection_prompt(self, store_code: str, page_number: int) -> str:
        return DETECTION_PROMPT.format(**self._common(store_code, page_number))

    def fill_details_prompt(self, store_code: str, page_number: int, boxes_json: str) -> str:
        """Pass-2 prompt; boxes_json is the serialized pass-1 promotion list."""
        try:
            box_count = len(json.loads(boxes_json))
        except (ValueError, TypeError):
            box_count = "same as input"
        return FILL_DETAILS_PROMPT.format(
            boxes=boxes_json,
            box_count=box_count,
            **self._common(store_code, page_number),
        )

    def unified_prompt(self, store_code: str, page_number: int) -> str:
        return UNIFIED_PROMPT.format(**self._common(store_code, page_number))

    # ---------------------------------------------------------------------------
    # Secondary prompts
    # ---------------------------------------------------------------------------

    def text_extraction_prompt(self, store_code: str) -> str:
        return TEXT_EXTRACTION_PROMPT.format(
            store_upper=(store_code or "").upper(),
            language=self.vocabulary.language,
            store_context=self.store_context(store_code),
        )

    def category_classification_prompt(self, text: str) -> str:
        return CATEGORY_CLASSIFICATION_PROMPT.format(
            language=self.vocabulary.language,
            categories=", ".join(self.vocabulary.categories),
            text=text,
        )

    def price_analysis_prompt(self, items: Iterable[Any]) -> str:
        lines = [item if isinstance(item, str) else json.dumps(item, ensure_ascii=False) for item in items]
        return PRICE_ANALYSIS_PROMPT.format(
            items="\n".join(lines), symbol=self.vocabulary.currency_symbol
        )

    def quality_check_prompt(self, data: str) -> str:
        return QUALITY_CHECK_PROMPT.format(data=data)

    def repair_prompt(self, data: str) -> str:
        return REPAIR_PROMPT.format(
            data=data,
            symbol=self.vocabulary.currency_symbol,
            units=", ".join(self.vocabulary.canonical_units()),
        )
