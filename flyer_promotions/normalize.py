"""
Promotion normalizer and confidence scorer.

Applied to every promotion after a successful parse:

1. Clean text fields (trim, collapse whitespace).
2. Normalize prices to "D,DD <symbol>" (spaced decimals, symbol on either
   side, bare numbers get the symbol appended). Anything that matches no
   price pattern ("-30%", "2 vnt. už 3 €") becomes null.
3. Map units through the synonym table and categories onto the vocabulary.
4. De-duplicate special tags case-insensitively.
5. Drop promotions with no signal (no valid price, percent, bundle or
   loyalty marker) and score the rest.

Every step maps canonical output to itself, so normalizing twice is a no-op.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Tuple

from flyer_promotions.config import FlyerVocabulary
from flyer_promotions.graph.state import (
    DiscountType,
    ExtractedProduct,
    PageMeta,
    Promotion,
)

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")
# Canonical "D,DD <symbol>" form produced by normalize_price
_CANONICAL_PRICE_RE = re.compile(r"^\d+,\d{2} \S+$")
_UNKNOWN_RE = re.compile(r"\bunknown\b", re.IGNORECASE)

BASE_CONFIDENCE = 0.5


def clean_text(value: Optional[str]) -> Optional[str]:
    """Trim and collapse internal whitespace; empty strings become None."""
    if value is None:
        return None
    cleaned = _WS_RE.sub(" ", value).strip()
    return cleaned or None


def normalize_unit(value: Optional[str], synonyms: dict) -> Optional[str]:
    """Case-insensitive lookup in the unit synonym table; unmatched values pass through."""
    cleaned = clean_text(value)
    if cleaned is None:
        return None
    return synonyms.get(cleaned.lower(), cleaned)


class PromotionNormalizer:
    """Cleans, filters and scores promotions using an injected vocabulary."""

    def __init__(self, vocabulary: Optional[FlyerVocabulary] = None):
        self.vocabulary = vocabulary or FlyerVocabulary()
        symbol = re.escape(self.vocabulary.currency_symbol)
        # "0 99 €", "0,99€", "€ 0.99", "0.99" -> groups (units, cents)
        self._price_re = re.compile(
            rf"^(?:{symbol}\s*)?(\d+)(?:[,.]|\s+)(\d{{2}})(?:\s*{symbol})?$"
        )
        # "3 €", "€3" -> whole amounts only when a symbol is present
        self._whole_price_re = re.compile(rf"^(?:{symbol}\s*(\d+)|(\d+)\s*{symbol})$")
        self._valid_price_re = re.compile(rf"^\d+,\d{{2}} {symbol}$")

    # ---------------------------------------------------------------------------
    # Field normalizers
    # ---------------------------------------------------------------------------

    def normalize_price(self, value: Optional[str]) -> Optional[str]:
        cleaned = clean_text(value)
        if cleaned is None:
            return None
        symbol = self.vocabulary.currency_symbol

        match = self._price_re.match(cleaned)
        if match:
            return f"{match.group(1)},{match.group(2)} {symbol}"

        match = self._whole_price_re.match(cleaned)
        if match:
            whole = match.group(1) or match.group(2)
            return f"{whole},00 {symbol}"

        return None

    def normalize_unit(self, value: Optional[str]) -> Optional[str]:
        return normalize_unit(value, self.vocabulary.unit_synonyms)

    def normalize_category(self, value: Optional[str]) -> Optional[str]:
        cleaned = clean_text(value)
        if cleaned is None:
            return None
        lowered = cleaned.lower()
        categories = self.vocabulary.categories
        for category in categories:
            if category.lower() == lowered:
                return category
        for category in categories:
            candidate = category.lower()
            if lowered in candidate or candidate in lowered:
                return category
        return cleaned

    @staticmethod
    def normalize_tags(tags: Iterable[str]) -> List[str]:
        seen = set()
        result: List[str] = []
        for tag in tags:
            cleaned = clean_text(tag)
            if cleaned is None:
                continue
            key = cleaned.lower()
            if key in seen:
                continue
            seen.add(key)
            result.append(cleaned)
        return result

    # ---------------------------------------------------------------------------
    # Validity filter and scoring
    # ---------------------------------------------------------------------------

    def has_valid_price(self, price: Optional[str]) -> bool:
        return bool(price) and bool(self._valid_price_re.match(price))

    @staticmethod
    def has_percent(promo: Promotion) -> bool:
        return promo.discount_percent is not None and 0 < promo.discount_percent < 100

    @staticmethod
    def is_bundle(promo: Promotion) -> bool:
        if promo.discount_type == DiscountType.BUNDLE:
            return True
        return any("+" in tag for tag in promo.special_tags)

    @staticmethod
    def is_loyalty(promo: Promotion) -> bool:
        return promo.discount_type == DiscountType.LOYALTY or promo.loyalty_required

    def is_retained(self, promo: Promotion) -> bool:
        return (
            self.has_valid_price(promo.price)
            or self.has_percent(promo)
            or self.is_bundle(promo)
            or self.is_loyalty(promo)
        )

    def score(self, promo: Promotion) -> float:
        """Heuristic completeness score in [0, 1]."""
        confidence = BASE_CONFIDENCE
        if promo.name:
            confidence += 0.1
        if promo.price:
            confidence += 0.2
        if promo.unit or promo.unit_size:
            confidence += 0.05
        if promo.brand:
            confidence += 0.05
        if promo.category_guess:
            confidence += 0.05
        if self.has_valid_price(promo.price):
            confidence += 0.05
        if promo.name and _UNKNOWN_RE.search(promo.name):
            confidence -= 0.2
        return min(max(round(confidence, 4), 0.0), 1.0)

    # ---------------------------------------------------------------------------
    # Entry points
    # ---------------------------------------------------------------------------

    def normalize(self, promo: Promotion) -> Promotion:
        """Return a cleaned copy of one promotion (not yet filtered or scored)."""
        discount = promo.discount_percent
        if discount is not None and not 0 < discount < 100:
            discount = None
        return promo.model_copy(
            update={
                "name": clean_text(promo.name),
                "brand": clean_text(promo.brand),
                "category_guess": self.normalize_category(promo.category_guess),
                "unit": self.normalize_unit(promo.unit),
                "unit_size": clean_text(promo.unit_size),
                "price": self.normalize_price(promo.price),
                "original_price": self.normalize_price(promo.original_price),
                "price_per_unit": self.normalize_price(promo.price_per_unit),
                "discount_percent": discount,
                "discount_text": clean_text(promo.discount_text),
                "bundle_details": clean_text(promo.bundle_details),
                "special_tags": self.normalize_tags(promo.special_tags),
            }
        )

    def normalize_promotions(self, promotions: Iterable[Promotion]) -> List[Promotion]:
        """Clean, filter and score promotions, preserving order."""
        retained: List[Promotion] = []
        dropped = 0
        for promo in promotions:
            cleaned = self.normalize(promo)
            if not self.is_retained(cleaned):
                dropped += 1
                continue
            retained.append(cleaned.model_copy(update={"confidence": self.score(cleaned)}))
        if dropped:
            logger.info("Dropped %d promotion(s) with no price, percent, bundle or loyalty marker", dropped)
        return retained

    def normalize_page(
        self,
        page_meta: Optional[PageMeta],
        promotions: Iterable[Promotion],
        page_number: int,
        store_code: Optional[str] = None,
    ) -> Tuple[PageMeta, List[Promotion]]:
        """Normalize a parsed page; the page number is backfilled when the model gave 0."""
        meta = page_meta or PageMeta(
            store_code=store_code,
            currency=self.vocabulary.currency,
            locale=self.vocabulary.locale,
        )
        update = {}
        if meta.page_number == 0:
            update["page_number"] = page_number
        if not meta.store_code and store_code:
            update["store_code"] = store_code.lower()
        if update:
            meta = meta.model_copy(update=update)
        return meta, self.normalize_promotions(promotions)


def to_legacy_products(promotions: Iterable[Promotion]) -> List[ExtractedProduct]:
    """Project priced promotions onto the flat legacy product view (order kept)."""
    products: List[ExtractedProduct] = []
    for promo in promotions:
        if not promo.price or not _CANONICAL_PRICE_RE.match(promo.price):
            continue
        discount = promo.discount_text
        if not discount and promo.discount_percent is not None:
            discount = f"-{promo.discount_percent}%"
        products.append(
            ExtractedProduct(
                name=promo.name or "",
                price=promo.price,
                unit=promo.unit or "",
                unit_size=promo.unit_size,
                original_price=promo.original_price,
                discount=discount,
                discount_type=promo.discount_type.value if promo.discount_type else None,
                special_discount=", ".join(promo.special_tags) or None,
                brand=promo.brand,
                category=promo.category_guess,
                confidence=promo.confidence,
                bounding_box=promo.bounding_box,
            )
        )
    return products
