"""
Validation and correction engine for extracted products.

Runs independently of the normalizer, on the flat legacy product view (for
example right before products are stored). Each product goes through a set
of field validators. Each validator returns issues (critical / warning /
info) and corrections. Corrections are applied to a working copy, so even
accepted products come back cleaned.

Acceptance:
- lenient mode (default): a product is valid unless it has a critical issue
- strict mode: warnings reject too; info issues never reject

Batch score = valid rate - (0.10 per critical + 0.05 per warning + 0.01 per
info), clamped to [0, 1]. The batch is trusted when score >= 0.70.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from flyer_promotions.config import FlyerVocabulary
from flyer_promotions.graph.state import ExtractedProduct, ExtractionResult
from flyer_promotions.normalize import normalize_unit

logger = logging.getLogger(__name__)

TWO_DP = Decimal("0.01")
VALID_SCORE_THRESHOLD = 0.70
SEVERITY_PENALTY = {"critical": 0.10, "warning": 0.05, "info": 0.01}

MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 200

_WS_RE = re.compile(r"\s+")
_UNIT_RE = re.compile(r"^(kg|g|l|ml|vnt\.|pak\.|dėž\.|m|cm|mm)\s*\.?$")
UNIT_SUGGESTION = "Expected formats: kg, g, l, ml, vnt., pak., dėž."

Severity = Literal["critical", "warning", "info"]


class ValidatorConfig(BaseModel):
    min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    max_price_threshold: float = Field(default=1000.0, gt=0)
    required_fields: List[str] = Field(default_factory=lambda: ["name", "price"])
    enable_price_validation: bool = True
    enable_category_validation: bool = True
    strict_mode: bool = False


class Issue(BaseModel):
    type: str
    severity: Severity
    description: str
    field: Optional[str] = None
    value: Optional[str] = None
    suggestion: Optional[str] = None
    product_index: Optional[int] = None


class Correction(BaseModel):
    field: str
    original_value: str
    corrected_value: str
    reason: str
    product_index: Optional[int] = None


class InvalidProduct(BaseModel):
    product: ExtractedProduct
    reasons: List[str] = Field(default_factory=list)


class ValidationStatistics(BaseModel):
    total_products: int = 0
    valid_products: int = 0
    invalid_products: int = 0
    corrected_products: int = 0
    valid_rate: float = 0.0
    average_confidence: float = 0.0


class ValidationResult(BaseModel):
    valid_products: List[ExtractedProduct] = Field(default_factory=list)
    invalid_products: List[InvalidProduct] = Field(default_factory=list)
    issues: List[Issue] = Field(default_factory=list)
    corrections: List[Correction] = Field(default_factory=list)
    statistics: ValidationStatistics = Field(default_factory=ValidationStatistics)
    score: float = 0.0
    is_valid: bool = False
    validated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def parse_price_amount(price: str) -> Decimal:
    """Numeric value of a price string ("1,29 €" -> 1.29); 0 when unparseable."""
    cleaned = re.sub(r"[€\s]", "", price or "").replace(",", ".")
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return Decimal("0")
    return value if value.is_finite() else Decimal("0")


class ExtractionValidator:
    """Configurable quality gate over a batch of extracted products."""

    def __init__(
        self,
        config: Optional[ValidatorConfig] = None,
        vocabulary: Optional[FlyerVocabulary] = None,
    ):
        self.config = config or ValidatorConfig()
        self.vocabulary = vocabulary or FlyerVocabulary()
        self._diacritics_re = re.compile(f"[{re.escape(self.vocabulary.diacritics)}]")

    # ---------------------------------------------------------------------------
    # Entry points
    # ---------------------------------------------------------------------------

    def validate_extraction(self, result: ExtractionResult) -> ValidationResult:
        return self.validate_products(result.products)

    def validate_products(self, products: List[ExtractedProduct]) -> ValidationResult:
        validation = ValidationResult()
        corrected_count = 0

        for index, product in enumerate(products):
            working, issues, corrections = self._validate_product(product)
            for item in (*issues, *corrections):
                item.product_index = index
            if corrections:
                corrected_count += 1

            if self._accepts(issues):
                validation.valid_products.append(working)
            else:
                validation.invalid_products.append(
                    InvalidProduct(
                        product=working,
                        reasons=[i.description for i in issues if self._blocks(i)],
                    )
                )
            validation.issues.extend(issues)
            validation.corrections.extend(corrections)

        validation.statistics = self._statistics(
            len(products), validation.valid_products, len(validation.invalid_products), corrected_count
        )
        validation.score = self._score(validation.statistics, validation.issues)
        validation.is_valid = validation.score >= VALID_SCORE_THRESHOLD

        logger.info(
            "Validated %d product(s): %d valid, %d invalid, %d issue(s), score %.2f",
            len(products), len(validation.valid_products), len(validation.invalid_products),
            len(validation.issues), validation.score,
        )
        return validation

    # ---------------------------------------------------------------------------
    # Per-product pipeline
    # ---------------------------------------------------------------------------

    def _blocks(self, issue: Issue) -> bool:
        if issue.severity == "critical":
            return True
        return self.config.strict_mode and issue.severity == "warning"

    def _accepts(self, issues: List[Issue]) -> bool:
        return not any(self._blocks(i) for i in issues)

    def _validate_product(
        self, product: ExtractedProduct
    ) -> Tuple[ExtractedProduct, List[Issue], List[Correction]]:
        issues: List[Issue] = []
        corrections: List[Correction] = []
        working = product.model_copy()

        for field in self.config.required_fields:
            value = getattr(product, field, None)
            if value is None or str(value).strip() == "":
                issues.append(Issue(
                    type="missing_required_field",
                    severity="critical",
                    description=f"Required field '{field}' is missing or empty",
                    field=field,
                ))

        def apply(field: str, found: Tuple[List[Issue], List[Correction]]) -> None:
            field_issues, field_corrections = found
            issues.extend(field_issues)
            corrections.extend(field_corrections)
            if field_corrections:
                setattr(working, field, field_corrections[-1].corrected_value)

        apply("name", self.validate_name(working.name))
        if self.config.enable_price_validation:
            apply("price", self.validate_price(working.price))
        apply("unit", self.validate_unit(working.unit))
        if self.config.enable_category_validation:
            apply("category", self.validate_category(working.category, working.name))

        if working.confidence < self.config.min_confidence:
            issues.append(Issue(
                type="low_confidence",
                severity="warning",
                description=(
                    f"Product confidence {working.confidence:.2f} is below "
                    f"threshold {self.config.min_confidence:.2f}"
                ),
                field="confidence",
                value=f"{working.confidence:.2f}",
            ))

        return working, issues, corrections

    # ---------------------------------------------------------------------------
    # Field validators
    # ---------------------------------------------------------------------------

    def validate_name(self, name: str) -> Tuple[List[Issue], List[Correction]]:
        issues: List[Issue] = []
        corrections: List[Correction] = []
        name = name or ""

        if len(name) < MIN_NAME_LENGTH:
            issues.append(Issue(
                type="name_too_short", severity="critical",
                description="Product name is too short", field="name", value=name,
            ))
        if len(name) > MAX_NAME_LENGTH:
            issues.append(Issue(
                type="name_too_long", severity="warning",
                description="Product name is unusually long", field="name", value=name,
            ))
        if not self._diacritics_re.search(name.lower()):
            issues.append(Issue(
                type="no_native_diacritics", severity="info",
                description=f"Product name does not contain {self.vocabulary.language} characters",
                field="name", value=name,
            ))

        trimmed = name.strip()
        if trimmed != name:
            corrections.append(Correction(
                field="name", original_value=name, corrected_value=trimmed,
                reason="removed leading/trailing whitespace",
            ))
        collapsed = _WS_RE.sub(" ", trimmed)
        if collapsed != trimmed:
            corrections.append(Correction(
                field="name", original_value=trimmed, corrected_value=collapsed,
                reason="normalized multiple spaces",
            ))
        return issues, corrections

    def validate_price(self, price: str) -> Tuple[List[Issue], List[Correction]]:
        issues: List[Issue] = []
        corrections: List[Correction] = []

        if not price:
            issues.append(Issue(
                type="empty_price", severity="critical",
                description="Price is empty", field="price",
            ))
            return issues, corrections

        amount = parse_price_amount(price)
        if amount <= 0:
            issues.append(Issue(
                type="invalid_price_format", severity="critical",
                description="Price format is invalid or price is not positive",
                field="price", value=price,
            ))
            return issues, corrections

        try:
            rounded: Optional[Decimal] = amount.quantize(TWO_DP, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            # more significant digits than the decimal context holds
            rounded = None

        threshold = Decimal(str(self.config.max_price_threshold))
        if amount > threshold:
            shown = rounded if rounded is not None else amount
            issues.append(Issue(
                type="price_too_high", severity="warning",
                description=f"Price {shown} exceeds reasonable threshold {threshold:.2f}",
                field="price", value=price,
            ))

        if rounded is None:
            return issues, corrections
        canonical = f"{rounded} {self.vocabulary.currency_symbol}"
        if canonical != price:
            corrections.append(Correction(
                field="price", original_value=price, corrected_value=canonical,
                reason="normalized price format",
            ))
        return issues, corrections

    def validate_unit(self, unit: str) -> Tuple[List[Issue], List[Correction]]:
        issues: List[Issue] = []
        corrections: List[Correction] = []

        if not unit or not unit.strip():
            issues.append(Issue(
                type="empty_unit", severity="warning",
                description="Unit is empty", field="unit",
            ))
            return issues, corrections

        if not _UNIT_RE.match(unit.strip().lower()):
            issues.append(Issue(
                type="invalid_unit_format", severity="warning",
                description="Unit format doesn't match expected pattern",
                field="unit", value=unit, suggestion=UNIT_SUGGESTION,
            ))

        corrected = normalize_unit(unit.lower(), self.vocabulary.unit_synonyms)
        if corrected != unit:
            corrections.append(Correction(
                field="unit", original_value=unit, corrected_value=corrected,
                reason="normalized unit format",
            ))
        return issues, corrections

    def validate_category(
        self, category: Optional[str], name: str
    ) -> Tuple[List[Issue], List[Correction]]:
        issues: List[Issue] = []
        corrections: List[Correction] = []

        if not category or not category.strip():
            inferred = self.infer_category(name)
            if inferred:
                corrections.append(Correction(
                    field="category", original_value=category or "",
                    corrected_value=inferred, reason="inferred from product name",
                ))
            else:
                issues.append(Issue(
                    type="empty_category", severity="warning",
                    description="Category is empty and could not be inferred",
                    field="category",
                ))
            return issues, corrections

        normalized = self.normalize_category(category)
        if normalized != category:
            corrections.append(Correction(
                field="category", original_value=category, corrected_value=normalized,
                reason="normalized to known category",
            ))
        return issues, corrections

    # ---------------------------------------------------------------------------
    # Category helpers
    # ---------------------------------------------------------------------------

    def normalize_category(self, category: str) -> str:
        """Canonical categories map to themselves; keywords map to their category."""
        lowered = category.strip().lower()
        for known in self.vocabulary.categories:
            if known.lower() == lowered:
                return known
        keywords = self.vocabulary.category_keywords
        if lowered in keywords:
            return keywords[lowered]
        for keyword, mapped in keywords.items():
            if keyword in lowered or lowered in keyword:
                return mapped
        return lowered

    def infer_category(self, name: str) -> Optional[str]:
        lowered = (name or "").lower()
        for keyword, category in self.vocabulary.category_keywords.items():
            if keyword in lowered:
                return category
        return None

    # ---------------------------------------------------------------------------
    # Aggregates
    # ---------------------------------------------------------------------------

    @staticmethod
    def _statistics(
        total: int, valid: List[ExtractedProduct], invalid_count: int, corrected: int
    ) -> ValidationStatistics:
        stats = ValidationStatistics(
            total_products=total,
            valid_products=len(valid),
            invalid_products=invalid_count,
            corrected_products=corrected,
        )
        if total:
            stats.valid_rate = len(valid) / total
        if valid:
            stats.average_confidence = sum(p.confidence for p in valid) / len(valid)
        return stats

    @staticmethod
    def _score(stats: ValidationStatistics, issues: List[Issue]) -> float:
        penalty = sum(SEVERITY_PENALTY[i.severity] for i in issues)
        score = round(stats.valid_rate - penalty, 4)
        return min(max(score, 0.0), 1.0)
