"""
State schema for the flyer promotion pipeline.

This file defines the Pydantic models that flow through extraction:

- Promotion / PageMeta / PageExtraction: the model-facing schema. Field
  aliases (name_lt, price_eur, discount_pct, ...) match the JSON the vision
  model is asked to produce; the Python names are accepted as well.
  Values of the wrong shape are coerced or nulled instead of failing the
  whole page.
- ExtractedProduct: the flat, price-only legacy view.
- UsageEvent / ExtractionFailure / ExtractionResult: per-page outcome.
- ExtractionState: the LangGraph state for one page. usage_events uses an
  additive reducer so every node can append the calls it made.
"""

from __future__ import annotations

import json
import math
import operator
import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationInfo, field_validator


# ---- Utility ----
_INT_RE = re.compile(r"\d+")


def _coerce_text(v: Any) -> Any:
	if v is None or isinstance(v, str):
		return v
	if isinstance(v, bool):
		return str(v).lower()
	if isinstance(v, float):
		return f"{v:.2f}"
	return str(v)


class PromotionType(str, Enum):
	SINGLE_PRODUCT = "single_product"
	CATEGORY = "category"
	BRAND_LINE = "brand_line"
	EQUIPMENT = "equipment"
	BUNDLE = "bundle"
	LOYALTY = "loyalty"


class DiscountType(str, Enum):
	PERCENTAGE = "percentage"
	ABSOLUTE = "absolute"
	BUNDLE = "bundle"
	LOYALTY = "loyalty"


class BoundingBox(BaseModel):
	"""Rectangle in page coordinates normalized to 0..1."""

	x: float = 0.0
	y: float = 0.0
	width: float = 0.0
	height: float = 0.0

	@field_validator("x", "y", "width", "height", mode="before")
	@classmethod
	def _clamp(cls, v: Any) -> float:
		try:
			value = float(v) if v is not None else 0.0
		except (TypeError, ValueError):
			value = 0.0
		if not math.isfinite(value):
			value = 0.0
		return min(max(value, 0.0), 1.0)


class PageMeta(BaseModel):
	"""Per-page context reported by the model (defaulted when absent)."""

	store_code: Optional[str] = None
	currency: str = "EUR"
	locale: str = "lt-LT"
	valid_from: Optional[date] = None
	valid_to: Optional[date] = None
	page_number: int = 0
	detected_text_sample: Optional[str] = None

	@field_validator("store_code", mode="before")
	@classmethod
	def _lower_store(cls, v: Any) -> Any:
		v = _coerce_text(v)
		if isinstance(v, str):
			return v.strip().lower() or None
		return v

	@field_validator("currency", "locale", mode="before")
	@classmethod
	def _default_when_missing(cls, v: Any, info: ValidationInfo) -> Any:
		if v is None or (isinstance(v, str) and not v.strip()):
			return "EUR" if info.field_name == "currency" else "lt-LT"
		return _coerce_text(v).strip()

	@field_validator("valid_from", "valid_to", mode="before")
	@classmethod
	def _lenient_date(cls, v: Any) -> Any:
		if v is None or isinstance(v, date):
			return v
		try:
			return date.fromisoformat(str(v).strip()[:10])
		except ValueError:
			return None

	@field_validator("page_number", mode="before")
	@classmethod
	def _page_number(cls, v: Any) -> int:
		if isinstance(v, float) and not math.isfinite(v):
			return 0
		try:
			return max(int(v), 0)
		except (TypeError, ValueError, OverflowError):
			return 0

	@field_validator("detected_text_sample", mode="before")
	@classmethod
	def _truncate_sample(cls, v: Any) -> Any:
		v = _coerce_text(v)
		return v[:200] if isinstance(v, str) else v


class Promotion(BaseModel):
	"""One detected flyer module with price / discount / loyalty / bundle semantics."""

	model_config = ConfigDict(populate_by_name=True)

	promotion_type: PromotionType = PromotionType.SINGLE_PRODUCT
	name: Optional[str] = Field(
		default=None,
		validation_alias=AliasChoices("name_lt", "name"),
		serialization_alias="name_lt",
		description="Verbatim source-language text; null if illegible",
	)
	brand: Optional[str] = None
	category_guess: Optional[str] = Field(
		default=None,
		validation_alias=AliasChoices("category_guess_lt", "category_guess"),
		serialization_alias="category_guess_lt",
	)
	unit: Optional[str] = None
	unit_size: Optional[str] = None
	price: Optional[str] = Field(
		default=None,
		validation_alias=AliasChoices("price_eur", "price"),
		serialization_alias="price_eur",
	)
	original_price: Optional[str] = Field(
		default=None,
		validation_alias=AliasChoices("original_price_eur", "original_price"),
		serialization_alias="original_price_eur",
	)
	price_per_unit: Optional[str] = Field(
		default=None,
		validation_alias=AliasChoices("price_per_unit_eur", "price_per_unit"),
		serialization_alias="price_per_unit_eur",
	)
	discount_percent: Optional[int] = Field(
		default=None,
		validation_alias=AliasChoices("discount_pct", "discount_percent"),
		serialization_alias="discount_pct",
	)
	discount_text: Optional[str] = None
	discount_type: Optional[DiscountType] = None
	special_tags: List[str] = Field(default_factory=list)
	loyalty_required: bool = False
	bundle_details: Optional[str] = None
	bounding_box: Optional[BoundingBox] = None
	confidence: float = Field(default=0.0, ge=0.0, le=1.0)

	@field_validator("promotion_type", mode="before")
	@classmethod
	def _promotion_type(cls, v: Any) -> Any:
		if isinstance(v, PromotionType):
			return v
		value = str(v or "").strip().lower()
		try:
			return PromotionType(value)
		except ValueError:
			return PromotionType.SINGLE_PRODUCT

	@field_validator("discount_type", mode="before")
	@classmethod
	def _discount_type(cls, v: Any) -> Any:
		if v is None or isinstance(v, DiscountType):
			return v
		try:
			return DiscountType(str(v).strip().lower())
		except ValueError:
			return None

	@field_validator(
		"name", "brand", "category_guess", "unit", "unit_size", "price",
		"original_price", "price_per_unit", "discount_text", "bundle_details",
		mode="before",
	)
	@classmethod
	def _text(cls, v: Any) -> Any:
		v = _coerce_text(v)
		if isinstance(v, str) and v.strip().lower() in {"", "null", "none"}:
			return None
		return v

	@field_validator("discount_percent", mode="before")
	@classmethod
	def _discount_percent(cls, v: Any) -> Optional[int]:
		if v is None or isinstance(v, bool):
			return None
		if isinstance(v, float) and not math.isfinite(v):
			return None
		if isinstance(v, (int, float)):
			return int(round(abs(v)))
		match = _INT_RE.search(str(v))
		return int(match.group(0)) if match else None

	@field_validator("special_tags", mode="before")
	@classmethod
	def _tags(cls, v: Any) -> List[str]:
		if v is None:
			return []
		if isinstance(v, str):
			return [v]
		return [str(t) for t in v if t is not None]

	@field_validator("loyalty_required", mode="before")
	@classmethod
	def _loyalty(cls, v: Any) -> bool:
		if isinstance(v, str):
			return v.strip().lower() in {"true", "yes", "1", "taip"}
		return bool(v)

	@field_validator("confidence", mode="before")
	@classmethod
	def _confidence(cls, v: Any) -> float:
		try:
			value = float(v) if v is not None else 0.0
		except (TypeError, ValueError):
			value = 0.0
		if not math.isfinite(value):
			value = 0.0
		return min(max(value, 0.0), 1.0)


class PageExtraction(BaseModel):
	"""Top-level JSON object returned by every extraction prompt."""

	page_meta: Optional[PageMeta] = None
	promotions: List[Promotion] = Field(default_factory=list)
	warnings: List[str] = Field(default_factory=list)

	@field_validator("promotions", mode="before")
	@classmethod
	def _none_is_empty(cls, v: Any) -> Any:
		return [] if v is None else v

	@field_validator("warnings", mode="before")
	@classmethod
	def _stringify_warnings(cls, v: Any) -> Any:
		if v is None:
			return []
		if isinstance(v, str):
			return [v]
		if isinstance(v, list):
			return [w if isinstance(w, str) else json.dumps(w, ensure_ascii=False) for w in v]
		return v


class ExtractedProduct(BaseModel):
	"""Flat legacy view of a priced promotion, kept for older consumers."""

	name: str = ""
	price: str = ""
	unit: str = ""
	unit_size: Optional[str] = None
	original_price: Optional[str] = None
	discount: Optional[str] = None
	discount_type: Optional[str] = None
	special_discount: Optional[str] = None
	brand: Optional[str] = None
	category: Optional[str] = None
	confidence: float = 0.0
	bounding_box: Optional[BoundingBox] = None


class UsageEvent(BaseModel):
	"""One model call, as reported to the cost-tracking collaborator."""

	timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
	model: str
	operation: str = Field(..., description="detect_promotions, fill_promotion_details, ...")
	prompt_tokens: int = 0
	completion_tokens: int = 0
	total_tokens: int = 0
	cost: float = 0.0
	success: bool = False
	duration_seconds: float = 0.0
	error: Optional[str] = None
	store_code: Optional[str] = None
	page_number: Optional[int] = None


class ExtractionFailure(BaseModel):
	"""Why a page could not be extracted.

	When the unified fallback was attempted, detection_error keeps the
	original detection parse failure next to the fallback's own message.
	"""

	stage: Literal["detect", "fill_details", "fallback_unified", "pipeline"]
	kind: Literal["transport", "parse", "cancelled", "internal"]
	message: str
	detection_error: Optional[str] = None

	def describe(self) -> str:
		text = f"{self.stage} {self.kind} error: {self.message}"
		if self.detection_error:
			text += f" (detection pass failed first: {self.detection_error})"
		return text


class ExtractionResult(BaseModel):
	"""Aggregate outcome for one flyer page. Immutable once returned."""

	model_config = ConfigDict(frozen=True)

	store_code: str
	page_number: int
	promotions: List[Promotion] = Field(default_factory=list)
	products: List[ExtractedProduct] = Field(default_factory=list)
	page_meta: Optional[PageMeta] = None
	total_promotions: int = 0
	total_products: int = 0
	extracted_at: datetime
	finished_at: datetime
	processing_seconds: float = 0.0
	tokens_used: int = 0
	usage_events: List[UsageEvent] = Field(default_factory=list)
	raw_response: Optional[str] = None
	strategy: Optional[Literal["two_pass", "unified"]] = None
	success: bool = False
	error: Optional[str] = None
	failure: Optional[ExtractionFailure] = None


class BatchExtractionResult(BaseModel):
	"""Pages completed for one flyer, plus the cancellation error if any."""

	pages: List[ExtractionResult] = Field(default_factory=list)
	cancelled: bool = False
	error: Optional[str] = None


class ImageSource(BaseModel):
	"""A page image, either by reference or inline (base64)."""

	kind: Literal["url", "inline"]
	url: Optional[str] = None
	data: Optional[str] = Field(default=None, repr=False)
	mime_type: str = "image/jpeg"


class ExtractionState(BaseModel):
	"""LangGraph state for extracting a single page.

	Notes:
	- usage_events uses operator.add so each pass appends its model calls.
	- detection holds the parsed pass-1 output; parsed holds the final
	  (pass-2 or unified) output that is normalized by the finalize node.
	"""

	store_code: str
	page_number: int
	image: ImageSource
	strategy: Optional[Literal["two_pass", "unified"]] = None
	detection: Optional[PageExtraction] = None
	detection_error: Optional[str] = None
	parsed: Optional[PageExtraction] = None
	raw_response: Optional[str] = None
	usage_events: Annotated[List[UsageEvent], operator.add] = Field(default_factory=list)
	failure: Optional[ExtractionFailure] = None
	page_meta: Optional[PageMeta] = None
	promotions: List[Promotion] = Field(default_factory=list)
	products: List[ExtractedProduct] = Field(default_factory=list)
	current_node: Optional[str] = Field(
		default=None, description="Last graph node that ran (for logs)"
	)
