"""
Promotion extractor: the public entry point for flyer page extraction.

PromotionExtractor runs the extraction graph once per page and turns the
final graph state into an immutable ExtractionResult. Page-level failures
never raise; they come back as results with success=False, an error string
and a structured ExtractionFailure.

Batches (extract_flyer) are processed strictly one page at a time with a
cancellable pause between pages.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from flyer_promotions.config import ExtractorConfig, FlyerVocabulary
from flyer_promotions.graph.nodes.extraction import ExtractionNodes
from flyer_promotions.graph.state import (
    BatchExtractionResult,
    ExtractionFailure,
    ExtractionResult,
    ExtractionState,
    ImageSource,
    UsageEvent,
)
from flyer_promotions.graph.workflow import build_graph
from flyer_promotions.normalize import PromotionNormalizer
from flyer_promotions.prompts.flyer_prompts import PromptBuilder
from flyer_promotions.vision_client import VisionClient, encode_image_bytes

logger = logging.getLogger(__name__)

LOW_PROMOTION_COUNT = 5
LOW_AVERAGE_CONFIDENCE = 0.5


class ExtractionStats(BaseModel):
    total_pages: int = 0
    successful_extractions: int = 0
    failed_extractions: int = 0
    total_promotions: int = 0
    total_products_extracted: int = 0
    average_products_per_page: float = 0.0
    total_tokens_used: int = 0
    total_cost: float = 0.0
    average_processing_seconds: float = 0.0
    success_rate: float = 0.0


class QualityAssessment(BaseModel):
    state: Literal["completed", "warning", "failed"] = "completed"
    score: float = 1.0
    requires_review: bool = False
    issues: List[str] = Field(default_factory=list)


class PromotionExtractor:
    """Extract promotions from flyer page images with a vision model."""

    def __init__(
        self,
        client: VisionClient,
        vocabulary: Optional[FlyerVocabulary] = None,
        config: Optional[ExtractorConfig] = None,
        usage_sink: Optional[Callable[[UsageEvent], None]] = None,
    ):
        self.client = client
        self.vocabulary = vocabulary or FlyerVocabulary()
        self.config = config or ExtractorConfig.from_env()
        self.prompts = PromptBuilder(self.vocabulary)
        self.normalizer = PromotionNormalizer(self.vocabulary)
        self.nodes = ExtractionNodes(
            client, self.prompts, self.normalizer, self.config, usage_sink=usage_sink
        )
        self.graph = build_graph(self.nodes)

    # ---------------------------------------------------------------------------
    # Single page
    # ---------------------------------------------------------------------------

    def extract_page(
        self,
        image_url: str,
        store_code: str,
        page_number: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExtractionResult:
        """Extract one page whose image is reachable by URL."""
        image = ImageSource(kind="url", url=image_url)
        return self._run(image, store_code, page_number, cancel_event)

    def extract_page_from_bytes(
        self,
        image: Union[bytes, str],
        store_code: str,
        page_number: int,
        mime_type: str = "image/jpeg",
        cancel_event: Optional[threading.Event] = None,
    ) -> ExtractionResult:
        """Extract one page from raw bytes or an already base64-encoded string."""
        data = encode_image_bytes(image) if isinstance(image, bytes) else image
        source = ImageSource(kind="inline", data=data, mime_type=mime_type)
        return self._run(source, store_code, page_number, cancel_event)

    def _run(
        self,
        image: ImageSource,
        store_code: str,
        page_number: int,
        cancel_event: Optional[threading.Event],
    ) -> ExtractionResult:
        extracted_at = datetime.now(timezone.utc)
        started = time.monotonic()
        logger.info("Extracting %s page %s", store_code, page_number)

        initial = ExtractionState(store_code=store_code, page_number=page_number, image=image)
        cfg = {"configurable": {"cancel_event": cancel_event}}
        try:
            final = self.graph.invoke(initial, config=cfg)
            state = final if isinstance(final, ExtractionState) else ExtractionState(**{**dict(initial), **final})
        except Exception as exc:
            logger.exception("Extraction graph failed for %s page %s", store_code, page_number)
            failure = ExtractionFailure(stage="pipeline", kind="internal", message=f"{type(exc).__name__}: {exc}")
            state = initial.model_copy(update={"failure": failure})

        result = self._build_result(state, extracted_at, time.monotonic() - started)
        if result.success:
            logger.info(
                "Page %s of %s: %d promotion(s), %d product(s) via %s in %.2fs",
                page_number, store_code, result.total_promotions,
                result.total_products, result.strategy, result.processing_seconds,
            )
        else:
            logger.warning("Page %s of %s failed: %s", page_number, store_code, result.error)
        return result

    @staticmethod
    def _build_result(state: ExtractionState, extracted_at: datetime, elapsed: float) -> ExtractionResult:
        failure = state.failure
        return ExtractionResult(
            store_code=state.store_code,
            page_number=state.page_number,
            promotions=[] if failure else state.promotions,
            products=[] if failure else state.products,
            page_meta=None if failure else state.page_meta,
            total_promotions=0 if failure else len(state.promotions),
            total_products=0 if failure else len(state.products),
            extracted_at=extracted_at,
            finished_at=datetime.now(timezone.utc),
            processing_seconds=round(elapsed, 4),
            tokens_used=sum(e.total_tokens for e in state.usage_events),
            usage_events=list(state.usage_events),
            raw_response=state.raw_response,
            strategy=None if failure else state.strategy,
            success=failure is None,
            error=failure.describe() if failure else None,
            failure=failure,
        )

    # ---------------------------------------------------------------------------
    # Batch
    # ---------------------------------------------------------------------------

    def extract_flyer(
        self,
        images: Iterable[Union[str, ImageSource]],
        store_code: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchExtractionResult:
        """Extract every page of one flyer, sequentially.

        Pages are image URLs or ImageSource values, so inline images can be
        batched alongside URLs.

        Failed pages are kept as failed results and the batch carries on.
        Cancellation stops the batch; the page that was interrupted is left
        out, so every returned page is complete.
        """
        event = cancel_event or threading.Event()
        delay = self.config.page_delay_seconds
        pages: List[ExtractionResult] = []

        for i, image in enumerate(images):
            if i > 0 and delay > 0:
                if event.wait(delay):
                    return self._cancelled(pages, store_code)
            elif event.is_set():
                return self._cancelled(pages, store_code)

            source = ImageSource(kind="url", url=image) if isinstance(image, str) else image
            result = self._run(source, store_code, i + 1, event)
            if result.failure is not None and result.failure.kind == "cancelled":
                return self._cancelled(pages, store_code)
            pages.append(result)

        failed = sum(1 for p in pages if not p.success)
        logger.info("Flyer %s done: %d page(s), %d failed", store_code, len(pages), failed)
        return BatchExtractionResult(pages=pages)

    @staticmethod
    def _cancelled(pages: List[ExtractionResult], store_code: str) -> BatchExtractionResult:
        message = f"flyer extraction cancelled after {len(pages)} page(s)"
        logger.warning("%s: %s", store_code, message)
        return BatchExtractionResult(pages=pages, cancelled=True, error=message)


# ---------------------------------------------------------------------------
# Reporting helpers
# ---------------------------------------------------------------------------

def summarize_extractions(results: Iterable[ExtractionResult]) -> ExtractionStats:
    """Aggregate totals and averages over a set of page results."""
    results = list(results)
    stats = ExtractionStats(total_pages=len(results))
    if not results:
        return stats

    successful = [r for r in results if r.success]
    stats.successful_extractions = len(successful)
    stats.failed_extractions = len(results) - len(successful)
    stats.total_promotions = sum(r.total_promotions for r in successful)
    stats.total_products_extracted = sum(r.total_products for r in successful)
    stats.total_tokens_used = sum(r.tokens_used for r in results)
    stats.total_cost = round(sum(e.cost for r in results for e in r.usage_events), 6)
    stats.average_processing_seconds = round(
        sum(r.processing_seconds for r in results) / len(results), 4
    )
    stats.success_rate = len(successful) / len(results)
    if successful:
        stats.average_products_per_page = stats.total_products_extracted / len(successful)
    return stats


def assess_quality(result: ExtractionResult) -> QualityAssessment:
    """Coarse quality gate for one page result.

    Promotions are counted when present, otherwise legacy products.
    """
    if not result.success:
        return QualityAssessment(
            state="failed", score=0.0, requires_review=True,
            issues=[result.error or "Extraction failed"],
        )

    assessment = QualityAssessment()
    items = result.promotions or result.products
    if not items:
        assessment.state = "warning"
        assessment.requires_review = True
        assessment.score = 0.0
        assessment.issues.append("No promotions extracted")
        return assessment

    if len(items) < LOW_PROMOTION_COUNT:
        assessment.state = "warning"
        assessment.requires_review = True
        assessment.score = 0.4
        assessment.issues.append("Low promotion count")

    average = sum(item.confidence for item in items) / len(items)
    if average < LOW_AVERAGE_CONFIDENCE:
        assessment.requires_review = True
        assessment.issues.append("Low confidence scores")
    return assessment
