"""
Extraction nodes: the two-pass protocol with a single-pass fallback.

    detect ──parsed──▶ fill_details ──▶ finalize
       │                    │
       ├─unparseable─▶ fallback_unified ──▶ finalize
       │                    │
       └─call failed──▶ END ◀─ failure ─┘

- detect: pass 1, coarse boxes. A transport error ends the run; a parse
  error routes to the unified fallback.
- fill_details: pass 2 over the pass-1 boxes. Any failure ends the run.
- fallback_unified: single pass. Any failure ends the run, keeping the
  original detection parse error next to its own.
- finalize: normalize + score promotions and derive the legacy products.

Each node returns a partial state update (LangGraph merges it); model calls
are recorded as UsageEvents via the additive usage_events reducer. The
per-run cancellation event travels in config["configurable"]["cancel_event"].
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from langchain_core.runnables import RunnableConfig

from flyer_promotions.config import ExtractorConfig
from flyer_promotions.graph.state import (
    ExtractionFailure,
    ExtractionState,
    PageExtraction,
    Promotion,
    UsageEvent,
)
from flyer_promotions.normalize import PromotionNormalizer, to_legacy_products
from flyer_promotions.parsing import ResponseParseError, parse_promotion_response
from flyer_promotions.prompts.flyer_prompts import PromptBuilder
from flyer_promotions.vision_client import OperationCancelled, VisionClient, VisionResponse

logger = logging.getLogger(__name__)

OP_DETECT = "detect_promotions"
OP_FILL_DETAILS = "fill_promotion_details"
OP_UNIFIED = "extract_promotions_unified"


def _cancel_event(config: Optional[RunnableConfig]) -> Optional[threading.Event]:
    if not config:
        return None
    return (config.get("configurable") or {}).get("cancel_event")


class ExtractionNodes:
    """Graph nodes bound to one client / prompt builder / normalizer."""

    def __init__(
        self,
        client: VisionClient,
        prompts: PromptBuilder,
        normalizer: PromotionNormalizer,
        config: ExtractorConfig,
        usage_sink: Optional[Callable[[UsageEvent], None]] = None,
    ):
        self.client = client
        self.prompts = prompts
        self.normalizer = normalizer
        self.config = config
        self.usage_sink = usage_sink

    # ---------------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------------

    def _call_model(
        self, state: ExtractionState, prompt: str, cancel_event: Optional[threading.Event]
    ) -> VisionResponse:
        image = state.image
        if image.kind == "url":
            return self.client.analyze_image(image.url, prompt, cancel_event=cancel_event)
        return self.client.analyze_image_bytes(
            image.data, prompt, mime_type=image.mime_type, cancel_event=cancel_event
        )

    def _usage_event(
        self,
        state: ExtractionState,
        operation: str,
        started: float,
        response: Optional[VisionResponse],
        error: Optional[str],
    ) -> UsageEvent:
        total = response.total_tokens if response else 0
        event = UsageEvent(
            model=(response.model if response and response.model else getattr(self.client, "model_name", "")),
            operation=operation,
            prompt_tokens=response.prompt_tokens if response else 0,
            completion_tokens=response.completion_tokens if response else 0,
            total_tokens=total,
            cost=round(total / 1000.0 * self.config.cost_per_1k_tokens, 6),
            success=error is None,
            duration_seconds=round(time.monotonic() - started, 4),
            error=error,
            store_code=state.store_code,
            page_number=state.page_number,
        )
        if self.usage_sink is not None:
            try:
                self.usage_sink(event)
            except Exception:
                logger.exception("Usage sink rejected event for %s", operation)
        return event

    def _run_pass(
        self,
        state: ExtractionState,
        stage: str,
        operation: str,
        prompt: str,
        config: Optional[RunnableConfig],
    ) -> Dict[str, Any]:
        """Call the model and parse the reply.

        Returns a dict with keys: parsed (PageExtraction or None), raw (str or
        None), event (UsageEvent), failure_kind / failure_message when
        something went wrong.
        """
        started = time.monotonic()
        try:
            response = self._call_model(state, prompt, _cancel_event(config))
        except OperationCancelled as exc:
            event = self._usage_event(state, operation, started, None, f"cancelled: {exc}")
            return {"parsed": None, "raw": None, "event": event,
                    "failure_kind": "cancelled", "failure_message": str(exc)}
        except Exception as exc:
            logger.error(
                "Vision call failed (%s, store=%s page=%s): %s",
                stage, state.store_code, state.page_number, exc,
            )
            event = self._usage_event(state, operation, started, None, str(exc))
            return {"parsed": None, "raw": None, "event": event,
                    "failure_kind": "transport", "failure_message": f"vision model call failed: {exc}"}

        try:
            parsed = parse_promotion_response(response.content)
        except ResponseParseError as exc:
            event = self._usage_event(state, operation, started, response, str(exc))
            return {"parsed": None, "raw": response.content, "event": event,
                    "failure_kind": "parse", "failure_message": str(exc)}

        event = self._usage_event(state, operation, started, response, None)
        return {"parsed": parsed, "raw": response.content, "event": event}

    @staticmethod
    def _boxes_json(promotions: List[Promotion]) -> str:
        boxes = [p.model_dump(mode="json", by_alias=True, exclude_none=True) for p in promotions]
        return json.dumps(boxes, ensure_ascii=False, indent=2)

    # ---------------------------------------------------------------------------
    # Graph nodes
    # ---------------------------------------------------------------------------

    def detect(self, state: ExtractionState, config: RunnableConfig) -> Dict[str, Any]:
        prompt = self.prompts.detection_prompt(state.store_code, state.page_number)
        outcome = self._run_pass(state, "detect", OP_DETECT, prompt, config)
        update: Dict[str, Any] = {
            "current_node": "detect",
            "usage_events": [outcome["event"]],
            "raw_response": outcome["raw"],
        }

        kind = outcome.get("failure_kind")
        if kind == "parse":
            logger.warning(
                "Detection response unparseable for %s page %s, using unified prompt: %s",
                state.store_code, state.page_number, outcome["failure_message"],
            )
            update["detection_error"] = outcome["failure_message"]
        elif kind is not None:
            update["failure"] = ExtractionFailure(
                stage="detect", kind=kind, message=outcome["failure_message"]
            )
        else:
            logger.info(
                "Detection found %d module(s) on %s page %s",
                len(outcome["parsed"].promotions), state.store_code, state.page_number,
            )
            update["detection"] = outcome["parsed"]
        return update

    def fill_details(self, state: ExtractionState, config: RunnableConfig) -> Dict[str, Any]:
        detected = state.detection.promotions if state.detection else []
        prompt = self.prompts.fill_details_prompt(
            state.store_code, state.page_number, self._boxes_json(detected)
        )
        outcome = self._run_pass(state, "fill_details", OP_FILL_DETAILS, prompt, config)
        update: Dict[str, Any] = {
            "current_node": "fill_details",
            "usage_events": [outcome["event"]],
        }
        if outcome["raw"] is not None:
            update["raw_response"] = outcome["raw"]

        kind = outcome.get("failure_kind")
        if kind is not None:
            update["failure"] = ExtractionFailure(
                stage="fill_details", kind=kind, message=outcome["failure_message"]
            )
            return update

        filled: PageExtraction = outcome["parsed"]
        if len(filled.promotions) != len(detected):
            logger.warning(
                "Detail pass returned %d promotion(s) for %d box(es) on page %s",
                len(filled.promotions), len(detected), state.page_number,
            )

        # Keep pass-1 boxes where pass 2 left them out
        promotions = []
        for i, promo in enumerate(filled.promotions):
            if promo.bounding_box is None and i < len(detected) and detected[i].bounding_box:
                promo = promo.model_copy(update={"bounding_box": detected[i].bounding_box})
            promotions.append(promo)

        update["parsed"] = filled.model_copy(
            update={
                "promotions": promotions,
                "page_meta": filled.page_meta or (state.detection.page_meta if state.detection else None),
            }
        )
        update["strategy"] = "two_pass"
        return update

    def fallback_unified(self, state: ExtractionState, config: RunnableConfig) -> Dict[str, Any]:
        prompt = self.prompts.unified_prompt(state.store_code, state.page_number)
        outcome = self._run_pass(state, "fallback_unified", OP_UNIFIED, prompt, config)
        update: Dict[str, Any] = {
            "current_node": "fallback_unified",
            "usage_events": [outcome["event"]],
        }
        if outcome["raw"] is not None:
            update["raw_response"] = outcome["raw"]

        kind = outcome.get("failure_kind")
        if kind is not None:
            update["failure"] = ExtractionFailure(
                stage="fallback_unified",
                kind=kind,
                message=outcome["failure_message"],
                detection_error=state.detection_error,
            )
            return update

        update["parsed"] = outcome["parsed"]
        update["strategy"] = "unified"
        return update

    def finalize(self, state: ExtractionState) -> Dict[str, Any]:
        parsed = state.parsed or PageExtraction()
        page_meta, promotions = self.normalizer.normalize_page(
            parsed.page_meta, parsed.promotions, state.page_number, state.store_code
        )
        products = to_legacy_products(promotions)
        return {
            "current_node": "finalize",
            "page_meta": page_meta,
            "promotions": promotions,
            "products": products,
        }


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

def route_after_detect(state: ExtractionState) -> str:
    if state.failure is not None:
        return "failed"
    if state.detection is not None:
        return "fill_details"
    return "fallback_unified"


def route_after_pass(state: ExtractionState) -> str:
    return "failed" if state.failure is not None else "finalize"
