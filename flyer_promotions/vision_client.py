"""
Vision-model client boundary.

The extraction pipeline talks to the model through the small VisionClient
protocol: one call per prompt, returning the response text and token usage.
GeminiVisionClient is the default implementation, built on
langchain-google-genai. Retries and request timeouts belong to the client;
the pipeline never retries a failed call itself.

Both calls take an optional threading.Event. If it is already set when a call
starts, OperationCancelled is raised before anything is sent.
"""

from __future__ import annotations

import base64
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from langchain_core.messages import HumanMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import BaseModel

from flyer_promotions.config import ExtractorConfig

logger = logging.getLogger(__name__)

_MIME_JPEG = "image/jpeg"
MIME_BY_SUFFIX = {
    ".jpg": _MIME_JPEG,
    ".jpeg": _MIME_JPEG,
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
}

FALLBACK_MODELS = [
    "models/gemini-2.5-flash",
    "models/gemini-2.0-flash",
    "models/gemini-2.5-pro",
]


class VisionModelError(Exception):
    """Raised when the vision model call itself fails (transport, quota, API error)."""
    pass


class OperationCancelled(Exception):
    """Raised when the caller's cancellation signal is set."""
    pass


class VisionResponse(BaseModel):
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""


class VisionClient(Protocol):
    model_name: str

    def analyze_image(
        self, image_url: str, prompt: str, cancel_event: Optional[threading.Event] = None
    ) -> VisionResponse: ...

    def analyze_image_bytes(
        self,
        image_b64: str,
        prompt: str,
        mime_type: str = _MIME_JPEG,
        cancel_event: Optional[threading.Event] = None,
    ) -> VisionResponse: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def encode_image_bytes(raw: bytes) -> str:
    return base64.standard_b64encode(raw).decode("utf-8")


def to_data_url(image_b64: str, mime_type: str = _MIME_JPEG) -> str:
    if image_b64.startswith("data:"):
        return image_b64
    return f"data:{mime_type};base64,{image_b64}"


def image_file_to_base64(image_path: str) -> tuple[str, str]:
    """Read an image file and return (base64_data, mime_type)."""
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {image_path}")
    mime = MIME_BY_SUFFIX.get(path.suffix.lower(), _MIME_JPEG)
    return encode_image_bytes(path.read_bytes()), mime


def _usage_from_response(response: Any) -> Dict[str, int]:
    usage = getattr(response, "usage_metadata", None) or {}
    prompt_tokens = int(usage.get("input_tokens", 0) or 0)
    completion_tokens = int(usage.get("output_tokens", 0) or 0)
    total = int(usage.get("total_tokens", 0) or 0) or prompt_tokens + completion_tokens
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total,
    }


def _response_text(response: Any) -> str:
    content = response.content
    if isinstance(content, str):
        return content
    # Multi-part responses come back as a list of text blocks
    parts = []
    for block in content or []:
        if isinstance(block, dict):
            parts.append(str(block.get("text", "")))
        else:
            parts.append(str(block))
    return "".join(parts)


# ---------------------------------------------------------------------------
# Gemini implementation
# ---------------------------------------------------------------------------

class GeminiVisionClient:
    """VisionClient backed by Gemini via langchain-google-genai."""

    def __init__(self, config: Optional[ExtractorConfig] = None):
        self.config = config or ExtractorConfig.from_env()
        if not self.config.google_api_key:
            raise RuntimeError("GOOGLE_API_KEY is not set in environment/.env")
        self.model_name = self.config.model_name
        self._model: Optional[ChatGoogleGenerativeAI] = None

    def _build(self, model_name: str) -> ChatGoogleGenerativeAI:
        return ChatGoogleGenerativeAI(
            model=model_name,
            google_api_key=self.config.google_api_key,
            temperature=self.config.temperature,
            max_retries=self.config.max_retries,
            timeout=self.config.timeout_seconds,
        )

    def _get_model(self) -> ChatGoogleGenerativeAI:
        """Instantiate the Gemini model once, trying fallback models on failure."""
        if self._model is not None:
            return self._model

        try:
            self._model = self._build(self.model_name)
            return self._model
        except Exception as e:
            logger.warning(f"Failed to create model {self.model_name}: {e}")

            for fallback_model in FALLBACK_MODELS:
                if fallback_model == self.model_name:
                    continue
                try:
                    logger.info(f"Trying fallback vision model: {fallback_model}")
                    self._model = self._build(fallback_model)
                    self.model_name = fallback_model
                    return self._model
                except Exception as fallback_e:
                    logger.warning(f"Fallback model {fallback_model} also failed: {fallback_e}")

            raise RuntimeError(f"All vision models failed. Last error: {e}")

    def _invoke(self, image_url: str, prompt: str, cancel_event: Optional[threading.Event]) -> VisionResponse:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled("cancelled before vision model call")

        model = self._get_model()
        message = HumanMessage(
            content=[
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image_url}},
            ]
        )

        try:
            response = model.invoke([message])
        except Exception as exc:
            logger.exception("Vision model call failed")
            raise VisionModelError(f"vision model call failed: {exc}") from exc

        text = _response_text(response)
        logger.debug("Vision model raw response:\n%s", text)
        return VisionResponse(content=text, model=self.model_name, **_usage_from_response(response))

    def analyze_image(
        self, image_url: str, prompt: str, cancel_event: Optional[threading.Event] = None
    ) -> VisionResponse:
        return self._invoke(image_url, prompt, cancel_event)

    def analyze_image_bytes(
        self,
        image_b64: str,
        prompt: str,
        mime_type: str = _MIME_JPEG,
        cancel_event: Optional[threading.Event] = None,
    ) -> VisionResponse:
        return self._invoke(to_data_url(image_b64, mime_type), prompt, cancel_event)
