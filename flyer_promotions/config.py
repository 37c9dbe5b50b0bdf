"""
Configuration for the flyer promotion pipeline.

Two kinds of configuration live here:

- ExtractorConfig: runtime knobs for the vision model and the batch loop,
  read from the environment / .env (VISION_MODEL, PAGE_DELAY_SECONDS, ...).
- FlyerVocabulary: the language-specific vocabulary shared by the prompt
  builder, the normalizer and the validator (categories, unit synonyms,
  store contexts). It is constructed once and injected; only the store
  context registry can change at runtime and it is guarded by a lock.
"""

from __future__ import annotations

import os
import threading
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv(override=False)


DEFAULT_CATEGORIES: List[str] = [
    "mėsa ir žuvis",
    "pieno produktai",
    "duona ir konditerija",
    "vaisiai ir daržovės",
    "gėrimai",
    "šaldyti produktai",
    "konservai",
    "kruopos ir makaronai",
    "saldumynai",
    "higienos prekės",
    "namų ūkio prekės",
    "alkoholiniai gėrimai",
]

# keyword (lowercase) -> canonical category, used for inference from names
DEFAULT_CATEGORY_KEYWORDS: Dict[str, str] = {
    "mėsa": "mėsa ir žuvis",
    "mesa": "mėsa ir žuvis",
    "žuvis": "mėsa ir žuvis",
    "pienas": "pieno produktai",
    "sūris": "pieno produktai",
    "jogurtas": "pieno produktai",
    "duona": "duona ir konditerija",
    "pyragai": "duona ir konditerija",
    "vaisiai": "vaisiai ir daržovės",
    "daržovės": "vaisiai ir daržovės",
    "gėrimai": "gėrimai",
    "vanduo": "gėrimai",
    "sultys": "gėrimai",
    "šaldyti": "šaldyti produktai",
    "konservai": "konservai",
    "kruopos": "kruopos ir makaronai",
    "makaronai": "kruopos ir makaronai",
    "saldumynai": "saldumynai",
    "šokoladas": "saldumynai",
    "higiena": "higienos prekės",
    "namų": "namų ūkio prekės",
    "alkoholis": "alkoholiniai gėrimai",
    "alus": "alkoholiniai gėrimai",
    "vynas": "alkoholiniai gėrimai",
}

# lowercase synonym -> canonical unit
DEFAULT_UNIT_SYNONYMS: Dict[str, str] = {
    "kg": "kg",
    "kg.": "kg",
    "kilogramas": "kg",
    "g": "g",
    "g.": "g",
    "gramas": "g",
    "l": "l",
    "l.": "l",
    "litras": "l",
    "ml": "ml",
    "ml.": "ml",
    "mililitras": "ml",
    "vnt": "vnt.",
    "vnt.": "vnt.",
    "vienetas": "vnt.",
    "vienetai": "vnt.",
    "vienetų": "vnt.",
    "pak": "pak.",
    "pak.": "pak.",
    "pakuotė": "pak.",
    "dėž.": "dėž.",
    "dėžė": "dėž.",
    "dez": "dėž.",
}

DEFAULT_STORE_CONTEXT: Dict[str, str] = {
    "iki": (
        "IKI (LT grocery). Common visual tags: SUPER KAINA, TIK, MEILĖ IKI "
        "(loyalty hearts), IKI EXPRESS, red percentage badges."
    ),
    "maxima": "MAXIMA (LT grocery).",
    "rimi": "RIMI (LT grocery).",
}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class ExtractorConfig(BaseModel):
    """Runtime settings for the vision model and the page loop."""

    model_name: str = Field(default="models/gemini-2.5-flash")
    google_api_key: Optional[str] = Field(default=None, repr=False)
    max_retries: int = Field(default=2, ge=0)
    timeout_seconds: float = Field(default=60.0, gt=0)
    temperature: float = Field(default=0.0)
    page_delay_seconds: float = Field(
        default=2.0, ge=0, description="Pause between pages of one flyer"
    )
    cost_per_1k_tokens: float = Field(
        default=0.01, ge=0, description="Used to derive the cost of each usage event"
    )

    @classmethod
    def from_env(cls) -> "ExtractorConfig":
        return cls(
            model_name=os.getenv("VISION_MODEL", "models/gemini-2.5-flash"),
            google_api_key=os.getenv("GOOGLE_API_KEY"),
            max_retries=_env_int("VISION_MAX_RETRIES", 2),
            timeout_seconds=_env_float("VISION_TIMEOUT_SECONDS", 60.0),
            temperature=_env_float("VISION_TEMPERATURE", 0.0),
            page_delay_seconds=_env_float("PAGE_DELAY_SECONDS", 2.0),
            cost_per_1k_tokens=_env_float("VISION_COST_PER_1K_TOKENS", 0.01),
        )


class FlyerVocabulary:
    """Language-specific vocabulary shared across the pipeline.

    Categories, keywords and units are treated as immutable after
    construction. Store contexts may be added at runtime through
    add_store_context(), which is safe to call from several threads.
    """

    def __init__(
        self,
        categories: Optional[List[str]] = None,
        category_keywords: Optional[Dict[str, str]] = None,
        unit_synonyms: Optional[Dict[str, str]] = None,
        store_context: Optional[Dict[str, str]] = None,
        language: str = "Lithuanian",
        locale: str = "lt-LT",
        currency: str = "EUR",
        currency_symbol: str = "€",
        diacritics: str = "ąčęėįšųūž",
        default_store_context: str = "Lietuvos prekybos tinklas",
    ):
        self.categories: tuple = tuple(categories or DEFAULT_CATEGORIES)
        self.category_keywords: Dict[str, str] = dict(
            category_keywords or DEFAULT_CATEGORY_KEYWORDS
        )
        self.unit_synonyms: Dict[str, str] = dict(unit_synonyms or DEFAULT_UNIT_SYNONYMS)
        self.language = language
        self.locale = locale
        self.currency = currency
        self.currency_symbol = currency_symbol
        self.diacritics = diacritics
        self.default_store_context = default_store_context
        self._store_context: Dict[str, str] = {
            k.lower(): v for k, v in (store_context or DEFAULT_STORE_CONTEXT).items()
        }
        self._lock = threading.Lock()

    def store_context(self, store_code: str) -> str:
        with self._lock:
            return self._store_context.get(
                (store_code or "").lower(), self.default_store_context
            )

    def add_store_context(self, store_code: str, context: str) -> None:
        """Add or override the prompt context for a store code."""
        with self._lock:
            self._store_context[store_code.lower()] = context

    def supported_stores(self) -> List[str]:
        with self._lock:
            return sorted(self._store_context)

    def canonical_units(self) -> List[str]:
        seen: List[str] = []
        for unit in self.unit_synonyms.values():
            if unit not in seen:
                seen.append(unit)
        return seen
