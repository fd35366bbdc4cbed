from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Dict, Optional

from .resource_loader import ExtractionConfig
from .utils import normalize_text

YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
ORDER_NUMBER_RE = re.compile(r"\b(WPW-?\d{4,}|#?\d{5,}|\d{4,}-\d+)\b", re.IGNORECASE)
VEHICLE_COUNT_RE = re.compile(
    r"\b(\d{1,4})\s*(?:vehicles?|trucks?|vans?|cars?|suvs?|units?)\b",
    re.IGNORECASE,
)

INTENT_NAMES = (
    "pricing",
    "order_status",
    "specialty_film",
    "window_perf",
    "cut_contour",
    "fade_wrap",
    "wrap_by_yard",
    "design_file",
    "bulk_fleet",
    "complaint",
    "human_handoff",
)


@dataclass
class Vehicle:
    year: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.year or self.make or self.model)

    def label(self) -> str:
        return " ".join(part for part in (self.year, self.make, self.model) if part)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["Vehicle"]:
        if not isinstance(data, dict):
            return None
        vehicle = cls(
            year=data.get("year") or None,
            make=data.get("make") or None,
            model=data.get("model") or None,
        )
        return None if vehicle.is_empty() else vehicle


@dataclass
class Extraction:
    """Structured view of one inbound message."""
    vehicle: Vehicle
    email: Optional[str] = None
    order_number: Optional[str] = None
    vehicle_count: Optional[int] = None
    intents: Dict[str, bool] = field(default_factory=dict)

    def has(self, intent: str) -> bool:
        return bool(self.intents.get(intent))

    def active_intents(self) -> list[str]:
        return [name for name in INTENT_NAMES if self.intents.get(name)]


class EntityExtractor:
    """Regex/keyword extractor driven by an injected ExtractionConfig."""

    def __init__(self, config: ExtractionConfig) -> None:
        """Purpose: Compile make/model patterns and intent keyword matchers once.
        Inputs/Outputs: Input is ExtractionConfig; no return value.
        Side Effects / State: Holds compiled regexes for the process lifetime.
        Dependencies: Uses re; tables come from ResourceLoader.
        Failure Modes: A malformed regex fragment in the config raises re.error at startup.
        If Removed: No vehicle, email, or intent facts reach pricing or routing.
        Testing Notes: Build with a tiny config to check independence of each pattern.
        """
        # One alternation per field; intent keywords matched on word boundaries.
        self._make_re = _alternation(config.makes)
        self._model_re = _alternation(config.models)
        self._intent_res: Dict[str, re.Pattern] = {}
        for name in INTENT_NAMES:
            keywords = config.intents.get(name) or ()
            if keywords:
                self._intent_res[name] = _alternation(
                    tuple(re.escape(normalize_text(keyword)) for keyword in keywords)
                )

    def extract(self, text: str) -> Extraction:
        """Purpose: Turn raw message text into vehicle/email/order/intent facts.
        Inputs/Outputs: Input is the raw message; output is an Extraction.
        Side Effects / State: None; pure with respect to the compiled tables.
        Dependencies: YEAR_RE, EMAIL_RE, ORDER_NUMBER_RE, and the compiled config patterns.
        Failure Modes: None; empty input yields an empty Extraction.
        If Removed: The orchestrator cannot decide on pricing, lookups, or escalations.
        Testing Notes: Punctuation around "2022 Ford F-150," must not break detection.
        """
        # Leftmost match wins, except a model right after the make beats an earlier word.
        text = text or ""
        make_match = self._make_re.search(text)
        vehicle = Vehicle(
            year=_first(YEAR_RE, text),
            make=make_match.group(0).strip() if make_match else None,
            model=self._find_model(text, make_match),
        )
        email_match = EMAIL_RE.search(text)
        order_match = ORDER_NUMBER_RE.search(text)
        count_match = VEHICLE_COUNT_RE.search(text)
        normalized = normalize_text(text)
        intents = {
            name: bool(pattern.search(normalized)) for name, pattern in self._intent_res.items()
        }
        return Extraction(
            vehicle=vehicle,
            email=email_match.group(0).lower() if email_match else None,
            order_number=order_match.group(1) if order_match else None,
            vehicle_count=int(count_match.group(1)) if count_match else None,
            intents=intents,
        )

    def _find_model(self, text: str, make_match: Optional[re.Match]) -> Optional[str]:
        # Words like "express" or "escape" also appear in ordinary sentences.
        if make_match:
            after_make = self._model_re.search(text, make_match.end())
            if after_make:
                return after_make.group(0).strip()
        return _first(self._model_re, text)


def _alternation(fragments: tuple) -> re.Pattern:
    return re.compile(r"\b(" + "|".join(fragments) + r")\b", re.IGNORECASE)


def _first(pattern: re.Pattern, text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(0).strip() if match else None
