from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from .config import Settings

logger = logging.getLogger("concierge.gateway")

DEFAULT_SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]

# Daily/billing quota markers in a 429 body; anything else is a short-term rate limit.
_QUOTA_MARKERS = ("perday", "per day", "daily", "billing", "free_tier_requests")


@dataclass(frozen=True)
class GatewaySuccess:
    text: str
    kind: str = "success"


@dataclass(frozen=True)
class RateLimited:
    detail: str = ""
    kind: str = "rate_limited"


@dataclass(frozen=True)
class QuotaExhausted:
    detail: str = ""
    kind: str = "quota_exhausted"


@dataclass(frozen=True)
class TransientError:
    code: str
    detail: str = ""
    kind: str = "transient_error"


GatewayResult = Union[GatewaySuccess, RateLimited, QuotaExhausted, TransientError]


class GeminiClient:
    """Single-call Gemini gateway returning an explicit result variant."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK for the concierge's one completion per turn.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK's global API key.
        Dependencies: google.generativeai and Settings.
        Failure Modes: Raises ValueError if the API key or model name is missing.
        If Removed: The orchestrator has no way to produce a conversational reply.
        Testing Notes: Missing key raises ValueError; tests substitute a fake gateway.
        """
        # Fail fast on missing configuration.
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        self._model_name = _normalize_model_name(settings.gemini_model)
        if not self._model_name:
            raise ValueError("Gemini model name is required")
        genai.configure(api_key=settings.gemini_api_key)

    def send(
        self,
        prompt: str,
        history: List[Dict[str, str]],
        message: str,
        temperature: float = 0.4,
        max_output_tokens: int = 1024,
    ) -> GatewayResult:
        """Purpose: Generate the reply for one turn.
        Inputs/Outputs: Inputs are the composed system prompt, prior turns as
            {"role": "user"|"model", "text": ...}, and the new message; output is a
            GatewayResult variant.
        Side Effects / State: One network call to Gemini.
        Dependencies: genai.GenerativeModel with system_instruction.
        Failure Modes: 429s map to RateLimited or QuotaExhausted, other Google API
            errors and empty/blocked responses map to TransientError. Anything else
            propagates.
        If Removed: No replies are generated.
        Testing Notes: Patch GenerativeModel to raise ResourceExhausted with and
            without a daily-quota message.
        """
        # Build chat contents, call once, and classify the outcome.
        contents = build_contents(history, message)
        model = genai.GenerativeModel(self._model_name, system_instruction=prompt)
        try:
            response = model.generate_content(
                contents,
                generation_config={
                    "temperature": temperature,
                    "max_output_tokens": max_output_tokens,
                },
                safety_settings=DEFAULT_SAFETY_SETTINGS,
            )
        except google_exceptions.TooManyRequests as exc:
            detail = str(exc)
            lowered = detail.lower()
            if any(marker in lowered for marker in _QUOTA_MARKERS):
                logger.warning("gateway model=%s outcome=quota_exhausted", self._model_name)
                return QuotaExhausted(detail=detail[:300])
            logger.warning("gateway model=%s outcome=rate_limited", self._model_name)
            return RateLimited(detail=detail[:300])
        except google_exceptions.GoogleAPIError as exc:
            logger.warning("gateway model=%s outcome=transient error=%s", self._model_name, type(exc).__name__)
            return TransientError(code=type(exc).__name__, detail=str(exc)[:300])

        text = _response_text(response)
        if not text:
            logger.warning("gateway model=%s outcome=empty_response", self._model_name)
            return TransientError(code="EMPTY_RESPONSE")
        return GatewaySuccess(text=text)


def build_contents(history: List[Dict[str, str]], message: str) -> List[Dict[str, object]]:
    contents: List[Dict[str, object]] = []
    for entry in history:
        text = (entry.get("text") or "").strip()
        if not text:
            continue
        role = "model" if entry.get("role") == "model" else "user"
        contents.append({"role": role, "parts": [{"text": text}]})
    contents.append({"role": "user", "parts": [{"text": message}]})
    return contents


def _response_text(response: object) -> str:
    # .text raises ValueError when the candidate was blocked or has no parts.
    try:
        text: Optional[str] = getattr(response, "text", None)
    except ValueError:
        return ""
    return (text or "").strip()


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip a "models/" prefix and whitespace from a model name."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
