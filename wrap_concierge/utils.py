import re
import unicodedata
from typing import Optional


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form chat text for stable keyword matching.
    Inputs/Outputs: Input is a raw string; output is a lowercase ASCII-only string with
        accents removed and whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by the extractor and prompt guards.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Intent keywords miss accented or oddly spaced input.
    Testing Notes: "Héllo   THERE" -> "hello there".
    """
    # Lowercase, strip accents, and collapse whitespace.
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-z0-9\s\-_/.@#$'?]+", " ", stripped)
    return re.sub(r"\s+", " ", cleaned).strip()


def normalize_model_key(text: Optional[str]) -> str:
    """Purpose: Produce the pricing lookup key for a vehicle model.
    Inputs/Outputs: Input is a model string such as "F-150"; output is "f150".
    Side Effects / State: None; pure function.
    Dependencies: Used on both sides of the pricing table lookup.
    Failure Modes: Returns an empty string for falsy input.
    If Removed: "F-150", "f 150", and "f150" stop resolving to the same entry.
    Testing Notes: Ensure hyphens and whitespace are removed and case is folded.
    """
    # Lowercase and drop hyphens/whitespace.
    if not text:
        return ""
    return re.sub(r"[-\s]+", "", text.strip().lower())


def mask_email(email: Optional[str]) -> str:
    """Hide the local part of an email address for log lines."""
    if not email or "@" not in email:
        return "-"
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"


def truncate(text: str, limit: int) -> str:
    # Hard cap with an ellipsis marker.
    if limit <= 0 or len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)].rstrip() + "..."
