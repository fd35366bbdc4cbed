from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .entity_extractor import Vehicle
from .utils import normalize_model_key

STAGE_INITIAL = "initial"
STAGE_EMAIL_CAPTURED = "email_captured"
STAGE_QUOTE_SENT = "quote_sent"
STAGE_COMPLETED = "completed"

STAGE_ORDER = (STAGE_INITIAL, STAGE_EMAIL_CAPTURED, STAGE_QUOTE_SENT, STAGE_COMPLETED)

# Allowed forward moves; completed only arrives from outside the chat flow.
_TRANSITIONS = {
    STAGE_INITIAL: {STAGE_EMAIL_CAPTURED},
    STAGE_EMAIL_CAPTURED: {STAGE_QUOTE_SENT},
    STAGE_QUOTE_SENT: set(),
    STAGE_COMPLETED: set(),
}


class InvalidTransition(ValueError):
    pass


@dataclass
class ConversationState:
    """Per-conversation bag the orchestrator reads at turn start and writes at turn end."""
    stage: str = STAGE_INITIAL
    captured_email: Optional[str] = None
    captured_vehicle: Optional[Vehicle] = None
    escalations_sent: List[str] = field(default_factory=list)
    calculated_price: Optional[Dict[str, Any]] = None
    last_order_lookup: Optional[Dict[str, Any]] = None
    quote_number: Optional[str] = None
    followup_requested: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], stage: Optional[str] = None) -> "ConversationState":
        """Purpose: Rebuild state from the stored chat_state JSON.
        Inputs/Outputs: Input is the raw dict plus the conversation row's stage column;
            output is a ConversationState.
        Side Effects / State: None.
        Dependencies: Vehicle.from_dict for the captured vehicle.
        Failure Modes: Unknown stages fall back to initial; malformed fields are dropped.
        If Removed: Every turn would start from a blank state.
        Testing Notes: A row stage of completed must win over a stale JSON stage.
        """
        # Row stage wins; it is the column staff tools update.
        data = data if isinstance(data, dict) else {}
        resolved = stage or data.get("stage") or STAGE_INITIAL
        if resolved not in STAGE_ORDER:
            resolved = STAGE_INITIAL
        escalations = data.get("escalations_sent") or []
        price = data.get("calculated_price")
        lookup = data.get("last_order_lookup")
        return cls(
            stage=resolved,
            captured_email=data.get("captured_email") or None,
            captured_vehicle=Vehicle.from_dict(data.get("captured_vehicle")),
            escalations_sent=[str(tag) for tag in escalations if tag],
            calculated_price=price if isinstance(price, dict) else None,
            last_order_lookup=lookup if isinstance(lookup, dict) else None,
            quote_number=data.get("quote_number") or None,
            followup_requested=bool(data.get("followup_requested")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "captured_email": self.captured_email,
            "captured_vehicle": self.captured_vehicle.to_dict() if self.captured_vehicle else None,
            "escalations_sent": list(self.escalations_sent),
            "calculated_price": self.calculated_price,
            "last_order_lookup": self.last_order_lookup,
            "quote_number": self.quote_number,
            "followup_requested": self.followup_requested,
        }

    @property
    def is_terminal(self) -> bool:
        return self.stage == STAGE_COMPLETED

    def advance(self, target: str) -> bool:
        """Move forward to `target`; returns False when already there, raises when illegal."""
        if self.stage == target:
            return False
        if target not in _TRANSITIONS.get(self.stage, set()):
            raise InvalidTransition(f"{self.stage} -> {target}")
        self.stage = target
        return True

    def capture_email(self, email: Optional[str]) -> bool:
        """Record the first email seen; later addresses never replace it."""
        if not email or self.captured_email:
            return False
        self.captured_email = email
        if self.stage == STAGE_INITIAL:
            self.advance(STAGE_EMAIL_CAPTURED)
        return True

    def capture_vehicle(self, detected: Vehicle) -> bool:
        """Purpose: Merge a newly detected vehicle into the captured one.
        Inputs/Outputs: Input is this turn's Vehicle; returns True if anything changed.
        Side Effects / State: Mutates captured_vehicle.
        Dependencies: None.
        Failure Modes: None. An empty detection never clears what was captured.
        If Removed: Follow-up messages like "how much?" lose the earlier vehicle.
        Testing Notes: "2019 Camry" then "actually a Ford F-150" replaces the model
            and drops the stale year; "2019 Yugo GV" after an F-150 replaces it with
            a year-only vehicle; "it's a 2021" fills only a missing year.
        """
        # Any field that disagrees means a different vehicle; agreeing mentions fill gaps.
        if detected.is_empty():
            return False
        current = self.captured_vehicle
        if current is None or _conflicts(current, detected):
            self.captured_vehicle = Vehicle(detected.year, detected.make, detected.model)
            return True
        merged = Vehicle(
            year=current.year or detected.year,
            make=current.make or detected.make,
            model=current.model or detected.model,
        )
        if merged == current:
            return False
        self.captured_vehicle = merged
        return True

    def record_escalation(self, situation: str) -> None:
        if situation not in self.escalations_sent:
            self.escalations_sent.append(situation)


def _conflicts(current: Vehicle, detected: Vehicle) -> bool:
    for ours, theirs in (
        (current.year, detected.year),
        (current.make, detected.make),
        (current.model, detected.model),
    ):
        if ours and theirs and normalize_model_key(ours) != normalize_model_key(theirs):
            return True
    return False
