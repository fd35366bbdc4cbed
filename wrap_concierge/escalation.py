from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import List, Optional

from .conversation_state import ConversationState
from .conversation_store import ConversationStore
from .entity_extractor import Extraction
from .errors import PersistenceFailure
from .notifier import EmailSender
from .resource_loader import BrandProfile
from .utils import mask_email, truncate

logger = logging.getLogger("concierge.escalation")

SITUATION_BY_INTENT = (
    ("bulk_fleet", "bulk"),
    ("design_file", "design"),
    ("complaint", "quality"),
    ("human_handoff", "support"),
)


def detect_situations(extraction: Extraction) -> List[str]:
    """Situation tags for every escalation intent in the message, in a fixed order."""
    return [situation for intent, situation in SITUATION_BY_INTENT if extraction.has(intent)]


@dataclass
class EscalationRequest:
    conversation_id: str
    message_text: str
    customer_email: Optional[str]
    vehicle_label: str
    page_url: Optional[str] = None


class EscalationDispatcher:
    """Notify the right staff member at most once per situation per conversation."""

    def __init__(self, store: ConversationStore, sender: EmailSender, brand: BrandProfile) -> None:
        self._store = store
        self._sender = sender
        self._brand = brand

    def dispatch(self, request: EscalationRequest, state: ConversationState, situations: List[str]) -> List[str]:
        """Purpose: Fire escalation emails for new situations and record them.
        Inputs/Outputs: Inputs are the turn's request details, the mutable state, and
            detected situation tags; output is the list of tags that fired this turn.
        Side Effects / State: Claims rows in the escalations table, sends email, appends
            to state.escalations_sent, and records an escalation task per fired tag.
        Dependencies: ConversationStore.claim_escalation (atomic insert-if-absent) and
            the EmailSender.
        Failure Modes: A failed send releases the claim so a later turn may retry; a
            store failure is logged and only skips that situation.
        If Removed: Bulk leads, design requests, and complaints never reach a person.
        Testing Notes: Dispatch the same tag over several turns; exactly one send.
        """
        # Each tag is independent; one failure does not block the others.
        fired: List[str] = []
        for situation in situations:
            if situation in state.escalations_sent:
                logger.info("conversation=%s escalation=%s outcome=duplicate", request.conversation_id, situation)
                continue
            try:
                if self._fire(request, situation):
                    state.record_escalation(situation)
                    fired.append(situation)
            except PersistenceFailure:
                logger.exception("conversation=%s escalation=%s outcome=store_error", request.conversation_id, situation)
        return fired

    def _fire(self, request: EscalationRequest, situation: str) -> bool:
        route = self._brand.escalation_routes.get(situation)
        if route is None:
            logger.warning("conversation=%s escalation=%s outcome=no_route", request.conversation_id, situation)
            return False
        if not self._store.claim_escalation(request.conversation_id, situation):
            logger.info("conversation=%s escalation=%s outcome=already_claimed", request.conversation_id, situation)
            return False

        cc = [self._brand.silent_cc] if self._brand.silent_cc and self._brand.silent_cc != route.email else None
        result = self._sender.send(
            to=route.email,
            subject=f"[{situation.upper()}] Website chat needs {route.name}",
            html=self._render(request, situation, route.role),
            cc=cc,
        )
        if not result.success:
            self._store.release_escalation(request.conversation_id, situation)
            logger.warning(
                "conversation=%s escalation=%s outcome=send_failed error=%s",
                request.conversation_id,
                situation,
                result.error,
            )
            return False

        self._store.mark_escalation_delivered(request.conversation_id, situation)
        self._store.create_task(
            conversation_id=request.conversation_id,
            title=f"Follow up: {situation} escalation from website chat",
            category="escalation",
            description=truncate(request.message_text, 500),
            priority="high" if situation == "quality" else "normal",
            assignee=route.name,
        )
        logger.info(
            "conversation=%s escalation=%s outcome=sent routed_to=%s customer=%s",
            request.conversation_id,
            situation,
            route.email,
            mask_email(request.customer_email),
        )
        return True

    def _render(self, request: EscalationRequest, situation: str, role: str) -> str:
        rows = [
            ("Situation", situation),
            ("Routed to", role),
            ("Customer email", request.customer_email or "Not provided yet"),
            ("Vehicle", request.vehicle_label or "Not provided yet"),
            ("Page", request.page_url or "-"),
            ("Conversation", request.conversation_id),
        ]
        table = "".join(
            f"<tr><td><strong>{html.escape(label)}</strong></td><td>{html.escape(value)}</td></tr>"
            for label, value in rows
        )
        message = html.escape(truncate(request.message_text, 1000))
        return (
            f"<h2>{html.escape(self._brand.brand_name)} chat escalation</h2>"
            f"<table>{table}</table>"
            f"<p><strong>Customer said:</strong></p><blockquote>{message}</blockquote>"
        )
