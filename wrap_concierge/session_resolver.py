from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .conversation_state import ConversationState
from .conversation_store import ConversationRecord, ConversationStore

logger = logging.getLogger("concierge.session")


@dataclass
class VisitContext:
    """Where the visitor came from; stored on the contact at first contact."""
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    geo: Optional[Dict[str, Any]] = None
    organization_id: Optional[str] = None
    mode: Optional[str] = None

    @property
    def is_test(self) -> bool:
        return (self.mode or "").lower() == "test"


class SessionResolver:
    """Map a widget session key to exactly one conversation."""

    def __init__(self, store: ConversationStore, channel: str, agent_name: str) -> None:
        self._store = store
        self._channel = channel
        self._agent_name = agent_name

    def resolve(self, session_key: str, visit: Optional[VisitContext] = None) -> Tuple[ConversationRecord, bool]:
        """Purpose: Find or create the conversation for a session key.
        Inputs/Outputs: Inputs are the session key and visit metadata; output is
            (conversation, created).
        Side Effects / State: On first contact creates a contact and a conversation
            with stage=initial.
        Dependencies: ConversationStore.find_or_create_conversation (unique on channel+key).
        Failure Modes: PersistenceFailure propagates; nothing has been said to the
            customer yet, so the turn fails with the fallback reply.
        If Removed: Each message would start a new thread.
        Testing Notes: Two resolves of one key return the same conversation id.
        """
        # Contact and initial state are only used if the row does not exist yet.
        visit = visit or VisitContext()
        initial = ConversationState()
        initial_state = initial.to_dict()
        initial_state["agent"] = self._agent_name.lower()
        conversation, created = self._store.find_or_create_conversation(
            channel=self._channel,
            session_key=session_key,
            contact_name=f"Website Visitor ({session_key[:8]})",
            contact_tags=["website", "chat", "concierge_lead", "test_mode" if visit.is_test else "live"],
            contact_metadata={
                "source": "website_chat",
                "session_id": session_key,
                "first_page": visit.page_url,
                "referrer": visit.referrer,
                "geo": visit.geo,
                "organization_id": visit.organization_id,
            },
            subject=f"Website Chat - {self._agent_name}",
            initial_state=initial_state,
        )
        if created:
            logger.info("session=%s conversation=%s step=resolve created=true", session_key, conversation.id)
        return conversation, created
