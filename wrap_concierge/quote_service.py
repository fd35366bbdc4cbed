from __future__ import annotations

import html
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .conversation_store import ConversationStore
from .entity_extractor import Vehicle
from .errors import PersistenceFailure
from .notifier import EmailSender
from .pricing_engine import PriceQuote
from .resource_loader import BrandProfile
from .utils import mask_email

logger = logging.getLogger("concierge.quotes")

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class QuoteOutcome:
    success: bool
    quote_number: Optional[str] = None
    error: Optional[str] = None


class QuoteService:
    """Create a quote record and email it; success means the email provider confirmed."""

    def __init__(
        self,
        store: ConversationStore,
        sender: EmailSender,
        brand: BrandProfile,
        high_value_threshold: int = 1500,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._sender = sender
        self._brand = brand
        self._high_value_threshold = high_value_threshold
        self._clock = clock

    def new_quote_number(self) -> str:
        suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(4))
        return f"{self._brand.quote_prefix}-{self._clock():%y%m%d}-{suffix}"

    def create_and_send(
        self,
        conversation_id: str,
        customer_email: str,
        vehicle: Vehicle,
        quote: PriceQuote,
    ) -> QuoteOutcome:
        """Purpose: Persist a quote, email it, and report confirmed delivery only.
        Inputs/Outputs: Inputs are the conversation, captured email/vehicle, and the
            computed PriceQuote; output is QuoteOutcome.
        Side Effects / State: Inserts a quote row (pending -> sent/send_failed), sends
            one email, and on success opens a follow-up task due in two days.
        Dependencies: ConversationStore, EmailSender, BrandProfile.
        Failure Modes: A store failure before sending raises PersistenceFailure and
            nothing is emailed. A send failure returns success=False. Bookkeeping failures
            after a confirmed send are logged; the outcome stays successful because the
            customer did receive the quote.
        If Removed: Captured leads never receive a written quote.
        Testing Notes: Inject a sender returning success=False and assert the quote row
            ends as send_failed with no follow-up task.
        """
        # Record first so a sent email always has a matching quote row.
        quote_number = self.new_quote_number()
        self._store.create_quote(
            quote_number=quote_number,
            conversation_id=conversation_id,
            customer_email=customer_email,
            vehicle=vehicle.to_dict(),
            sqft=quote.sqft,
            cost=quote.cost,
        )
        result = self._sender.send(
            to=customer_email,
            subject=f"Your {self._brand.brand_name} wrap quote {quote_number}",
            html=self._render(quote_number, vehicle, quote),
        )
        if not result.success:
            self._store.set_quote_status(quote_number, "send_failed")
            logger.warning(
                "conversation=%s quote=%s outcome=send_failed to=%s error=%s",
                conversation_id,
                quote_number,
                mask_email(customer_email),
                result.error,
            )
            return QuoteOutcome(success=False, quote_number=quote_number, error=result.error)

        try:
            self._store.set_quote_status(quote_number, "sent")
            due = (self._clock() + timedelta(days=2)).date().isoformat()
            self._store.create_task(
                conversation_id=conversation_id,
                title=f"Follow up on quote {quote_number}",
                category="quote_followup",
                description=f"{vehicle.label()} - ${quote.cost} - {customer_email}",
                priority="high" if quote.cost > self._high_value_threshold else "normal",
                assignee=self._brand.quote_assignee or None,
                due_date=due,
            )
        except PersistenceFailure:
            logger.exception("conversation=%s quote=%s step=quote_bookkeeping", conversation_id, quote_number)
        logger.info(
            "conversation=%s quote=%s outcome=sent cost=%s to=%s",
            conversation_id,
            quote_number,
            quote.cost,
            mask_email(customer_email),
        )
        return QuoteOutcome(success=True, quote_number=quote_number)

    def request_manual_quote(
        self,
        conversation_id: str,
        reason: str,
        customer_email: Optional[str],
        vehicle: Optional[Vehicle],
    ) -> str:
        """Open a work item for staff to price by hand instead of guessing."""
        vehicle_label = vehicle.label() if vehicle else "vehicle not provided"
        return self._store.create_task(
            conversation_id=conversation_id,
            title=f"Manual quote needed ({reason})",
            category="manual_quote",
            description=f"{vehicle_label} - {customer_email or 'no email'}",
            priority="normal",
            assignee=self._brand.quote_assignee or None,
        )

    def _render(self, quote_number: str, vehicle: Vehicle, quote: PriceQuote) -> str:
        brand = html.escape(self._brand.brand_name)
        return (
            f"<h2>{brand} quote {html.escape(quote_number)}</h2>"
            f"<p>Vehicle: {html.escape(vehicle.label())}</p>"
            f"<p>Estimated coverage: {quote.sqft} sq ft at ${quote.unit_rate:.2f}/sq ft</p>"
            f"<p><strong>Printed wrap material: ${quote.cost:,}</strong></p>"
            "<p>This covers printed, laminated wrap material. Installation is not included.</p>"
            f"<p>Questions? Reply to this email or write to {html.escape(self._brand.support_email)}.</p>"
        )
