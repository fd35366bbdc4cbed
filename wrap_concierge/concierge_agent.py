from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from .conversation_state import (
    STAGE_COMPLETED,
    STAGE_QUOTE_SENT,
    ConversationState,
)
from .conversation_store import ConversationRecord, ConversationStore
from .entity_extractor import EntityExtractor, Extraction
from .errors import InvalidTurnRequest, PersistenceFailure
from .escalation import EscalationDispatcher, EscalationRequest, detect_situations
from .gemini_client import (
    GatewayResult,
    GatewaySuccess,
    QuotaExhausted,
    RateLimited,
)
from .order_status import OrderLookupResult, OrderStatusAdapter, lookup_to_state
from .pricing_engine import FleetEstimate, PriceQuote, PricingBlocked, PricingEngine, PricingResult
from .prompt_composer import (
    ComposedPrompt,
    PromptComposer,
    TurnFacts,
    enforce_blocked_pricing,
    enforce_delivery_claims,
)
from .pipeline_runtime import PipelineStep, TurnRunner
from .quote_service import QuoteOutcome, QuoteService
from .resource_loader import BrandProfile
from .session_resolver import SessionResolver, VisitContext
from .utils import mask_email, truncate

logger = logging.getLogger("concierge.agent")


class ModelGateway(Protocol):
    def send(self, prompt: str, history: List[Dict[str, str]], message: str) -> GatewayResult:
        ...


@dataclass
class TurnContext:
    """Mutable state for one inbound message, passed through every step."""
    session_id: str
    message_text: str
    visit: VisitContext
    conversation: Optional[ConversationRecord] = None
    created: bool = False
    state: ConversationState = field(default_factory=ConversationState)
    extraction: Optional[Extraction] = None
    price_previously_given: bool = False
    pricing: Optional[PricingResult] = None
    fleet: Optional[FleetEstimate] = None
    order_lookup: Optional[OrderLookupResult] = None
    quote_pending: bool = False
    situations: List[str] = field(default_factory=list)
    prompt: Optional[ComposedPrompt] = None
    gateway_result: Optional[GatewayResult] = None
    reply: str = ""
    success: bool = False
    quote_outcome: Optional[QuoteOutcome] = None
    escalations_fired: List[str] = field(default_factory=list)
    trace: List[str] = field(default_factory=list)

    @property
    def conversation_id(self) -> Optional[str]:
        return self.conversation.id if self.conversation else None


def fallback_reply(result: Optional[GatewayResult], support_email: str) -> str:
    """Fixed, user-safe reply for each non-success gateway outcome."""
    if isinstance(result, RateLimited):
        return (
            "I'm getting a lot of messages right now. Give me a moment and try again, "
            f"or email {support_email} and the team will help you directly."
        )
    if isinstance(result, QuotaExhausted):
        return (
            f"I'm not able to chat right now. Please email {support_email} with your vehicle "
            "year, make, and model and we'll get you a quote."
        )
    return (
        "I apologize, I'm having trouble right now. Please email "
        f"{support_email} or try again in a moment."
    )


class ConciergeAgent:
    def __init__(
        self,
        extractor: EntityExtractor,
        pricing: PricingEngine,
        resolver: SessionResolver,
        store: ConversationStore,
        orders: OrderStatusAdapter,
        escalations: EscalationDispatcher,
        quotes: QuoteService,
        composer: PromptComposer,
        gateway: ModelGateway,
        brand: BrandProfile,
        history_limit: int = 10,
        max_message_chars: int = 2000,
    ) -> None:
        """Purpose: Wire the concierge's collaborators and build the step runner.
        Inputs/Outputs: Inputs are the extractor, engines, adapters, store, composer,
            gateway, brand profile, and limits; no return value.
        Side Effects / State: Constructs a TurnRunner with the fixed step order.
        Dependencies: TurnRunner/PipelineStep and the _step_* methods below.
        Failure Modes: None at init.
        If Removed: The chat endpoint has nothing to run.
        Testing Notes: Build with fakes for the gateway, email sender, and order client.
        """
        # Store dependencies and fix the per-turn order.
        self._extractor = extractor
        self._pricing = pricing
        self._resolver = resolver
        self._store = store
        self._orders = orders
        self._escalations = escalations
        self._quotes = quotes
        self._composer = composer
        self._gateway = gateway
        self._brand = brand
        self._history_limit = history_limit
        self._max_message_chars = max_message_chars
        after_reply = (PersistenceFailure,)
        self._runner = TurnRunner(
            steps=[
                PipelineStep("extract", self._step_extract),
                PipelineStep("resolve", self._step_resolve),
                PipelineStep("capture_facts", self._step_capture_facts),
                PipelineStep("backfill_contact", self._step_backfill_contact, tolerate=(PersistenceFailure,)),
                PipelineStep("pricing", self._step_pricing, skip_if=self._skip_pricing),
                PipelineStep("order_lookup", self._step_order_lookup, skip_if=self._skip_order_lookup),
                PipelineStep("plan_side_effects", self._step_plan_side_effects),
                PipelineStep("compose", self._step_compose),
                PipelineStep("generate", self._step_generate),
                PipelineStep("persist_messages", self._step_persist_messages, tolerate=after_reply),
                PipelineStep("quote_workflow", self._step_quote_workflow, tolerate=after_reply),
                PipelineStep("escalate", self._step_escalate, skip_if=lambda ctx: not ctx.situations, tolerate=after_reply),
                PipelineStep("persist_state", self._step_persist_state, tolerate=after_reply),
            ]
        )

    @property
    def agent_name(self) -> str:
        return self._brand.agent_name.lower()

    @property
    def support_email(self) -> str:
        return self._brand.support_email

    @property
    def store(self) -> ConversationStore:
        return self._store

    def handle_turn(self, session_id: Optional[str], message_text: Optional[str], visit: Optional[VisitContext] = None) -> TurnContext:
        """Purpose: Run one full turn for an inbound chat message.
        Inputs/Outputs: Inputs are the widget session id, message text, and visit
            metadata; output is the populated TurnContext.
        Side Effects / State: Creates/updates the conversation, appends messages, may
            send a quote email and escalation emails, and saves state.
        Dependencies: TurnRunner over the _step_* methods.
        Failure Modes: Raises InvalidTurnRequest before any side effect when required
            fields are blank. Failures after the reply is generated are logged and the
            reply is still returned. Other errors propagate to the HTTP layer.
        If Removed: Nothing answers the chat widget.
        Testing Notes: Drive full conversations with fakes and inspect store rows.
        """
        # Validate first; nothing is written for a malformed request.
        session_id = (session_id or "").strip()
        message_text = (message_text or "").strip()
        if not session_id or not message_text:
            raise InvalidTurnRequest("session_id and message_text are required")
        context = TurnContext(session_id=session_id, message_text=message_text, visit=visit or VisitContext())
        logger.info("session=%s message=%r", session_id, truncate(message_text, 120))
        self._runner.run(context)
        logger.info(
            "session=%s conversation=%s stage=%s success=%s steps=%s",
            session_id,
            context.conversation_id,
            context.state.stage,
            context.success,
            ",".join(context.trace),
        )
        return context

    # Steps

    def _step_extract(self, context: TurnContext) -> None:
        context.extraction = self._extractor.extract(context.message_text)
        extraction = context.extraction
        logger.info(
            "session=%s step=extract vehicle=%s email=%s order=%s intents=%s",
            context.session_id,
            extraction.vehicle.label() or "-",
            mask_email(extraction.email),
            extraction.order_number or "-",
            ",".join(extraction.active_intents()) or "-",
        )

    def _step_resolve(self, context: TurnContext) -> None:
        """Purpose: Attach the conversation and load its state.
        Inputs/Outputs: Input is TurnContext; sets conversation, created, and state.
        Side Effects / State: May create the contact and conversation.
        Dependencies: SessionResolver.resolve and ConversationStore.list_escalations.
        Failure Modes: PersistenceFailure propagates; no reply exists yet.
        If Removed: Nothing downstream has a conversation id.
        Testing Notes: A delivered escalation row missing from chat_state is merged in.
        """
        # The escalations table is authoritative for what was already delivered.
        conversation, created = self._resolver.resolve(context.session_id, context.visit)
        context.conversation = conversation
        context.created = created
        state = ConversationState.from_dict(conversation.chat_state, conversation.stage)
        for row in self._store.list_escalations(conversation.id):
            if row.get("delivered_at"):
                state.record_escalation(str(row["situation"]))
        context.state = state

    def _step_capture_facts(self, context: TurnContext) -> None:
        # Remember whether a price was shown before this turn for the email reminder.
        state = context.state
        extraction = context.extraction
        context.price_previously_given = state.calculated_price is not None
        if state.capture_vehicle(extraction.vehicle):
            logger.info("conversation=%s step=capture vehicle=%s", context.conversation_id, state.captured_vehicle.label())
        if state.capture_email(extraction.email):
            logger.info(
                "conversation=%s step=capture email=%s stage=%s",
                context.conversation_id,
                mask_email(state.captured_email),
                state.stage,
            )

    def _step_backfill_contact(self, context: TurnContext) -> None:
        if context.state.captured_email and context.extraction.email:
            self._store.backfill_contact_email(context.conversation.contact_id, context.state.captured_email)

    def _skip_pricing(self, context: TurnContext) -> bool:
        return not (context.extraction.has("pricing") and context.state.captured_vehicle is not None)

    def _step_pricing(self, context: TurnContext) -> None:
        """Purpose: Price the captured vehicle or record an explicit block.
        Inputs/Outputs: Input is TurnContext; sets pricing, fleet, and calculated_price.
        Side Effects / State: Mutates state.calculated_price.
        Dependencies: PricingEngine.price_vehicle and fleet_estimate.
        Failure Modes: None; unknown models produce PricingBlocked.
        If Removed: The concierge can never quote.
        Testing Notes: "2022 Ford F-150 how much" -> cost 1318 at 5.27.
        """
        # A blocked result clears any stale price from an earlier vehicle.
        result = self._pricing.price_vehicle(context.state.captured_vehicle)
        context.pricing = result
        if isinstance(result, PriceQuote):
            context.state.calculated_price = result.to_state()
            if context.extraction.has("bulk_fleet") and context.extraction.vehicle_count:
                context.fleet = self._pricing.fleet_estimate(result, context.extraction.vehicle_count)
            logger.info(
                "conversation=%s step=pricing status=quoted model=%s sqft=%s cost=%s",
                context.conversation_id,
                result.model_key,
                result.sqft,
                result.cost,
            )
        else:
            context.state.calculated_price = None
            logger.info(
                "conversation=%s step=pricing status=blocked reason=%s model=%s",
                context.conversation_id,
                result.reason,
                result.model_key or "-",
            )

    def _skip_order_lookup(self, context: TurnContext) -> bool:
        return not (context.extraction.has("order_status") and context.extraction.order_number)

    def _step_order_lookup(self, context: TurnContext) -> None:
        result = self._orders.lookup(context.extraction.order_number)
        context.order_lookup = result
        context.state.last_order_lookup = lookup_to_state(result)

    def _step_plan_side_effects(self, context: TurnContext) -> None:
        """Purpose: Decide before generation which side effects this turn may trigger.
        Inputs/Outputs: Input is TurnContext; sets quote_pending and situations.
        Side Effects / State: None.
        Dependencies: detect_situations; quote gating rules.
        Failure Modes: None.
        If Removed: The prompt could not frame the quote as "being prepared".
        Testing Notes: Email + vehicle + priced + pricing intent -> quote_pending.
        """
        # Quote only with a real price, captured email and vehicle, and no prior send.
        state = context.state
        context.quote_pending = (
            context.extraction.has("pricing")
            and isinstance(context.pricing, PriceQuote)
            and bool(state.captured_email)
            and state.captured_vehicle is not None
            and state.stage not in (STAGE_QUOTE_SENT, STAGE_COMPLETED)
        )
        context.situations = [
            situation for situation in detect_situations(context.extraction) if situation not in state.escalations_sent
        ]

    def _step_compose(self, context: TurnContext) -> None:
        facts = TurnFacts(
            extraction=context.extraction,
            state=context.state,
            pricing=context.pricing,
            fleet=context.fleet,
            order_lookup=context.order_lookup,
            price_previously_given=context.price_previously_given,
            quote_pending=context.quote_pending,
            escalations=context.situations,
        )
        context.prompt = self._composer.compose(facts)

    def _step_generate(self, context: TurnContext) -> None:
        """Purpose: Call the model gateway once and apply the reply guards.
        Inputs/Outputs: Input is TurnContext; sets gateway_result, reply, and success.
        Side Effects / State: One gateway call.
        Dependencies: ModelGateway.send, fallback_reply, and the composer's guards.
        Failure Modes: Any non-success variant yields the fixed fallback reply.
        If Removed: No reply text is produced.
        Testing Notes: A RateLimited fake must produce the rate-limit fallback.
        """
        # History is read before this turn's messages are stored.
        history = [
            {
                "role": "user" if message.direction == "inbound" else "model",
                "text": truncate(message.content, self._max_message_chars),
            }
            for message in self._store.recent_messages(context.conversation.id, self._history_limit)
        ]
        result = self._gateway.send(
            context.prompt.text,
            history,
            truncate(context.message_text, self._max_message_chars),
        )
        context.gateway_result = result
        if not isinstance(result, GatewaySuccess):
            logger.warning("conversation=%s step=generate outcome=%s", context.conversation_id, result.kind)
            context.reply = fallback_reply(result, self._brand.support_email)
            context.success = False
            return
        reply = enforce_delivery_claims(result.text, context.state)
        if isinstance(context.pricing, PricingBlocked):
            reply = enforce_blocked_pricing(reply, self._brand.estimator_url)
        context.reply = reply
        context.success = True

    def _step_persist_messages(self, context: TurnContext) -> None:
        conversation_id = context.conversation.id
        self._store.append_message(
            conversation_id,
            "inbound",
            context.message_text,
            sender_name="Website Visitor",
            metadata={"page_url": context.visit.page_url, "session_id": context.session_id, "agent": self.agent_name},
        )
        self._store.append_message(
            conversation_id,
            "outbound",
            context.reply,
            sender_name=self._brand.agent_name,
            metadata={
                "agent": self.agent_name,
                "gateway": context.gateway_result.kind if context.gateway_result else None,
                "prompt_blocks": context.prompt.included if context.prompt else [],
            },
        )

    def _step_quote_workflow(self, context: TurnContext) -> None:
        """Purpose: Send the written quote or open a manual follow-up.
        Inputs/Outputs: Input is TurnContext; sets quote_outcome and may advance stage.
        Side Effects / State: Quote row, quote email, follow-up tasks.
        Dependencies: QuoteService.create_and_send / request_manual_quote.
        Failure Modes: Stage moves to quote_sent only when the send is confirmed; on
            failure the stage is untouched so the next turn frames it as preparing.
        If Removed: Captured leads never receive a written quote.
        Testing Notes: Flip the fake sender between success and failure.
        """
        # Confirmation-gated: stage changes only after a confirmed send.
        state = context.state
        if context.quote_pending:
            outcome = self._quotes.create_and_send(
                context.conversation.id,
                state.captured_email,
                state.captured_vehicle,
                context.pricing,
            )
            context.quote_outcome = outcome
            if outcome.success:
                state.quote_number = outcome.quote_number
                state.advance(STAGE_QUOTE_SENT)
            return

        wants_price = context.extraction.has("pricing")
        if not (wants_price and state.captured_email) or state.followup_requested:
            return
        if state.stage in (STAGE_QUOTE_SENT, STAGE_COMPLETED):
            return
        if state.captured_vehicle is None:
            reason = "vehicle_missing"
        elif isinstance(context.pricing, PricingBlocked):
            reason = context.pricing.reason
        else:
            return
        self._quotes.request_manual_quote(context.conversation.id, reason, state.captured_email, state.captured_vehicle)
        state.followup_requested = True

    def _step_escalate(self, context: TurnContext) -> None:
        state = context.state
        request = EscalationRequest(
            conversation_id=context.conversation.id,
            message_text=context.message_text,
            customer_email=state.captured_email,
            vehicle_label=state.captured_vehicle.label() if state.captured_vehicle else "",
            page_url=context.visit.page_url,
        )
        context.escalations_fired = self._escalations.dispatch(request, state, context.situations)

    def _step_persist_state(self, context: TurnContext) -> None:
        if context.conversation is None:
            return
        payload = context.state.to_dict()
        payload["agent"] = self.agent_name
        self._store.save_state(context.conversation.id, context.state.stage, payload)
