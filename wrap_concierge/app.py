from __future__ import annotations

import logging
import os
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .concierge_agent import ConciergeAgent, ModelGateway, TurnContext, fallback_reply
from .config import Settings, load_settings
from .conversation_store import ConversationStore
from .entity_extractor import EntityExtractor
from .errors import InvalidTurnRequest
from .escalation import EscalationDispatcher
from .gemini_client import GeminiClient
from .models import (
    ChatRequest,
    ChatResponse,
    ExtractedPayload,
    FleetPayload,
    OrderStatusPayload,
    PricingPayload,
    TranscriptResponse,
    VehiclePayload,
)
from .notifier import EmailSender, ResendEmailSender
from .order_status import OrderFound, OrderLookupFailed, OrderStatusAdapter, WooCommerceClient
from .pricing_engine import PriceQuote, PricingBlocked, PricingEngine
from .prompt_composer import PromptComposer
from .quote_service import QuoteService
from .resource_loader import ResourceLoader
from .session_resolver import SessionResolver, VisitContext

BASE_DIR = Path(__file__).resolve().parent

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)
else:
    load_dotenv()

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("concierge").setLevel(log_level)
logger = logging.getLogger("concierge.api")

MISSING_FIELDS_ERROR = "session_id and message_text are required"

app = FastAPI(title="WePrintWraps Ordering Concierge")


def build_agent(
    settings: Settings,
    store: Optional[ConversationStore] = None,
    gateway: Optional[ModelGateway] = None,
    email_sender: Optional[EmailSender] = None,
    order_client: Optional[WooCommerceClient] = None,
) -> ConciergeAgent:
    """Purpose: Assemble the concierge from settings and the packaged resources.
    Inputs/Outputs: Input is Settings plus optional collaborator overrides; output is
        a ready ConciergeAgent.
    Side Effects / State: Loads JSON resources, opens the SQLite store, configures Gemini.
    Dependencies: Every component module.
    Failure Modes: Missing GEMINI_API_KEY raises ValueError unless a gateway is given;
        broken resource files raise at load time.
    If Removed: The app cannot serve chat requests.
    Testing Notes: Pass fakes for gateway/email/orders and a tmp_path store.
    """
    # Tables load once; collaborators are injected for substitution in tests.
    resources = ResourceLoader(settings.resources_dir).load()
    store = store or ConversationStore(settings.database_path)
    sender = email_sender or ResendEmailSender(
        settings.resend_api_key,
        settings.email_from,
        timeout=settings.http_timeout_sec,
    )
    client = order_client or WooCommerceClient(
        settings.woo_store_url,
        settings.woo_consumer_key,
        settings.woo_consumer_secret,
        timeout=settings.http_timeout_sec,
    )
    pricing = PricingEngine(resources.pricing)
    return ConciergeAgent(
        extractor=EntityExtractor(resources.extraction),
        pricing=pricing,
        resolver=SessionResolver(store, settings.channel, resources.brand.agent_name),
        store=store,
        orders=OrderStatusAdapter(client),
        escalations=EscalationDispatcher(store, sender, resources.brand),
        quotes=QuoteService(store, sender, resources.brand, high_value_threshold=pricing.high_value_threshold),
        composer=PromptComposer(settings.prompts_dir, resources.brand, max_chars=settings.max_prompt_chars),
        gateway=gateway or GeminiClient(settings),
        brand=resources.brand,
        history_limit=settings.history_limit,
        max_message_chars=settings.max_message_chars,
    )


_agent: Optional[ConciergeAgent] = None
_agent_lock = threading.Lock()


def get_agent() -> ConciergeAgent:
    """Build the process-wide agent on first use."""
    global _agent
    with _agent_lock:
        if _agent is None:
            _agent = build_agent(load_settings())
        return _agent


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed input is the one hard client error.
    logger.info("request path=%s outcome=invalid errors=%d", request.url.path, len(exc.errors()))
    return JSONResponse(status_code=400, content={"success": False, "error": MISSING_FIELDS_ERROR})


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/api/chat", response_model=ChatResponse)
def chat(request: ChatRequest, agent: ConciergeAgent = Depends(get_agent)):
    """Purpose: Handle one chat-widget message.
    Inputs/Outputs: Input is ChatRequest; output is ChatResponse (or 400 JSON).
    Side Effects / State: Runs a full concierge turn (store writes, emails).
    Dependencies: ConciergeAgent.handle_turn and build_response.
    Failure Modes: Blank required fields return 400. Any other error is logged and
        answered with success=false and a safe fallback message; the widget never
        sees a raw error.
    If Removed: The chat widget has no backend.
    Testing Notes: Post a message through TestClient with an overridden agent.
    """
    # Run the turn and shape the widget response.
    visit = VisitContext(
        page_url=request.page_url,
        referrer=request.referrer,
        geo=request.geo,
        organization_id=request.organization_id,
        mode=request.mode,
    )
    try:
        context = agent.handle_turn(request.session_id, request.message_text, visit)
    except InvalidTurnRequest:
        return JSONResponse(status_code=400, content={"success": False, "error": MISSING_FIELDS_ERROR})
    except Exception:
        logger.exception("session=%s step=turn outcome=failed", request.session_id)
        return ChatResponse(
            success=False,
            message=fallback_reply(None, agent.support_email),
            agent=agent.agent_name,
        )
    return build_response(context, agent.agent_name)


@app.get("/api/conversations/{conversation_id}/messages", response_model=TranscriptResponse)
def get_transcript(conversation_id: str, agent: ConciergeAgent = Depends(get_agent)) -> TranscriptResponse:
    store = agent.store
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return TranscriptResponse(
        conversation_id=conversation.id,
        stage=conversation.stage,
        messages=store.get_messages(conversation.id),
    )


def build_response(context: TurnContext, agent_name: str) -> ChatResponse:
    """Map a finished TurnContext onto the widget contract."""
    extraction = context.extraction
    vehicle = extraction.vehicle if extraction else None
    extracted = ExtractedPayload(
        vehicle=VehiclePayload(**vehicle.to_dict()) if vehicle and not vehicle.is_empty() else None,
        email=extraction.email if extraction else None,
        order_number=extraction.order_number if extraction else None,
    )
    return ChatResponse(
        success=context.success,
        message=context.reply,
        agent=agent_name,
        conversation_id=context.conversation_id,
        extracted=extracted,
        pricing=_pricing_payload(context),
        order_status=_order_payload(context),
    )


def _pricing_payload(context: TurnContext) -> Optional[PricingPayload]:
    result = context.pricing
    if isinstance(result, PriceQuote):
        fleet = context.fleet
        return PricingPayload(
            status="quoted",
            sqft=result.sqft,
            cost=result.cost,
            unit_rate=result.unit_rate,
            fleet=FleetPayload(**asdict(fleet)) if fleet else None,
        )
    if isinstance(result, PricingBlocked):
        return PricingPayload(status="blocked", reason=result.reason)
    return None


def _order_payload(context: TurnContext) -> Optional[OrderStatusPayload]:
    result = context.order_lookup
    if result is None:
        return None
    if isinstance(result, OrderFound):
        return OrderStatusPayload(
            kind=result.kind,
            order_number=result.order_number,
            status=result.status,
            label=result.label,
            summary=result.summary,
        )
    if isinstance(result, OrderLookupFailed):
        return OrderStatusPayload(kind=result.kind, order_number=result.order_number, code=result.code)
    return OrderStatusPayload(kind=result.kind, order_number=result.order_number)
