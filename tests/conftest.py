"""Shared fixtures: fake gateway, email sender, and order client wired into a real agent."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from wrap_concierge.app import app, build_agent, get_agent
from wrap_concierge.config import Settings
from wrap_concierge.conversation_store import ConversationStore
from wrap_concierge.entity_extractor import EntityExtractor
from wrap_concierge.errors import AdapterUnavailable
from wrap_concierge.gemini_client import GatewayResult, GatewaySuccess
from wrap_concierge.notifier import SendResult
from wrap_concierge.order_status import WooOrder
from wrap_concierge.pricing_engine import PricingEngine
from wrap_concierge.resource_loader import ResourceBundle, ResourceLoader

PACKAGE_DIR = Path(__file__).resolve().parent.parent / "wrap_concierge"


class FakeGateway:
    """Returns queued results, then a default reply; records every call."""

    def __init__(self, default: str = "Happy to help with your wrap!") -> None:
        self.default = default
        self.queue: List[GatewayResult] = []
        self.calls: List[Dict[str, object]] = []

    def send(self, prompt: str, history: List[Dict[str, str]], message: str) -> GatewayResult:
        self.calls.append({"prompt": prompt, "history": list(history), "message": message})
        if self.queue:
            return self.queue.pop(0)
        return GatewaySuccess(text=self.default)

    @property
    def last_prompt(self) -> str:
        return str(self.calls[-1]["prompt"])


class FakeEmailSender:
    def __init__(self) -> None:
        self.succeed = True
        self.sent: List[Dict[str, object]] = []

    def send(self, to: str, subject: str, html: str, cc: Optional[List[str]] = None) -> SendResult:
        self.sent.append({"to": to, "subject": subject, "html": html, "cc": cc, "delivered": self.succeed})
        if self.succeed:
            return SendResult(success=True, message_id=f"msg-{len(self.sent)}")
        return SendResult(success=False, error="UPSTREAM_HTTP_ERROR")

    def delivered_to(self, address: str) -> List[Dict[str, object]]:
        return [mail for mail in self.sent if mail["to"] == address and mail["delivered"]]


class FakeOrderClient:
    def __init__(self) -> None:
        self.orders: Dict[str, WooOrder] = {}
        self.error: Optional[AdapterUnavailable] = None
        self.queries: List[str] = []

    def find_orders(self, number: str) -> List[WooOrder]:
        self.queries.append(number)
        if self.error is not None:
            raise self.error
        order = self.orders.get(number)
        return [order] if order else []


@pytest.fixture()
def resources() -> ResourceBundle:
    return ResourceLoader(PACKAGE_DIR / "resources").load()


@pytest.fixture()
def extractor(resources: ResourceBundle) -> EntityExtractor:
    return EntityExtractor(resources.extraction)


@pytest.fixture()
def pricing(resources: ResourceBundle) -> PricingEngine:
    return PricingEngine(resources.pricing)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        gemini_api_key="",
        gemini_model="gemini-2.5-flash",
        database_path=tmp_path / "concierge.db",
        resources_dir=PACKAGE_DIR / "resources",
        prompts_dir=PACKAGE_DIR / "prompts",
        woo_store_url="https://shop.example.com",
        woo_consumer_key="ck_test",
        woo_consumer_secret="cs_test",
        resend_api_key="re_test",
        email_from="Test <test@example.com>",
        http_timeout_sec=5.0,
        history_limit=10,
        max_prompt_chars=12000,
        max_message_chars=2000,
    )


@pytest.fixture()
def store(settings: Settings) -> ConversationStore:
    conversation_store = ConversationStore(settings.database_path)
    yield conversation_store
    conversation_store.close()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture()
def order_client() -> FakeOrderClient:
    return FakeOrderClient()


@pytest.fixture()
def agent(settings, store, gateway, email_sender, order_client):
    return build_agent(
        settings,
        store=store,
        gateway=gateway,
        email_sender=email_sender,
        order_client=order_client,
    )


@pytest.fixture()
def client(agent):
    app.dependency_overrides[get_agent] = lambda: agent
    yield TestClient(app)
    app.dependency_overrides.clear()
