from datetime import datetime, timezone

import pytest

from wrap_concierge.entity_extractor import Vehicle
from wrap_concierge.quote_service import QuoteService
from wrap_concierge.session_resolver import SessionResolver

FIXED_NOW = datetime(2025, 3, 14, 15, 0, tzinfo=timezone.utc)


@pytest.fixture()
def conversation(store):
    conversation, _ = SessionResolver(store, "website", "Luigi").resolve("quote-session")
    return conversation


@pytest.fixture()
def quotes(store, email_sender, resources):
    return QuoteService(store, email_sender, resources.brand, high_value_threshold=1500, clock=lambda: FIXED_NOW)


class TestQuoteService:
    def test_quote_number_format(self, quotes):
        number = quotes.new_quote_number()

        assert number.startswith("WPW-250314-")
        assert len(number.split("-")[-1]) == 4

    def test_confirmed_send(self, quotes, conversation, store, email_sender, pricing):
        vehicle = Vehicle("2022", "Ford", "F-150")

        outcome = quotes.create_and_send(conversation.id, "a@example.com", vehicle, pricing.price_model("F-150"))

        assert outcome.success
        assert store.get_quote(outcome.quote_number)["status"] == "sent"
        assert store.get_quote(outcome.quote_number)["cost"] == 1318
        assert "$1,318" in email_sender.sent[0]["html"]
        task = store.list_tasks(conversation.id, "quote_followup")[0]
        assert task.due_date == "2025-03-16"
        assert task.assignee == "Alex Morgan"
        assert task.priority == "normal"

    def test_high_value_follow_up(self, quotes, conversation, store, pricing):
        outcome = quotes.create_and_send(
            conversation.id, "a@example.com", Vehicle(model="Sprinter"), pricing.price_model("Sprinter")
        )

        assert outcome.success
        assert store.list_tasks(conversation.id, "quote_followup")[0].priority == "high"

    def test_failed_send(self, quotes, conversation, store, email_sender, pricing):
        email_sender.succeed = False

        outcome = quotes.create_and_send(conversation.id, "a@example.com", Vehicle(model="F-150"), pricing.price_model("F-150"))

        assert not outcome.success
        assert outcome.error == "UPSTREAM_HTTP_ERROR"
        assert store.get_quote(outcome.quote_number)["status"] == "send_failed"
        assert store.list_tasks(conversation.id, "quote_followup") == []

    def test_manual_quote_task(self, quotes, conversation, store):
        quotes.request_manual_quote(conversation.id, "vehicle_missing", "a@example.com", None)

        task = store.list_tasks(conversation.id, "manual_quote")[0]
        assert task.title == "Manual quote needed (vehicle_missing)"
        assert "vehicle not provided" in task.description
