import pytest

from wrap_concierge.conversation_state import ConversationState
from wrap_concierge.escalation import EscalationDispatcher, EscalationRequest, detect_situations
from wrap_concierge.session_resolver import SessionResolver


@pytest.fixture()
def conversation(store):
    conversation, _ = SessionResolver(store, "website", "Luigi").resolve("escalation-session")
    return conversation


@pytest.fixture()
def dispatcher(store, email_sender, resources):
    return EscalationDispatcher(store, email_sender, resources.brand)


def _request(conversation, text="My wrap arrived damaged"):
    return EscalationRequest(
        conversation_id=conversation.id,
        message_text=text,
        customer_email="a@example.com",
        vehicle_label="2022 Ford F-150",
        page_url="https://weprintwraps.com/",
    )


class TestDetectSituations:
    def test_fixed_order(self, extractor):
        extraction = extractor.extract("I need a callback about a bulk order and my design is wrong")

        assert detect_situations(extraction) == ["bulk", "design", "quality", "support"]

    def test_no_situations(self, extractor):
        assert detect_situations(extractor.extract("how much for a camry")) == []


class TestEscalationDispatcher:
    def test_routes_to_owner_with_silent_cc(self, dispatcher, conversation, email_sender, store):
        state = ConversationState()

        fired = dispatcher.dispatch(_request(conversation, "bulk order for 10 trucks"), state, ["bulk"])

        assert fired == ["bulk"]
        assert state.escalations_sent == ["bulk"]
        mail = email_sender.sent[0]
        assert mail["to"] == "jackson@weprintwraps.com"
        assert mail["cc"] == ["trish@weprintwraps.com"]
        assert "bulk order for 10 trucks" in mail["html"]
        tasks = store.list_tasks(conversation.id, "escalation")
        assert len(tasks) == 1
        assert tasks[0].assignee == "Jackson"

    def test_cc_skipped_when_owner_is_the_cc(self, dispatcher, conversation, email_sender):
        dispatcher.dispatch(_request(conversation), ConversationState(), ["quality"])

        assert email_sender.sent[0]["to"] == "trish@weprintwraps.com"
        assert email_sender.sent[0]["cc"] is None

    def test_at_most_once_across_turns(self, dispatcher, conversation, email_sender):
        state = ConversationState()
        for _ in range(3):
            dispatcher.dispatch(_request(conversation), state, ["quality"])

        assert len(email_sender.delivered_to("trish@weprintwraps.com")) == 1
        assert state.escalations_sent == ["quality"]

    def test_store_claim_blocks_a_stale_state(self, dispatcher, conversation, email_sender):
        dispatcher.dispatch(_request(conversation), ConversationState(), ["quality"])

        # A second turn that loaded state before the first saved it.
        fired = dispatcher.dispatch(_request(conversation), ConversationState(), ["quality"])

        assert fired == []
        assert len(email_sender.sent) == 1

    def test_failed_send_is_retried_later(self, dispatcher, conversation, email_sender, store):
        state = ConversationState()
        email_sender.succeed = False

        assert dispatcher.dispatch(_request(conversation), state, ["quality"]) == []
        assert state.escalations_sent == []
        assert store.list_escalations(conversation.id) == []

        email_sender.succeed = True
        assert dispatcher.dispatch(_request(conversation), state, ["quality"]) == ["quality"]
        assert len(email_sender.delivered_to("trish@weprintwraps.com")) == 1

    def test_situations_are_independent(self, dispatcher, conversation, email_sender):
        state = ConversationState(escalations_sent=["bulk"])

        fired = dispatcher.dispatch(_request(conversation), state, ["bulk", "design"])

        assert fired == ["design"]
        assert [mail["to"] for mail in email_sender.sent] == ["grant@weprintwraps.com"]

    def test_unknown_situation_is_skipped(self, dispatcher, conversation, email_sender):
        assert dispatcher.dispatch(_request(conversation), ConversationState(), ["unmapped"]) == []
        assert email_sender.sent == []
