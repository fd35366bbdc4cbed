import pytest

from wrap_concierge.conversation_state import STAGE_EMAIL_CAPTURED, STAGE_QUOTE_SENT, ConversationState
from wrap_concierge.entity_extractor import Vehicle
from wrap_concierge.order_status import OrderLookupFailed
from wrap_concierge.pricing_engine import PricingBlocked
from wrap_concierge.prompt_composer import (
    PromptComposer,
    TurnFacts,
    enforce_blocked_pricing,
    enforce_delivery_claims,
)


@pytest.fixture()
def composer(resources, settings):
    return PromptComposer(settings.prompts_dir, resources.brand)


def _facts(extractor, text, state=None, **kwargs):
    return TurnFacts(extraction=extractor.extract(text), state=state or ConversationState(), **kwargs)


class TestCompose:
    def test_policy_placeholders_are_filled(self, composer):
        assert "$agent_name" not in composer.policy
        assert "LUIGI" in composer.policy
        assert "hello@weprintwraps.com" in composer.policy

    def test_computed_price_is_in_prompt(self, composer, extractor, pricing):
        state = ConversationState(captured_vehicle=Vehicle("2022", "Ford", "F-150"))
        facts = _facts(extractor, "how much?", state, pricing=pricing.price_model("F-150"))

        prompt = composer.compose(facts)

        assert "CALCULATED PRICING (exact" in prompt.text
        assert "$1,318" in prompt.text
        assert "pricing" in prompt.included

    def test_blocked_pricing_gives_no_number(self, composer, extractor):
        state = ConversationState(captured_vehicle=Vehicle(year="2019"))
        facts = _facts(extractor, "2019 Yugo GV how much", state, pricing=PricingBlocked(reason="model_missing"))

        prompt = composer.compose(facts)

        assert "PRICING BLOCKED" in prompt.text
        assert "CALCULATED PRICING (exact" not in prompt.text

    def test_vehicle_needed_when_nothing_captured(self, composer, extractor):
        prompt = composer.compose(_facts(extractor, "how much does a wrap cost?"))

        assert "vehicle_needed" in prompt.included

    def test_email_reminder_only_after_a_price(self, composer, extractor):
        state = ConversationState(captured_vehicle=Vehicle(model="Camry"))

        first = composer.compose(_facts(extractor, "cool", state, price_previously_given=False))
        later = composer.compose(_facts(extractor, "cool", state, price_previously_given=True))

        assert "email_reminder" not in first.included
        assert "email_reminder" in later.included

    def test_no_email_reminder_once_email_is_known(self, composer, extractor):
        state = ConversationState(stage=STAGE_EMAIL_CAPTURED, captured_email="a@example.com")

        prompt = composer.compose(_facts(extractor, "thanks", state, price_previously_given=True))

        assert "email_reminder" not in prompt.included

    def test_quote_status_blocks(self, composer, extractor):
        pending_state = ConversationState(stage=STAGE_EMAIL_CAPTURED, captured_email="a@example.com")
        sent_state = ConversationState(
            stage=STAGE_QUOTE_SENT, captured_email="a@example.com", quote_number="WPW-250314-AB12"
        )

        pending = composer.compose(_facts(extractor, "price?", pending_state, quote_pending=True))
        sent = composer.compose(_facts(extractor, "thanks", sent_state))

        assert "QUOTE STATUS: PREPARING" in pending.text
        assert "QUOTE STATUS: DELIVERED" in sent.text
        assert "WPW-250314-AB12" in sent.text

    def test_order_lookup_error_block(self, composer, extractor):
        facts = _facts(
            extractor,
            "where is my order 12345",
            order_lookup=OrderLookupFailed("12345", "NETWORK_ERROR", "down"),
        )

        assert "LOOKUP UNAVAILABLE" in composer.compose(facts).text

    def test_order_number_needed(self, composer, extractor):
        assert "order_number_needed" in composer.compose(_facts(extractor, "where is my order?")).included

    def test_escalation_names_the_specialist(self, composer, extractor):
        prompt = composer.compose(_facts(extractor, "bulk order", escalations=["bulk"]))

        assert "Jackson (Bulk/Fleet Sales)" in prompt.text

    def test_product_guidance(self, composer, extractor):
        prompt = composer.compose(_facts(extractor, "do you sell chrome film?"))

        assert "guidance:specialty_film" in prompt.included
        assert "restyleproai.com" in prompt.text

    def test_budget_drops_lowest_priority_first(self, composer, extractor, pricing, resources, settings):
        state = ConversationState(captured_vehicle=Vehicle("2022", "Ford", "F-150"))
        facts = _facts(extractor, "how much for chrome?", state, pricing=pricing.price_model("F-150"))
        price_block = next(block for block in composer.build_blocks(facts) if block.name == "pricing")
        tight = PromptComposer(
            settings.prompts_dir,
            resources.brand,
            max_chars=len(composer.policy) + len(price_block.text) + 2,
        )

        prompt = tight.compose(facts)

        assert prompt.included == ["pricing"]
        assert "captured" in prompt.dropped
        assert "guidance:specialty_film" in prompt.dropped
        assert prompt.text.startswith(composer.policy)


class TestDeliveryClaimGuard:
    def test_claim_removed_before_confirmed_send(self):
        state = ConversationState(stage=STAGE_EMAIL_CAPTURED, captured_email="a@example.com")

        reply = enforce_delivery_claims("Great news, I've sent your quote! Anything else?", state)

        assert "sent your quote" not in reply
        assert "still being prepared" in reply
        assert "a@example.com" in reply
        assert reply.endswith("Anything else?")

    def test_claim_kept_after_confirmed_send(self):
        state = ConversationState(stage=STAGE_QUOTE_SENT, captured_email="a@example.com", quote_number="WPW-1")

        assert enforce_delivery_claims("I've emailed your quote.", state) == "I've emailed your quote."

    def test_unrelated_reply_untouched(self):
        reply = "A 2022 Ford F-150 is about 250 square feet."

        assert enforce_delivery_claims(reply, ConversationState()) == reply

    def test_passive_claim(self):
        reply = enforce_delivery_claims("Your quote has been sent to your inbox.", ConversationState())

        assert "has been sent" not in reply


class TestBlockedPricingGuard:
    def test_dollar_figures_removed(self):
        reply = enforce_blocked_pricing("That would be about $1,200 for the wrap.", "https://weprintwraps.com/quote")

        assert "$" not in reply
        assert "confirm the exact year, make, and model" in reply
        assert "https://weprintwraps.com/quote" in reply

    def test_existing_confirmation_is_not_doubled(self):
        reply = "Could you confirm the exact model? Then I can price it."

        assert enforce_blocked_pricing(reply, "https://weprintwraps.com/quote") == reply

    def test_order_delivery_update_is_not_a_quote_claim(self):
        state = ConversationState(stage=STAGE_EMAIL_CAPTURED, captured_email="a@example.com")
        reply = "Good news! Your order #12345 was delivered on Jan 12. Anything else?"

        assert enforce_delivery_claims(reply, state) == reply

    def test_estimate_claim_is_caught(self):
        reply = enforce_delivery_claims("I've just emailed the estimate over.", ConversationState())

        assert "emailed the estimate" not in reply
        assert "still being prepared" in reply
