from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import List, Optional

from .conversation_state import STAGE_QUOTE_SENT, ConversationState
from .entity_extractor import Extraction, Vehicle
from .order_status import OrderLookupResult, describe_lookup
from .pricing_engine import (
    BLOCK_MODEL_MISSING,
    FleetEstimate,
    PriceQuote,
    PricingBlocked,
    PricingResult,
)
from .prompt_loader import load_prompt
from .resource_loader import BrandProfile

logger = logging.getLogger("concierge.prompt")

POLICY_FILE = "concierge_policy.txt"

PRODUCT_INTENTS = ("specialty_film", "window_perf", "cut_contour", "fade_wrap", "wrap_by_yard", "design_file")

PRIORITY_FACTS = 90
PRIORITY_QUOTE = 80
PRIORITY_REMINDER = 70
PRIORITY_CONTEXT = 60
PRIORITY_ESCALATION = 50
PRIORITY_GUIDANCE = 30

DELIVERY_CLAIM_RE = re.compile(
    r"\b(?:i(?:'ve| have)?\s+(?:just\s+|already\s+)?(?:sent|emailed|e-mailed)"
    r"|(?:has|have|was|were)\s+(?:been\s+)?(?:sent|emailed|e-mailed|delivered)"
    r"|(?:it's|it is)\s+(?:in|on its way to)\s+your\s+inbox)\b",
    re.IGNORECASE,
)
QUOTE_MENTION_RE = re.compile(r"\b(?:quotes?|estimates?|inbox)\b", re.IGNORECASE)
SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
PRICE_FIGURE_RE = re.compile(r"\$\s?\d")
VEHICLE_CONFIRM_RE = re.compile(r"\b(?:confirm|year, make|make and model|estimator)\b", re.IGNORECASE)


@dataclass
class PromptBlock:
    name: str
    text: str
    priority: int


@dataclass
class ComposedPrompt:
    text: str
    included: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)


@dataclass
class TurnFacts:
    """Everything the composer needs from the current turn."""
    extraction: Extraction
    state: ConversationState
    pricing: Optional[PricingResult] = None
    fleet: Optional[FleetEstimate] = None
    order_lookup: Optional[OrderLookupResult] = None
    price_previously_given: bool = False
    quote_pending: bool = False
    escalations: List[str] = field(default_factory=list)


class PromptComposer:
    """Build the bounded system prompt: fixed policy plus prioritized context blocks."""

    def __init__(self, prompts_dir: Path, brand: BrandProfile, max_chars: int = 12000) -> None:
        self._brand = brand
        self._max_chars = max_chars
        self._policy = Template(load_prompt(prompts_dir / POLICY_FILE)).safe_substitute(
            agent_name=brand.agent_name.upper(),
            brand_name=brand.brand_name,
            support_email=brand.support_email,
            estimator_url=brand.estimator_url,
        ).strip()

    @property
    def policy(self) -> str:
        return self._policy

    def compose(self, facts: TurnFacts) -> ComposedPrompt:
        """Purpose: Assemble the system prompt for one turn within the character budget.
        Inputs/Outputs: Input is TurnFacts; output is ComposedPrompt with the names of
            included and dropped blocks.
        Side Effects / State: None.
        Dependencies: The block builders below and describe_lookup for order context.
        Failure Modes: None. When over budget, lowest-priority blocks are dropped first;
            the policy is never dropped.
        If Removed: The model would answer without computed prices or order facts.
        Testing Notes: With a tiny max_chars only the policy and fact blocks survive.
        """
        # Highest priority first; stable for equal priorities.
        blocks = self.build_blocks(facts)
        ordered = sorted(blocks, key=lambda block: -block.priority)
        parts = [self._policy]
        used = len(self._policy)
        result = ComposedPrompt(text="")
        for block in ordered:
            cost = len(block.text) + 2
            if used + cost > self._max_chars:
                result.dropped.append(block.name)
                continue
            parts.append(block.text)
            used += cost
            result.included.append(block.name)
        if result.dropped:
            logger.info("prompt dropped_blocks=%s chars=%d", ",".join(result.dropped), used)
        result.text = "\n\n".join(parts)
        return result

    def build_blocks(self, facts: TurnFacts) -> List[PromptBlock]:
        blocks: List[PromptBlock] = []
        state = facts.state
        extraction = facts.extraction

        captured = self._captured_block(state)
        if captured:
            blocks.append(PromptBlock("captured", captured, PRIORITY_CONTEXT))

        if isinstance(facts.pricing, PriceQuote):
            blocks.append(PromptBlock("pricing", self._price_block(state.captured_vehicle, facts.pricing), PRIORITY_FACTS))
            if facts.fleet:
                blocks.append(PromptBlock("fleet", self._fleet_block(facts.fleet), PRIORITY_FACTS))
        elif isinstance(facts.pricing, PricingBlocked):
            blocks.append(PromptBlock("pricing_blocked", self._blocked_block(state.captured_vehicle, facts.pricing), PRIORITY_FACTS))
        elif extraction.has("pricing") and state.captured_vehicle is None:
            blocks.append(PromptBlock("vehicle_needed", self._vehicle_needed_block(), PRIORITY_REMINDER))

        if facts.order_lookup is not None:
            blocks.append(PromptBlock("order_status", describe_lookup(facts.order_lookup, self._brand.support_email), PRIORITY_FACTS))
        elif extraction.has("order_status") and not extraction.order_number:
            blocks.append(PromptBlock("order_number_needed", ORDER_NUMBER_NEEDED, PRIORITY_REMINDER))

        quote_block = self._quote_status_block(state, facts.quote_pending)
        if quote_block:
            blocks.append(PromptBlock("quote_status", quote_block, PRIORITY_QUOTE))

        if facts.price_previously_given and not state.captured_email:
            blocks.append(PromptBlock("email_reminder", EMAIL_REMINDER, PRIORITY_REMINDER))

        handoff = self._escalation_block(facts.escalations) if facts.escalations else ""
        if handoff:
            blocks.append(PromptBlock("escalation", handoff, PRIORITY_ESCALATION))

        for intent in PRODUCT_INTENTS:
            guidance = self._brand.product_guidance.get(intent)
            if guidance and extraction.has(intent):
                blocks.append(PromptBlock(f"guidance:{intent}", f"PRODUCT GUIDANCE ({intent}):\n{guidance}", PRIORITY_GUIDANCE))
        return blocks

    def _captured_block(self, state: ConversationState) -> str:
        lines = []
        if state.captured_vehicle:
            lines.append(f"- Vehicle: {state.captured_vehicle.label()}")
        if state.captured_email:
            lines.append(f"- Email: {state.captured_email}")
        if not lines:
            return ""
        return "WHAT WE ALREADY KNOW (do not ask again):\n" + "\n".join(lines)

    def _price_block(self, vehicle: Optional[Vehicle], quote: PriceQuote) -> str:
        label = vehicle.label() if vehicle else quote.model_key
        return (
            "CALCULATED PRICING (exact, use these numbers):\n"
            f"Vehicle: {label}\n"
            f"Estimated coverage: {quote.sqft} sq ft\n"
            f"Material cost at ${quote.unit_rate:.2f}/sq ft: ${quote.cost:,}\n"
            f'Say: "A {label} is about {quote.sqft} square feet. At ${quote.unit_rate:.2f}/sq ft '
            f'that\'s around ${quote.cost:,} for the printed wrap material."'
        )

    def _fleet_block(self, fleet: FleetEstimate) -> str:
        if fleet.discount_percent:
            discount = f"{fleet.discount_percent}% fleet discount applied"
        else:
            discount = "no fleet discount tier reached yet"
        return (
            "FLEET ESTIMATE:\n"
            f"{fleet.vehicle_count} vehicles, {fleet.total_sqft} sq ft total. "
            f"Subtotal ${fleet.subtotal:,}, {discount}, total ${fleet.total:,}."
        )

    def _blocked_block(self, vehicle: Optional[Vehicle], blocked: PricingBlocked) -> str:
        if blocked.reason == BLOCK_MODEL_MISSING:
            detail = "We could not tell which model the customer has."
        else:
            detail = f"The vehicle ({vehicle.label() if vehicle else blocked.model_key}) is not in our pricing table."
        return (
            "PRICING BLOCKED (do not give any number):\n"
            f"{detail} Ask the customer to confirm the exact year, make, and model, "
            f"or send them to the online estimator: {self._brand.estimator_url}"
        )

    def _vehicle_needed_block(self) -> str:
        return (
            "VEHICLE NEEDED:\n"
            "The customer wants pricing but we don't know the vehicle. Ask for year, make, and model. "
            "Do not quote a price yet."
        )

    def _quote_status_block(self, state: ConversationState, quote_pending: bool) -> str:
        if state.stage == STAGE_QUOTE_SENT and state.quote_number:
            return (
                "QUOTE STATUS: DELIVERED\n"
                f"Quote {state.quote_number} was emailed to {state.captured_email}. You may confirm it was sent."
            )
        if quote_pending:
            return (
                "QUOTE STATUS: PREPARING\n"
                f"A written quote is being prepared for {state.captured_email}. Say it is being prepared "
                "and will arrive by email. Do NOT say it has been sent."
            )
        return ""

    def _escalation_block(self, situations: List[str]) -> str:
        names = []
        for situation in situations:
            route = self._brand.escalation_routes.get(situation)
            if route:
                names.append(f"{route.name} ({route.role})")
        if not names:
            return ""
        return (
            "TEAM HANDOFF:\n"
            f"This needs a specialist: {', '.join(names)}. Tell the customer a team member will follow up, "
            "and ask for their email if we don't have it yet."
        )


EMAIL_REMINDER = (
    "EMAIL REMINDER:\n"
    "We already gave this customer a price but have no email. Ask for their email so we can send "
    "a written quote."
)

ORDER_NUMBER_NEEDED = (
    "ORDER NUMBER NEEDED:\n"
    "The customer is asking about an order but didn't give an order number. Ask for it."
)


def still_preparing_line(email: Optional[str]) -> str:
    if email:
        return f"Your written quote is still being prepared and will be emailed to {email} as soon as it's ready."
    return "Your written quote is still being prepared and will be emailed as soon as it's ready."


def enforce_delivery_claims(reply: str, state: ConversationState) -> str:
    """Purpose: Remove "quote was sent" claims while delivery is unconfirmed.
    Inputs/Outputs: Inputs are the model reply and current state; output is the reply
        with offending sentences replaced by one still-preparing line.
    Side Effects / State: None.
    Dependencies: DELIVERY_CLAIM_RE and QUOTE_MENTION_RE; a claim must name the quote,
        so "your order was delivered" passes through.
    Failure Modes: Over-matching only swaps a sentence for the still-preparing line.
    If Removed: A model slip could tell a customer their quote arrived when it did not.
    Testing Notes: "I've sent your quote!" at stage email_captured must disappear.
    """
    # Confirmed deliveries may be mentioned freely.
    if state.stage == STAGE_QUOTE_SENT:
        return reply
    sentences = SENTENCE_SPLIT_RE.split(reply.strip())
    kept: List[str] = []
    replaced = False
    for sentence in sentences:
        if DELIVERY_CLAIM_RE.search(sentence) and QUOTE_MENTION_RE.search(sentence):
            if not replaced:
                kept.append(still_preparing_line(state.captured_email))
                replaced = True
            continue
        kept.append(sentence)
    if replaced:
        logger.warning("reply step=delivery_guard outcome=rewritten stage=%s", state.stage)
    return " ".join(part for part in kept if part)


def confirm_vehicle_line(estimator_url: str) -> str:
    line = "Could you confirm the exact year, make, and model so I can get you an accurate price?"
    if estimator_url:
        line += f" You can also use our online estimator: {estimator_url}"
    return line


def enforce_blocked_pricing(reply: str, estimator_url: str) -> str:
    """Strip dollar figures from a reply when this turn's pricing was blocked."""
    sentences = SENTENCE_SPLIT_RE.split(reply.strip())
    kept = [sentence for sentence in sentences if not PRICE_FIGURE_RE.search(sentence)]
    if len(kept) != len(sentences):
        logger.warning("reply step=blocked_price_guard outcome=rewritten")
    text = " ".join(part for part in kept if part)
    if not VEHICLE_CONFIRM_RE.search(text):
        text = f"{text} {confirm_vehicle_line(estimator_url)}".strip()
    return text
