from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import requests

from .errors import AdapterUnavailable

logger = logging.getLogger("concierge.orders")

ORDER_PREFIX_RE = re.compile(r"^(?:#|WPW-?)", re.IGNORECASE)

# WooCommerce status code -> customer-facing label.
STATUS_LABELS = {
    "pending": "awaiting_payment",
    "checkout-draft": "awaiting_payment",
    "processing": "in_production",
    "on-hold": "on_hold",
    "completed": "completed",
    "cancelled": "cancelled",
    "refunded": "refunded",
    "failed": "failed",
}

LABEL_DESCRIPTIONS = {
    "awaiting_payment": "waiting on payment before it can go to print",
    "in_production": "in production",
    "on_hold": "on hold while our team reviews it",
    "completed": "completed and shipped",
    "cancelled": "cancelled",
    "refunded": "refunded",
    "failed": "stuck because the payment failed",
    "unknown": "in a status I can't read right now",
}


@dataclass(frozen=True)
class WooOrder:
    """The fields we read from a WooCommerce order payload."""
    id: int
    number: str
    status: str
    date_created: Optional[str]
    total: Optional[str]
    currency: Optional[str]
    line_items: List[str]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WooOrder":
        items = [
            str(item.get("name"))
            for item in payload.get("line_items") or []
            if isinstance(item, dict) and item.get("name")
        ]
        return cls(
            id=int(payload.get("id") or 0),
            number=str(payload.get("number") or payload.get("id") or ""),
            status=str(payload.get("status") or ""),
            date_created=payload.get("date_created"),
            total=payload.get("total"),
            currency=payload.get("currency"),
            line_items=items,
        )


@dataclass(frozen=True)
class OrderFound:
    order_number: str
    status: str
    label: str
    summary: str
    kind: str = "found"


@dataclass(frozen=True)
class OrderNotFound:
    order_number: str
    kind: str = "not_found"


@dataclass(frozen=True)
class OrderLookupFailed:
    order_number: str
    code: str
    message: str
    kind: str = "error"


OrderLookupResult = Union[OrderFound, OrderNotFound, OrderLookupFailed]


def normalize_order_number(raw: str) -> str:
    """Strip '#', a WPW prefix, and whitespace: '#12345' and 'WPW-12345' -> '12345'."""
    cleaned = re.sub(r"\s+", "", raw or "")
    return ORDER_PREFIX_RE.sub("", cleaned)


def status_label(status: str) -> str:
    return STATUS_LABELS.get((status or "").lower(), "unknown")


class WooCommerceClient:
    """Minimal WooCommerce REST client for order lookup by number."""

    def __init__(
        self,
        store_url: str,
        consumer_key: str,
        consumer_secret: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._store_url = (store_url or "").rstrip("/")
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._timeout = timeout
        self._session = session or requests.Session()

    def find_orders(self, number: str) -> List[WooOrder]:
        """Purpose: Query WooCommerce for orders matching a number.
        Inputs/Outputs: Input is a normalized number; output is a (possibly empty) list.
        Side Effects / State: One HTTP GET to /wp-json/wc/v3/orders.
        Dependencies: requests with basic auth (consumer key/secret).
        Failure Modes: Raises AdapterUnavailable for missing credentials, network errors,
            non-2xx responses, and non-list bodies.
        If Removed: Order-status questions can only be deflected.
        Testing Notes: Patch Session.get; 200 [] means not found, 401 means error.
        """
        # Credentials are checked before any network call.
        if not (self._store_url and self._consumer_key and self._consumer_secret):
            raise AdapterUnavailable("WooCommerce credentials are not configured", code="MISSING_CREDENTIALS")
        url = f"{self._store_url}/wp-json/wc/v3/orders"
        try:
            response = self._session.get(
                url,
                params={"number": number},
                auth=(self._consumer_key, self._consumer_secret),
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise AdapterUnavailable(
                f"WooCommerce request failed: {exc}", code="NETWORK_ERROR"
            ) from exc
        if not 200 <= response.status_code < 300:
            raise AdapterUnavailable(
                f"WooCommerce returned HTTP {response.status_code}",
                code="UPSTREAM_HTTP_ERROR",
                status=response.status_code,
                details={"body": response.text[:500]},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AdapterUnavailable("WooCommerce returned invalid JSON", code="INVALID_RESPONSE") from exc
        if not isinstance(payload, list):
            raise AdapterUnavailable("WooCommerce returned an unexpected body", code="INVALID_RESPONSE")
        return [WooOrder.from_payload(item) for item in payload if isinstance(item, dict)]


class OrderStatusAdapter:
    """Turn an order number into found / not-found / error, never an exception."""

    def __init__(self, client: WooCommerceClient) -> None:
        self._client = client

    def lookup(self, raw_number: str) -> OrderLookupResult:
        """Purpose: Look up one order and map its provider status to a fixed label.
        Inputs/Outputs: Input is the number as the customer typed it; output is
            OrderFound, OrderNotFound, or OrderLookupFailed.
        Side Effects / State: One upstream request; no retry.
        Dependencies: WooCommerceClient.find_orders and STATUS_LABELS.
        Failure Modes: AdapterUnavailable is logged and returned as OrderLookupFailed.
        If Removed: The prompt could not distinguish "no such order" from "system down".
        Testing Notes: Empty upstream list -> OrderNotFound; HTTP 500 -> OrderLookupFailed.
        """
        # Exact number match first; WooCommerce's search can return near-misses.
        number = normalize_order_number(raw_number)
        try:
            orders = self._client.find_orders(number)
        except AdapterUnavailable as exc:
            logger.warning("order=%s step=order_lookup outcome=error code=%s status=%s", number, exc.code, exc.status)
            return OrderLookupFailed(order_number=number, code=exc.code, message=str(exc))
        match = next((order for order in orders if order.number == number), None)
        if match is None:
            logger.info("order=%s step=order_lookup outcome=not_found candidates=%d", number, len(orders))
            return OrderNotFound(order_number=number)
        label = status_label(match.status)
        logger.info("order=%s step=order_lookup outcome=found status=%s label=%s", number, match.status, label)
        return OrderFound(
            order_number=number,
            status=match.status,
            label=label,
            summary=_summarize(match, label),
        )


def _summarize(order: WooOrder, label: str) -> str:
    parts = [f"Order #{order.number} is {LABEL_DESCRIPTIONS[label]}"]
    if order.date_created:
        parts.append(f"placed {order.date_created[:10]}")
    if order.line_items:
        parts.append("items: " + ", ".join(order.line_items[:3]))
    return "; ".join(parts) + "."


def describe_lookup(result: OrderLookupResult, support_email: str) -> str:
    """Prompt-context text for each lookup outcome."""
    if isinstance(result, OrderFound):
        return (
            "ORDER STATUS (verified from the order system):\n"
            f"{result.summary}\n"
            "Share this status plainly. Do not promise ship dates that are not listed."
        )
    if isinstance(result, OrderNotFound):
        return (
            "ORDER STATUS: NOT FOUND\n"
            f"No order #{result.order_number} exists in the order system. Tell the customer you "
            "don't see that order and ask them to double-check the number or share the email "
            "used at checkout. Do not guess a status."
        )
    return (
        "ORDER STATUS: LOOKUP UNAVAILABLE\n"
        f"The order system could not be reached for #{result.order_number}. Say you're having "
        f"trouble pulling order details right now and offer {support_email} for a quick update. "
        "Do not say the order was not found and do not guess a status."
    )


def lookup_to_state(result: OrderLookupResult) -> Dict[str, Any]:
    data: Dict[str, Any] = {"kind": result.kind, "order_number": result.order_number}
    if isinstance(result, OrderFound):
        data.update(status=result.status, label=result.label, summary=result.summary)
    elif isinstance(result, OrderLookupFailed):
        data.update(code=result.code)
    return data
