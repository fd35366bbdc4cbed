from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

import requests

from .errors import AdapterUnavailable
from .utils import mask_email

logger = logging.getLogger("concierge.email")

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html: str, cc: Optional[List[str]] = None) -> SendResult:
        ...


class ResendEmailSender:
    """Send transactional email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._timeout = timeout
        self._session = session or requests.Session()

    def send(self, to: str, subject: str, html: str, cc: Optional[List[str]] = None) -> SendResult:
        """Purpose: Deliver one email and report whether the provider accepted it.
        Inputs/Outputs: Inputs are recipient, subject, HTML body, optional CC list;
            output is SendResult.
        Side Effects / State: One HTTP POST to Resend.
        Dependencies: requests; RESEND_API_KEY from settings.
        Failure Modes: Missing key, network errors, and non-2xx responses come back as
            SendResult(success=False); success is only reported on a 2xx with an id.
        If Removed: Quotes and escalations can never be confirmed as delivered.
        Testing Notes: Patch Session.post to return 200 {"id": ...} vs 422.
        """
        # Only a provider-confirmed id counts as sent.
        try:
            message_id = self._post(to, subject, html, cc)
        except AdapterUnavailable as exc:
            logger.warning("email to=%s subject=%r outcome=failed code=%s", mask_email(to), subject, exc.code)
            return SendResult(success=False, error=exc.code)
        logger.info("email to=%s subject=%r outcome=sent id=%s", mask_email(to), subject, message_id)
        return SendResult(success=True, message_id=message_id)

    def _post(self, to: str, subject: str, html: str, cc: Optional[List[str]]) -> str:
        if not self._api_key:
            raise AdapterUnavailable("RESEND_API_KEY is not configured", code="MISSING_API_KEY")
        payload = {"from": self._sender, "to": [to], "subject": subject, "html": html}
        copies = [address for address in cc or [] if address and address != to]
        if copies:
            payload["cc"] = copies
        try:
            response = self._session.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise AdapterUnavailable(f"Resend request failed: {exc}", code="NETWORK_ERROR") from exc
        if not 200 <= response.status_code < 300:
            raise AdapterUnavailable(
                f"Resend returned HTTP {response.status_code}",
                code="UPSTREAM_HTTP_ERROR",
                status=response.status_code,
                details={"body": response.text[:500]},
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise AdapterUnavailable("Resend returned invalid JSON", code="INVALID_RESPONSE") from exc
        message_id = body.get("id") if isinstance(body, dict) else None
        if not message_id:
            raise AdapterUnavailable("Resend response had no message id", code="INVALID_RESPONSE")
        return str(message_id)
