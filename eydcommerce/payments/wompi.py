import hashlib
import hmac
import logging
import os
from typing import Mapping, Optional

import httpx
from fastapi import HTTPException

from .base import (
    APPROVED, DECLINED, ERROR, PENDING, VOIDED, GatewayError, GatewayEvent,
    PaymentGateway, parse_json_body,
)

logger = logging.getLogger(__name__)

WOMPI_EVENTS_SECRET = os.environ.get("WOMPI_EVENTS_SECRET", "")
WOMPI_PRIVATE_KEY = os.environ.get("WOMPI_PRIVATE_KEY", "")
WOMPI_ENVIRONMENT = os.environ.get("WOMPI_ENVIRONMENT", "sandbox")

API_URLS = {
    "sandbox": "https://sandbox.wompi.co/v1",
    "production": "https://production.wompi.co/v1",
}

_STATUSES = {APPROVED, DECLINED, VOIDED, PENDING, ERROR}


def _status(raw: Optional[str]) -> str:
    status = (raw or "").upper()
    return status if status in _STATUSES else PENDING


def _event(transaction: dict, event_type: str, raw: dict) -> GatewayEvent:
    amount = transaction.get("amount_in_cents")
    return GatewayEvent(
        event_type=event_type,
        transaction_id=str(transaction.get("id") or ""),
        status=_status(transaction.get("status")),
        reference=transaction.get("reference"),
        amount=int(amount) if amount is not None else None,
        currency=transaction.get("currency"),
        raw=raw,
    )


class Wompi(PaymentGateway):
    name = "wompi"

    def __init__(
        self,
        events_secret: Optional[str] = None,
        private_key: Optional[str] = None,
        environment: Optional[str] = None,
    ):
        self.events_secret = (
            WOMPI_EVENTS_SECRET if events_secret is None else events_secret
        )
        self.private_key = (
            WOMPI_PRIVATE_KEY if private_key is None else private_key
        )
        env = environment or WOMPI_ENVIRONMENT
        self.api_url = API_URLS.get(env, API_URLS["sandbox"])

    def signature(self, payload: bytes, timestamp: str) -> str:
        return hmac.new(
            self.events_secret.encode(),
            timestamp.encode() + payload,
            hashlib.sha256,
        ).hexdigest()

    def verify_webhook(
            self, payload: bytes, headers: Mapping[str, str]
    ) -> GatewayEvent:
        if not self.events_secret:
            logger.error("WOMPI_EVENTS_SECRET is not configured")
            raise HTTPException(status_code=401, detail="Invalid signature")

        sig = headers.get("x-event-checksum") or ""
        timestamp = headers.get("x-event-timestamp") or ""
        expected = self.signature(payload, timestamp)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=401, detail="Invalid signature")

        data = parse_json_body(payload)
        transaction = (data.get("data") or {}).get("transaction")
        if not isinstance(transaction, dict) or not transaction.get("id"):
            raise HTTPException(
                status_code=400, detail="No transaction in webhook payload"
            )
        return _event(
            transaction, data.get("event") or "transaction.updated", data
        )

    async def fetch_transaction(
            self, http: httpx.AsyncClient, transaction_id: str
    ) -> GatewayEvent:
        if not self.private_key:
            raise GatewayError("WOMPI_PRIVATE_KEY is not configured")
        try:
            resp = await http.get(
                f"{self.api_url}/transactions/{transaction_id}",
                headers={"Authorization": f"Bearer {self.private_key}"},
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"Wompi request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise GatewayError(
                f"Wompi lookup failed (HTTP {resp.status_code})"
            )
        data = resp.json()
        transaction = data.get("data")
        if not isinstance(transaction, dict):
            raise GatewayError("Transaction not found")
        return _event(transaction, "transaction.verified", data)
