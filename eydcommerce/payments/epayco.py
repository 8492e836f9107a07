import hashlib
import hmac
import logging
import os
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

import httpx
from fastapi import HTTPException

from .base import (
    APPROVED, DECLINED, ERROR, EXPIRED, PENDING, GatewayError, GatewayEvent,
    PaymentGateway, parse_json_body,
)

logger = logging.getLogger(__name__)

EPAYCO_CUST_ID = os.environ.get("EPAYCO_CUST_ID", "")
EPAYCO_P_KEY = os.environ.get("EPAYCO_P_KEY", "")
EPAYCO_PRIVATE_KEY = os.environ.get("EPAYCO_PRIVATE_KEY", "")

EPAYCO_API_URL = "https://api.secure.epayco.co"

# x_cod_response / cod_respuesta
_STATUS_CODES = {
    "1": APPROVED,
    "2": DECLINED,
    "3": PENDING,
    "4": ERROR,
    "6": DECLINED,   # reversed
    "7": PENDING,    # held
    "10": DECLINED,  # rejected
    "11": EXPIRED,
}


def status_for_code(code: Any) -> str:
    return _STATUS_CODES.get(str(code).strip(), PENDING)


def _to_cents(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(Decimal(str(value)) * 100)
    except InvalidOperation:
        return None


class EPayco(PaymentGateway):
    name = "epayco"

    def __init__(
        self,
        cust_id: Optional[str] = None,
        p_key: Optional[str] = None,
        private_key: Optional[str] = None,
        api_url: str = EPAYCO_API_URL,
    ):
        self.cust_id = EPAYCO_CUST_ID if cust_id is None else cust_id
        self.p_key = EPAYCO_P_KEY if p_key is None else p_key
        self.private_key = (
            EPAYCO_PRIVATE_KEY if private_key is None else private_key
        )
        self.api_url = api_url.rstrip("/")

    def signature(self, fields: Mapping[str, Any]) -> str:
        data = "^".join([
            str(fields.get("x_cust_id_cliente", "")),
            self.p_key,
            str(fields.get("x_ref_payco", "")),
            str(fields.get("x_transaction_id", "")),
            str(fields.get("x_amount", "")),
            str(fields.get("x_currency_code", "")),
        ])
        # ePayco falls back to the literal key "sha256" when unset
        key = self.private_key or "sha256"
        return hmac.new(key.encode(), data.encode(), hashlib.sha256).hexdigest()

    def _parse(self, payload: bytes, headers: Mapping[str, str]) -> dict:
        content_type = headers.get("content-type") or ""
        if "application/x-www-form-urlencoded" in content_type:
            try:
                return dict(parse_qsl(payload.decode(), keep_blank_values=True))
            except UnicodeDecodeError:
                raise HTTPException(status_code=400, detail="Invalid form")
        return parse_json_body(payload)

    def verify_webhook(
            self, payload: bytes, headers: Mapping[str, str]
    ) -> GatewayEvent:
        data = self._parse(payload, headers)

        if not data.get("x_ref_payco") or not data.get("x_transaction_id"):
            raise HTTPException(
                status_code=400, detail="Missing x_ref_payco/x_transaction_id"
            )

        if self.cust_id and str(data.get("x_cust_id_cliente")) != self.cust_id:
            raise HTTPException(status_code=401, detail="Unknown merchant")

        sig = str(data.get("x_signature") or "")
        if not sig or not hmac.compare_digest(self.signature(data), sig):
            raise HTTPException(status_code=401, detail="Invalid signature")

        return GatewayEvent(
            event_type=f"transaction.{data.get('x_response', '')}",
            transaction_id=str(data["x_ref_payco"]),
            status=status_for_code(data.get("x_cod_response")),
            reference=data.get("x_id_invoice"),
            amount=_to_cents(data.get("x_amount")),
            currency=data.get("x_currency_code"),
            raw=data,
        )

    async def fetch_transaction(
            self, http: httpx.AsyncClient, transaction_id: str
    ) -> GatewayEvent:
        try:
            resp = await http.get(
                f"{self.api_url}/transaction/response.json",
                params={"ref_payco": transaction_id},
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"ePayco request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise GatewayError(
                f"ePayco lookup failed (HTTP {resp.status_code})"
            )
        body = resp.json()
        data = body.get("data")
        if not body.get("success", True) or not isinstance(data, dict):
            raise GatewayError("Transaction not found")
        return GatewayEvent(
            event_type="transaction.verified",
            transaction_id=str(data.get("ref_payco") or transaction_id),
            status=status_for_code(data.get("cod_respuesta")),
            reference=data.get("factura"),
            amount=_to_cents(data.get("valor")),
            currency=data.get("moneda"),
            raw=body,
        )
