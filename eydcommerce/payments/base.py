import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx
from fastapi import HTTPException

from ..model.db import PaymentStatus

# normalized transaction states
PENDING = "PENDING"
APPROVED = "APPROVED"
DECLINED = "DECLINED"
VOIDED = "VOIDED"
ERROR = "ERROR"
EXPIRED = "EXPIRED"

_ORDER_STATUS = {
    APPROVED: PaymentStatus.COMPLETED,
    DECLINED: PaymentStatus.FAILED,
    ERROR: PaymentStatus.FAILED,
    VOIDED: PaymentStatus.CANCELLED,
    EXPIRED: PaymentStatus.CANCELLED,
    PENDING: PaymentStatus.PENDING,
}


def payment_status_for(status: str) -> PaymentStatus:
    return _ORDER_STATUS.get(status, PaymentStatus.PENDING)


class GatewayError(RuntimeError):
    pass


@dataclass
class GatewayEvent:
    event_type: str
    transaction_id: str
    status: str
    reference: Optional[str] = None
    amount: Optional[int] = None  # cents
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def parse_json_body(payload: bytes) -> dict:
    try:
        data = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    return data


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    name: str = ""

    # raises HTTPException 401 (signature) / 400 (payload)
    @abstractmethod
    def verify_webhook(
            self, payload: bytes, headers: Mapping[str, str]
    ) -> GatewayEvent: ...

    # raises GatewayError when the gateway cannot be reached or refuses
    @abstractmethod
    async def fetch_transaction(
            self, http: httpx.AsyncClient, transaction_id: str
    ) -> GatewayEvent: ...
