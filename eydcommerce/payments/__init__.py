from typing import Dict, Optional

from .base import (
    GatewayError, GatewayEvent, PaymentGateway, payment_status_for,
)
from .epayco import EPayco
from .wompi import Wompi

GATEWAYS: Dict[str, type] = {
    Wompi.name: Wompi,
    EPayco.name: EPayco,
}


def get_gateway(name: str) -> Optional[PaymentGateway]:
    cls = GATEWAYS.get((name or "").lower())
    return cls() if cls is not None else None


__all__ = [
    "EPayco",
    "GATEWAYS",
    "GatewayError",
    "GatewayEvent",
    "PaymentGateway",
    "Wompi",
    "get_gateway",
    "payment_status_for",
]
