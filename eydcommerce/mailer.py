"""Transactional email through the Resend HTTP API.

Bodies are rendered from the Jinja2 templates in ``templates/email``. With
sending disabled or no API key configured the message is only logged, so
local runs and dev environments never need credentials.
"""
from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


RESEND_API_URL = "https://api.resend.com/emails"
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
EMAIL_FROM = os.environ.get(
    "EMAIL_FROM", "Energía y Divinidad <noreply@energiaydivinidad.com>"
)
ADMIN_NOTIFICATION_EMAIL = os.environ.get("ADMIN_NOTIFICATION_EMAIL", "")
APP_URL = os.environ.get("APP_URL", "http://localhost:8000").rstrip("/")
EMAIL_SEND_ENABLED = _env_bool("EMAIL_SEND_ENABLED", default=True)

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates", "email")

_templates = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html"]),
)


class MailerError(RuntimeError):
    pass


def format_amount(cents: int, currency: str) -> str:
    value = (cents or 0) / 100
    if currency == "COP":
        return "$" + f"{value:,.0f}".replace(",", ".") + " COP"
    return f"{value:,.2f} {currency}"


_templates.filters["money"] = format_amount


def _fmt_date(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.strftime("%d/%m/%Y %H:%M")


_templates.filters["date"] = _fmt_date


@dataclass
class PaymentConfirmationEmail:
    email: str
    name: str
    order_number: str
    order_type: str
    item_name: str
    amount: int
    currency: str
    payment_method: str
    transaction_id: Optional[str] = None


@dataclass
class AdminSaleNotification:
    # SESSION | SESSION_PACK | MEMBERSHIP | EVENT | COURSE |
    # PREMIUM_CONTENT | PRODUCT
    sale_type: str
    customer_name: str
    customer_email: str
    item_name: str
    amount: int
    currency: str
    payment_method: str
    order_number: str
    customer_phone: Optional[str] = None
    transaction_id: Optional[str] = None
    session_date: Optional[datetime] = None
    session_count: Optional[int] = None
    membership_plan: Optional[str] = None
    membership_interval: Optional[str] = None
    event_date: Optional[datetime] = None
    event_seats: Optional[int] = None
    event_type: Optional[str] = None


class Mailer:
    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        admin_email: Optional[str] = None,
        app_url: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        self.http = http
        self.api_key = RESEND_API_KEY if api_key is None else api_key
        self.sender = sender or EMAIL_FROM
        self.admin_email = (
            ADMIN_NOTIFICATION_EMAIL if admin_email is None else admin_email
        )
        self.app_url = (app_url or APP_URL).rstrip("/")
        self.enabled = EMAIL_SEND_ENABLED if enabled is None else enabled

    async def send_payment_confirmation(
        self, msg: PaymentConfirmationEmail
    ) -> None:
        html = _templates.get_template("payment_confirmation.html").render(
            app_url=self.app_url, **asdict(msg)
        )
        await self._send(
            to=msg.email,
            subject=f"Confirmación de pago - Orden {msg.order_number}",
            html=html,
        )

    async def send_admin_notification(
        self, msg: AdminSaleNotification
    ) -> None:
        if not self.admin_email:
            logger.warning(
                "ADMIN_NOTIFICATION_EMAIL not configured; sale %s not "
                "notified", msg.order_number,
            )
            return
        html = _templates.get_template("admin_sale.html").render(
            app_url=self.app_url, **asdict(msg)
        )
        await self._send(
            to=self.admin_email,
            subject=f"Nueva venta ({msg.sale_type}): {msg.item_name}",
            html=html,
        )

    async def _send(self, to: str, subject: str, html: str) -> None:
        if not self.enabled or not self.api_key:
            logger.warning(
                "Email sending disabled or not configured; "
                "skipping %r to %s", subject, to,
            )
            return

        payload = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self.http is not None:
                resp = await self.http.post(
                    RESEND_API_URL, json=payload, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=20.0) as client:
                    resp = await client.post(
                        RESEND_API_URL, json=payload, headers=headers
                    )
        except httpx.HTTPError as exc:
            raise MailerError(f"Resend request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise MailerError(
                f"Resend rejected email (HTTP {resp.status_code}): "
                f"{resp.text[:300]}"
            )
        logger.info("Email %r sent to %s", subject, to)
