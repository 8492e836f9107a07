from __future__ import annotations

import logging
import os
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .cms import CMSError, SanityClient
from .course_access import can_access_course
from .fulfillment import process_approved_payment, send_confirmation_email
from .fulfillment.notify import FAILED, SKIPPED
from .helpers import ct_equal, parse_iso, to_iso, utcnow
from .infra.sql import make_async_engine
from .infra import timings
from .infra.timings import timeit
from .mailer import Mailer
from .model.db import AuditLog, Base, Order, PaymentStatus, load_order
from .packs import PackCodeError, redeem_pack_session, validate_pack_code
from .payments import GatewayError, PaymentGateway, get_gateway
from .webhooks import process_payment_webhook, verify_transaction

logger = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    raise RuntimeError("DATABASE_URL is required (e.g. sqlite:///./eyd.db)")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


engine, SessionAsync, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


app = FastAPI(
    title="eydcommerce",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


def get_http() -> httpx.AsyncClient:
    http = getattr(app.state, "http", None)
    if http is None:
        raise RuntimeError("HTTP client not initialized")
    return http


def get_mailer() -> Mailer:
    mailer = getattr(app.state, "mailer", None)
    if mailer is None:
        raise RuntimeError("Mailer not initialized")
    return mailer


def get_cms() -> SanityClient:
    cms = getattr(app.state, "cms", None)
    if cms is None:
        raise RuntimeError("CMS client not initialized")
    return cms


def gateway_for(provider: str) -> PaymentGateway:
    gateway = get_gateway(provider)
    if gateway is None:
        raise HTTPException(404, detail=f"unknown payment provider: {provider}")
    return gateway


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _logging_init():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=20.0,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
    )
    app.state.mailer = Mailer(http=app.state.http)
    app.state.cms = SanityClient(app.state.http)
    logger.info("eydcommerce started (email enabled: %s)",
                app.state.mailer.enabled)


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None
        app.state.mailer = None
        app.state.cms = None


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> str:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="No autorizado")
    return request.session["admin_user"]


def session_user_id(request: Request) -> Optional[str]:
    # written by the storefront sign-in, which shares SESSION_SECRET
    return request.session.get("user_id")


def require_user(user_id: Optional[str] = Depends(session_user_id)) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="No autenticado")
    return user_id


def order_summary(order: Order) -> dict:
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "orderType": order.order_type,
        "itemName": order.item_name,
        "amount": order.amount,
        "currency": order.currency,
        "paymentMethod": order.payment_method,
        "paymentStatus": order.payment_status,
        "guestEmail": order.guest_email or "",
        "createdAt": to_iso(order.created_at),
        "updatedAt": to_iso(order.updated_at),
    }


# ----------------------------
# Webhook endpoint (shared by all gateways)
# ----------------------------
@app.post("/api/webhooks/{provider}")
async def payments_webhook(
    request: Request,
    gateway: PaymentGateway = Depends(gateway_for),
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    payload = await request.body()
    headers = dict(request.headers)

    async with timeit(f"webhook.{gateway.name}"):
        result = await process_payment_webhook(
            db, gateway, payload, headers, mailer=mailer
        )

    if not result.success:
        return ORJSONResponse(
            {"received": True, "error": result.error}, status_code=500
        )
    return {
        "received": True,
        "processed": result.processed,
        "eventId": result.event_id,
    }


# ----------------------------
# API: manual verification against the gateway
# ----------------------------
@app.post("/api/payments/{provider}/verify")
async def payments_verify(
    payload: dict,
    gateway: PaymentGateway = Depends(gateway_for),
    db: AsyncSession = Depends(get_db),
    http: httpx.AsyncClient = Depends(get_http),
    mailer: Mailer = Depends(get_mailer),
    admin: str = Depends(require_admin),
):
    transaction_id = str(payload.get("transactionId") or "").strip()
    if not transaction_id:
        raise HTTPException(400, detail="transactionId is required")

    try:
        async with timeit(f"verify.{gateway.name}"):
            result = await verify_transaction(
                db, gateway, http, transaction_id, mailer=mailer
            )
    except GatewayError as exc:
        logger.warning("Verification of %s via %s failed: %s",
                       transaction_id, gateway.name, exc)
        raise HTTPException(502, detail=str(exc))

    if not result.success:
        return ORJSONResponse(result.as_dict(), status_code=500)
    return result.as_dict()


# ----------------------------
# API: Order status (polled by success page)
# ----------------------------
@app.get("/api/orders/{order_number}")
async def get_order(order_number: str, db: AsyncSession = Depends(get_db)):
    # DB-GATE!!!
    async with timeit("db.get_order"):
        async with gated():
            order = await load_order(db, order_number=order_number)
    if order is None:
        # webhook may not have landed yet -> let client keep polling
        raise HTTPException(404, detail="order not found")
    return {
        "orderNumber": order.order_number,
        "status": order.payment_status,
        "orderType": order.order_type,
        "itemName": order.item_name,
        "amount": order.amount,
        "currency": order.currency,
        "createdAt": to_iso(order.created_at),
    }


# ----------------------------
# API: session packs
# ----------------------------
@app.post("/api/sessions/validate-pack-code")
async def sessions_validate_pack_code(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(require_user),
):
    code = payload.get("code")
    try:
        pack = await validate_pack_code(
            db, code if isinstance(code, str) else "", user_id
        )
    except PackCodeError as exc:
        return ORJSONResponse(
            {"valid": False, "error": str(exc)}, status_code=exc.status_code
        )
    return {"valid": True, "packCode": pack.as_dict()}


@app.post("/api/sessions/redeem-pack")
async def sessions_redeem_pack(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(require_user),
):
    pack_id = payload.get("packId")
    scheduled_at = parse_iso(payload.get("scheduledAt"))
    if scheduled_at is None and payload.get("date") and payload.get("time"):
        scheduled_at = parse_iso(f"{payload['date']}T{payload['time']}:00")
    if not pack_id or scheduled_at is None:
        raise HTTPException(400, detail="Faltan parámetros requeridos")

    try:
        async with timeit("packs.redeem"):
            booking, remaining = await redeem_pack_session(
                db, pack_id, user_id, scheduled_at
            )
    except PackCodeError as exc:
        raise HTTPException(exc.status_code, detail=str(exc))

    return {
        "success": True,
        "booking": {
            "id": booking.id,
            "scheduledAt": booking.scheduled_at.isoformat(),
            "status": booking.status,
        },
        "sessionsRemaining": remaining,
        "message": f"Sesión reservada exitosamente. Te quedan {remaining} "
                   f"sesiones en tu pack.",
    }


# ----------------------------
# API: course access
# ----------------------------
@app.get("/api/courses/{course_id}/access")
async def course_access(
    course_id: str,
    db: AsyncSession = Depends(get_db),
    cms: SanityClient = Depends(get_cms),
    user_id: Optional[str] = Depends(session_user_id),
):
    if not user_id:
        return {"hasAccess": False, "reason": "no_access",
                "message": "No autenticado"}
    try:
        access = await can_access_course(db, cms, user_id, course_id)
    except CMSError as exc:
        logger.warning("Course access check for %s failed: %s", course_id, exc)
        raise HTTPException(502, detail="Error al verificar acceso")
    return {
        "hasAccess": access.has_access,
        "reason": access.reason,
        "entitlementId": access.entitlement_id,
        "expiresAt": access.expires_at.isoformat() if access.expires_at else None,
    }


# ----------------------------
# Admin API
# ----------------------------
@app.post("/api/admin/orders/{order_id}/confirm-payment")
async def admin_confirm_payment(
    order_id: str,
    payload: Optional[dict] = None,
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    admin: str = Depends(require_admin),
):
    payload = payload or {}
    reference = payload.get("transactionReference") or None
    notes = payload.get("notes") or None

    order = await load_order(db, order_id=order_id)
    if order is None:
        raise HTTPException(404, detail="Orden no encontrada")
    if order.payment_status != PaymentStatus.PENDING:
        raise HTTPException(
            400,
            detail=f"La orden no está pendiente (estado actual: "
                   f"{order.payment_status})",
        )

    previous = order.payment_status
    order.payment_status = PaymentStatus.COMPLETED.value
    order.meta = {
        **(order.meta or {}),
        "manuallyConfirmedAt": utcnow().isoformat(),
        "manuallyConfirmedBy": admin,
        "transactionReference": reference,
        "confirmationNotes": notes,
    }
    db.add(AuditLog(
        actor=admin,
        entity_type="order",
        entity_id=order.id,
        action="MANUAL_PAYMENT_CONFIRMATION",
        before={"paymentStatus": previous},
        after={"paymentStatus": PaymentStatus.COMPLETED.value},
        reason=notes or "Pago confirmado manualmente",
        meta={"transactionReference": reference},
    ))
    await db.commit()
    logger.info("Order %s confirmed manually by %s", order.order_number, admin)

    async with timeit("fulfillment.manual"):
        result = await process_approved_payment(
            db, order, mailer=mailer, transaction_id=reference
        )
    if not result.success:
        return ORJSONResponse(result.as_dict(), status_code=500)
    return result.as_dict()


@app.post("/api/admin/orders/{order_id}/resend-confirmation")
async def admin_resend_confirmation(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    admin: str = Depends(require_admin),
):
    order = await load_order(db, order_id=order_id)
    if order is None:
        raise HTTPException(404, detail="Orden no encontrada")
    if order.payment_status != PaymentStatus.COMPLETED:
        raise HTTPException(
            400,
            detail="Solo se puede reenviar confirmación de pagos completados",
        )

    delivery = await send_confirmation_email(
        db, order, order.user_id, mailer,
        transaction_id=(order.meta or {}).get("transactionReference"),
    )
    if delivery.status == SKIPPED:
        raise HTTPException(400, detail="No hay email de destinatario")
    if delivery.status == FAILED:
        return ORJSONResponse(
            {"error": "Error al enviar email", "details": delivery.error},
            status_code=500,
        )
    return {"success": True, "orderNumber": order.order_number}


@app.get("/api/admin/orders")
async def api_admin_orders(
    limit: int = 200,
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
):
    limit = max(1, min(limit, 500))
    async with gated():
        result = await db.execute(
            select(Order).order_by(Order.created_at.desc()).limit(limit)
        )
    items = [order_summary(o) for o in result.scalars().all()]
    return {"items": items, "limit": limit}


@app.get("/api/admin/timings")
async def api_admin_timings(admin: str = Depends(require_admin)):
    return {"items": timings.summary()}


# ----------------------------
# Admin session
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/admin/orders"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return RedirectResponse(
            url=(next or "/api/admin/orders"),
            status_code=HTTP_303_SEE_OTHER
        )
    logger.warning("Failed admin login for %r", username)
    return ORJSONResponse({"error": "Invalid credentials."}, status_code=401)


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)
