import enum
from typing import Optional

from sqlalchemy.orm import declarative_base, relationship, selectinload
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    UniqueConstraint,
    Index,
    select,
)
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_ts


Base = declarative_base()


# ----------------------------
# Tags
# ----------------------------
class OrderType(str, enum.Enum):
    PRODUCT = "PRODUCT"
    SESSION = "SESSION"
    EVENT = "EVENT"
    MEMBERSHIP = "MEMBERSHIP"
    PREMIUM_CONTENT = "PREMIUM_CONTENT"
    COURSE = "COURSE"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class BillingInterval(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class EntitlementType(str, enum.Enum):
    MEMBERSHIP = "MEMBERSHIP"
    EVENT = "EVENT"
    COURSE = "COURSE"
    PREMIUM_CONTENT = "PREMIUM_CONTENT"


class BookingType(str, enum.Enum):
    SESSION_1_ON_1 = "SESSION_1_ON_1"
    EVENT = "EVENT"


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False, unique=True)  # always lower-case
    name = Column(String, nullable=True)
    # NULL for accounts created from a guest checkout
    password = Column(String, nullable=True)
    email_verified = Column(DateTime, nullable=True)
    role = Column(String, nullable=False, default="USER")  # USER | ADMIN
    created_at = Column(Float, nullable=False, default=now_ts)


class VerificationToken(Base):
    __tablename__ = "verification_tokens"
    token = Column(String, primary_key=True)
    identifier = Column(String, nullable=False, index=True)
    expires = Column(DateTime, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True, default=new_id)
    order_number = Column(String, nullable=False, unique=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    guest_email = Column(String, nullable=True)
    guest_name = Column(String, nullable=True)

    # PRODUCT | SESSION | EVENT | MEMBERSHIP | PREMIUM_CONTENT | COURSE
    order_type = Column(String, nullable=False)
    item_id = Column(String, nullable=False)
    item_name = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="COP")
    # WOMPI_CARD | WOMPI_NEQUI | EPAYCO_CARD | EPAYCO_PAYPAL | BREB | ...
    payment_method = Column(String, nullable=True)

    # PENDING | PROCESSING | COMPLETED | FAILED | REFUNDED | CANCELLED
    payment_status = Column(String, nullable=False, default="PENDING")
    meta = Column("metadata", JSON, nullable=True)

    discount_code_id = Column(String, nullable=True)
    discount_code = Column(String, nullable=True)
    discount_amount = Column(Integer, nullable=True)  # cents

    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=True, onupdate=now_ts)

    user = relationship("User")


class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    membership_tier_id = Column(String, nullable=False)
    membership_tier_name = Column(String, nullable=False)

    # ACTIVE | CANCELLED | PAST_DUE | EXPIRED
    status = Column(String, nullable=False, default="ACTIVE")
    billing_interval = Column(String, nullable=False)  # MONTHLY | YEARLY
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False)
    payment_provider = Column(String, nullable=False, default="unknown")

    start_date = Column(DateTime, nullable=False)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)

    __table_args__ = (
        Index("ix_subscriptions_user_tier", "user_id", "membership_tier_id"),
    )


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    booking_type = Column(String, nullable=False)  # SESSION_1_ON_1 | EVENT
    resource_id = Column(String, nullable=False)
    resource_name = Column(String, nullable=False)

    # CONFIRMED | PENDING_PAYMENT | CANCELLED | COMPLETED | NO_SHOW
    status = Column(String, nullable=False, default="PENDING_PAYMENT")
    payment_status = Column(String, nullable=False, default="PENDING")
    payment_method = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False)

    sessions_total = Column(Integer, nullable=True)
    sessions_remaining = Column(Integer, nullable=True)
    # required for single sessions; packs are scheduled later
    scheduled_at = Column(DateTime, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)

    __table_args__ = (
        Index("ix_bookings_user_resource", "user_id", "resource_id"),
    )


class Entitlement(Base):
    __tablename__ = "entitlements"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    type = Column(String, nullable=False)  # MEMBERSHIP | EVENT | COURSE | ...
    resource_id = Column(String, nullable=False)
    resource_name = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=True)  # NULL = perpetual
    subscription_id = Column(
        String, ForeignKey("subscriptions.id"), nullable=True
    )
    order_id = Column(String, ForeignKey("orders.id"), nullable=True)
    revoked = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False, default=now_ts)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "type", "resource_id", "order_id",
            name="uq_entitlement_user_type_resource_order",
        ),
    )


class CourseProgress(Base):
    __tablename__ = "course_progress"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    course_id = Column(String, nullable=False)
    completion_percentage = Column(Integer, nullable=False, default=0)
    started_at = Column(Float, nullable=False, default=now_ts)
    last_accessed_at = Column(Float, nullable=False, default=now_ts)
    completed_at = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "course_id",
                         name="uq_course_progress_user_course"),
    )


class DiscountUsage(Base):
    __tablename__ = "discount_usages"
    id = Column(String, primary_key=True, default=new_id)
    discount_code_id = Column(String, nullable=False, index=True)
    discount_code = Column(String, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    discount_amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    id = Column(String, primary_key=True, default=new_id)
    provider = Column(String, nullable=False)
    event_id = Column(String, nullable=False, unique=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(Float, nullable=True)
    failed = Column(Boolean, nullable=False, default=False)
    error_message = Column(String, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False, default=now_ts)


class FulfillmentKey(Base):
    __tablename__ = "fulfillment_keys"
    key = Column(String, primary_key=True)  # sha256(order_id:kind)
    order_id = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(String, primary_key=True, default=new_id)
    actor = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    action = Column(String, nullable=False)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    reason = Column(String, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


async def load_order(
    db: AsyncSession,
    order_id: Optional[str] = None,
    order_number: Optional[str] = None,
) -> Optional[Order]:
    """Fetch an order together with its linked user."""
    stmt = (
        select(Order)
        .options(selectinload(Order.user))
        .execution_options(populate_existing=True)
    )
    if order_id is not None:
        stmt = stmt.where(Order.id == order_id)
    elif order_number is not None:
        stmt = stmt.where(Order.order_number == order_number)
    else:
        raise ValueError("load_order needs order_id or order_number")
    result = await db.execute(stmt)
    return result.scalars().first()
