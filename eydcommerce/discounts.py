import logging

from sqlalchemy.ext.asyncio import AsyncSession

from .model.db import DiscountUsage

logger = logging.getLogger(__name__)


async def record_discount_usage(
    db: AsyncSession,
    *,
    discount_code_id: str,
    discount_code: str,
    user_id: str,
    order_id: str,
    discount_amount: int,
    currency: str,
) -> DiscountUsage:
    # errors propagate: the caller's transaction decides
    usage = DiscountUsage(
        discount_code_id=discount_code_id,
        discount_code=discount_code.upper(),
        user_id=user_id,
        order_id=order_id,
        discount_amount=int(discount_amount),
        currency=currency,
    )
    db.add(usage)
    await db.flush()
    logger.info("Discount %s recorded for order %s",
                usage.discount_code, order_id)
    return usage
