import logging
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import is_valid_email, utcnow
from ..model.db import User, VerificationToken

logger = logging.getLogger(__name__)

SET_PASSWORD_TOKEN_TTL = timedelta(days=7)


class InvalidGuestEmail(ValueError):
    pass


async def find_or_create_user_for_guest(
    db: AsyncSession, email: str, name: Optional[str] = None
) -> str:
    """Map a guest checkout email to a user id.

    Reuses the account registered under the (lower-cased) email, otherwise
    creates a passwordless user plus a token for setting the password later.
    Flushes but does not commit. Raises ``InvalidGuestEmail`` for an address
    that could never receive the confirmation.
    """
    if not is_valid_email(email):
        raise InvalidGuestEmail(f"Email de invitado inválido: {email!r}")
    email = email.strip().lower()

    existing = (await db.execute(
        select(User).where(User.email == email)
    )).scalars().first()
    if existing is not None:
        return existing.id

    user = User(email=email, name=name or None, password=None,
                email_verified=None)
    db.add(user)
    db.add(VerificationToken(
        identifier=email,
        token=secrets.token_hex(32),
        expires=utcnow() + SET_PASSWORD_TOKEN_TTL,
    ))
    await db.flush()

    logger.info("Created user %s for guest checkout (%s)", user.id, email)
    return user.id
