# backend/photo_analysis/credits.py
"""
Photo quota bookkeeping. Every change is a locked read-modify-write on the
user row (SELECT ... FOR UPDATE) so two concurrent uploads cannot spend the
same unit. SQLite ignores FOR UPDATE; it serializes writers on its own.
"""
import logging

from sqlmodel import Session, select

from .errors import QuotaExhaustedError, QueueError, UserNotFoundError
from .models import User

logger = logging.getLogger(__name__)

UNLIMITED_ROLES = ("admin", "dev")


def _locked_user(session: Session, user_id: str) -> User:
    user = session.exec(select(User).where(User.id == user_id).with_for_update()).first()
    if user is None:
        raise UserNotFoundError()
    return user


def consume_photo_credit(session: Session, user_id: str) -> int:
    """Spend one photo from the user's quota and return what is left."""
    try:
        user = _locked_user(session, user_id)
        if user.role in UNLIMITED_ROLES:
            quota = user.photo_quota
            session.rollback()
            return quota
        if user.photo_quota <= 0:
            raise QuotaExhaustedError()
        user.photo_quota -= 1
        session.add(user)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return user.photo_quota


def add_photo_credits(session: Session, user_id: str, amount: int) -> int:
    if amount <= 0:
        raise QueueError("Amount must be positive")
    try:
        user = _locked_user(session, user_id)
        user.photo_quota += amount
        session.add(user)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info("added %d photo credits to user %s", amount, user_id)
    return user.photo_quota
