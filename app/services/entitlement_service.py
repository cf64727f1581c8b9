"""
Entitlement Service

Live premium checks. Nothing here is cached: sharing endpoints call it on every
request so a lapsed subscription loses access immediately.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.orm import Session
import logging
import uuid

from ..config import PREMIUM_GRACE_PERIOD_DAYS
from ..models.models import Subscription

logger = logging.getLogger(__name__)


class EntitlementService:
    """Premium entitlement lookups"""

    @staticmethod
    def latest_subscription(db: Session, user_id: uuid.UUID) -> Optional[Subscription]:
        return db.query(Subscription).filter(
            Subscription.user_id == user_id
        ).order_by(Subscription.started_at.desc()).first()

    @staticmethod
    def has_premium(
        db: Session,
        user_id: uuid.UUID,
        allow_grace: bool = True,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Check whether the user currently holds a premium entitlement.

        Only the most recent subscription counts. An active premium plan always
        qualifies. A cancelled or expired one keeps access until
        `expires_at + PREMIUM_GRACE_PERIOD_DAYS`, unless `allow_grace` is False.

        Args:
            db: Database session
            user_id: User UUID
            allow_grace: Whether the post-expiry grace period counts
            now: Reference time (defaults to utcnow)

        Returns:
            True if the user may use premium features right now
        """
        now = now or datetime.utcnow()
        sub = EntitlementService.latest_subscription(db, user_id)
        if sub is None or sub.plan != 'premium':
            return False

        if sub.status == 'active':
            if allow_grace or sub.expires_at is None:
                return True
            return sub.expires_at > now

        if not allow_grace or sub.expires_at is None:
            return False

        grace_end = sub.expires_at + timedelta(days=PREMIUM_GRACE_PERIOD_DAYS)
        if now > grace_end:
            logger.info("Premium grace period over for user %s (ended %s)", user_id, grace_end)
            return False
        return True
