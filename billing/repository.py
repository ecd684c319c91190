from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Optional
from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from extensions import db
from billing.models import UserSubscription, ProcessedStripeEvent


class SubscriptionRepo:
    """Upsert-by-identity access to UserSubscription. Last writer wins; no locks."""

    def __init__(self, session=None):
        self.session = session or db.session

    def get(self, user_id: str) -> Optional[UserSubscription]:
        stmt = select(UserSubscription).where(UserSubscription.user_id == user_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def get_by_customer(self, customer_id: str) -> Optional[UserSubscription]:
        stmt = select(UserSubscription).where(UserSubscription.stripe_customer_id == customer_id)
        return self.session.execute(stmt).scalars().first()

    def _apply(self, user_id: str, fields: dict[str, Any]) -> UserSubscription:
        with self.session.begin_nested():
            row = self.get(user_id)
            if row is None:
                row = UserSubscription(user_id=user_id, price_ids=[])
                self.session.add(row)
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = datetime.now(timezone.utc)
            self.session.flush()
        return row

    def upsert(self, user_id: str, **fields: Any) -> Optional[UserSubscription]:
        """
        Write a snapshot for user_id and commit. Failures are logged and
        swallowed (returns None) so a write hiccup never breaks the caller.
        """
        try:
            try:
                row = self._apply(user_id, fields)
            except IntegrityError:
                # a concurrent writer created the row first; update theirs
                row = self._apply(user_id, fields)
            self.session.commit()
            return row
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.exception("[billing.repo] upsert failed for user=%s", user_id)
            return None


class EventLedger:
    """Remembers provider event ids whose notification already went out."""

    def __init__(self, session=None):
        self.session = session or db.session

    def seen(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        stmt = select(ProcessedStripeEvent.id).where(ProcessedStripeEvent.event_id == event_id)
        return self.session.execute(stmt).first() is not None

    def mark(self, event_id: Optional[str]) -> bool:
        """Returns False if the id was already recorded (or could not be)."""
        if not event_id:
            return True
        if self.seen(event_id):
            return False
        try:
            with self.session.begin_nested():
                self.session.add(ProcessedStripeEvent(event_id=event_id))
                self.session.flush()
            self.session.commit()
            return True
        except IntegrityError:
            return False
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.exception("[billing.repo] could not record event %s", event_id)
            return False
