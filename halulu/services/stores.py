"""Database access used by the webhook processor.

Each store wraps a request-scoped SQLAlchemy session and commits its own
writes, so a failure after one store call leaves earlier writes in place.
"""

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from halulu.database.models import Profile, SearchUsage, WebhookEvent

logger = logging.getLogger(__name__)


class DuplicateEventError(Exception):
    """Raised when another delivery recorded the same event id first."""
    pass


class ProfileStore:
    """Identity/profile lookups and subscription field updates."""

    def __init__(self, db: Session):
        self.db = db

    def find_profile_by_email(self, email: str) -> Profile | None:
        # Exact, case-sensitive match on the stored address
        return self.db.execute(
            select(Profile).where(Profile.email == email)
        ).scalars().first()

    def update_subscription_fields(self, user_id: str, fields: dict) -> int:
        """Apply absolute field values to one profile. Returns rows matched."""
        result = self.db.execute(
            update(Profile).where(Profile.id == user_id).values(**fields)
        )
        self.db.commit()
        return result.rowcount


class WebhookEventStore:
    """Append-only log of webhook deliveries, keyed by idempotency id."""

    def __init__(self, db: Session):
        self.db = db

    def find_event_by_id(self, event_id: str) -> WebhookEvent | None:
        return self.db.execute(
            select(WebhookEvent).where(WebhookEvent.event_id == event_id)
        ).scalars().first()

    def insert_event(self, event_id: str, event_name: str, payload: dict) -> None:
        self.db.add(WebhookEvent(
            event_id=event_id,
            event_name=event_name,
            payload=payload,
            processed=False,
        ))
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateEventError(event_id) from exc

    def update_event_processed(self, event_id: str, processed: bool = True) -> None:
        self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(processed=processed)
        )
        self.db.commit()

    def find_unprocessed(self, limit: int = 100) -> list[WebhookEvent]:
        """Events recorded but never marked processed, oldest first."""
        return list(self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.processed.is_(False))
            .order_by(WebhookEvent.created_at)
            .limit(limit)
        ).scalars())


class SearchUsageStore:
    """Monthly search counters."""

    def __init__(self, db: Session):
        self.db = db

    def reset_monthly_count(self, user_id: str, now: datetime) -> None:
        """Zero the user's counter for the month containing ``now``."""
        month_year = now.strftime("%Y-%m")
        usage = self.db.execute(
            select(SearchUsage).where(
                SearchUsage.user_id == user_id,
                SearchUsage.month_year == month_year,
            )
        ).scalars().first()

        if usage:
            usage.search_count = 0
            usage.last_search_at = now
        else:
            self.db.add(SearchUsage(
                user_id=user_id,
                month_year=month_year,
                search_count=0,
                last_search_at=now,
            ))
        self.db.commit()
        logger.info("Search count reset for user %s (%s)", user_id, month_year)
