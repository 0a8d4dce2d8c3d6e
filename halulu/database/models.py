from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime, JSON, UniqueConstraint, ForeignKey
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Profile(Base):
    """User profile; carries the subscription flags driven by billing webhooks."""
    __tablename__ = "profiles"

    # Same id as the auth user that owns the profile
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(100))

    # Subscription
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False)
    subscription_status: Mapped[str] = mapped_column(String(20), default="none")
    subscription_id: Mapped[str | None] = mapped_column(String(255))
    subscription_variant: Mapped[str | None] = mapped_column(String(50))  # monthly, yearly
    subscription_ends_at: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class SearchUsage(Base):
    """Monthly search counter per user."""
    __tablename__ = "search_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("profiles.id"), index=True, nullable=False)
    month_year: Mapped[str] = mapped_column(String(7), nullable=False)  # e.g. "2026-02"
    search_count: Mapped[int] = mapped_column(Integer, default=0)
    last_search_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "month_year", name="uq_search_usage_user_month"),
    )


class WebhookEvent(Base):
    """Tracks Lemon Squeezy webhook deliveries to prevent duplicate processing."""
    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    event_name: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
