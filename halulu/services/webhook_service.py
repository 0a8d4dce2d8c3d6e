"""Lemon Squeezy subscription webhook processing."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from halulu.services.signature import verify_signature
from halulu.services.stores import (
    DuplicateEventError,
    ProfileStore,
    SearchUsageStore,
    WebhookEventStore,
)

logger = logging.getLogger(__name__)

# Provider statuses that still grant premium access on subscription_updated
_PREMIUM_STATUSES = frozenset({"active", "on_trial", "past_due"})


class WebhookConfigurationError(Exception):
    """Raised when the processor is missing its signing secret."""
    pass


class MalformedPayloadError(Exception):
    """Raised when a verified payload cannot be interpreted."""
    pass


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_PAYMENT_SUCCESS = "subscription_payment_success"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_name(cls, name: str) -> "EventKind":
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a provider ISO 8601 timestamp into naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError) as exc:
        raise MalformedPayloadError(f"Invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass
class SubscriptionAttributes:
    status: str | None = None
    cancelled: bool = False
    variant_name: str | None = None
    user_email: str | None = None
    renews_at: datetime | None = None
    ends_at: datetime | None = None
    updated_at: str | None = None
    test_mode: bool = False

    @property
    def variant(self) -> str | None:
        return self.variant_name.lower() if self.variant_name else None


@dataclass
class SubscriptionEvent:
    """A verified webhook delivery, normalized for dispatch."""
    event_name: str
    kind: EventKind
    subscription_id: str
    user_id: str | None
    attributes: SubscriptionAttributes
    payload: dict = field(repr=False, default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        # A later update to the same subscription carries a new updated_at
        return f"{self.event_name}-{self.subscription_id}-{self.attributes.updated_at}"

    @classmethod
    def from_payload(cls, payload: dict) -> "SubscriptionEvent":
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Payload must be a JSON object")

        meta = payload.get("meta") or {}
        data = payload.get("data") or {}
        event_name = meta.get("event_name")
        subscription_id = data.get("id")
        attrs = data.get("attributes")

        if not event_name or subscription_id is None or not isinstance(attrs, dict):
            raise MalformedPayloadError("Missing meta.event_name, data.id or data.attributes")

        custom_data = meta.get("custom_data") or {}
        user_id = custom_data.get("user_id")

        return cls(
            event_name=event_name,
            kind=EventKind.from_name(event_name),
            subscription_id=str(subscription_id),
            user_id=str(user_id) if user_id else None,
            attributes=SubscriptionAttributes(
                status=attrs.get("status"),
                cancelled=bool(attrs.get("cancelled")),
                variant_name=attrs.get("variant_name"),
                user_email=attrs.get("user_email"),
                renews_at=parse_timestamp(attrs.get("renews_at")),
                ends_at=parse_timestamp(attrs.get("ends_at")),
                updated_at=attrs.get("updated_at"),
                test_mode=bool(attrs.get("test_mode")),
            ),
            payload=payload,
        )


class IdempotencyGate:
    """Best-effort duplicate filter over the webhook event log.

    Two near-simultaneous deliveries can both pass ``should_process``; the
    unique constraint on event_id makes the slower ``record_seen`` fail, and
    every transition is an absolute update, so a double apply is harmless.
    """

    def __init__(self, events: WebhookEventStore):
        self.events = events

    def should_process(self, event_id: str) -> bool:
        return self.events.find_event_by_id(event_id) is None

    def record_seen(self, event_id: str, event_name: str, payload: dict) -> None:
        self.events.insert_event(event_id, event_name, payload)

    def mark_processed(self, event_id: str) -> None:
        self.events.update_event_processed(event_id, True)


def resolve_user(profiles: ProfileStore, explicit_user_id: str | None, fallback_email: str | None) -> str | None:
    """Pick the profile a subscription event belongs to.

    The checkout custom data user_id is set by our own checkout link and is
    trusted as-is; otherwise fall back to an exact email match.
    """
    if explicit_user_id:
        return explicit_user_id
    if not fallback_email:
        return None
    profile = profiles.find_profile_by_email(fallback_email)
    return profile.id if profile else None


# -- transitions --------------------------------------------------------------
# Each returns the absolute profile fields to write, or None for no mutation.

def _on_created(event: SubscriptionEvent, now: datetime) -> dict:
    return {
        "is_premium": True,
        "subscription_status": "active",
        "subscription_id": event.subscription_id,
        "subscription_variant": event.attributes.variant,
        "subscription_ends_at": None,
        "updated_at": now,
    }


def _on_updated(event: SubscriptionEvent, now: datetime) -> dict:
    attrs = event.attributes
    if not attrs.status:
        raise MalformedPayloadError("subscription_updated without attributes.status")
    fields = {
        "is_premium": attrs.status in _PREMIUM_STATUSES,
        "subscription_status": "cancelled" if attrs.cancelled else attrs.status,
        "subscription_ends_at": attrs.ends_at,
        "updated_at": now,
    }
    # Keep the stored variant when the update omits it
    if attrs.variant:
        fields["subscription_variant"] = attrs.variant
    return fields


def _on_cancelled(event: SubscriptionEvent, now: datetime) -> dict:
    # is_premium stays as-is: access runs until ends_at
    return {
        "subscription_status": "cancelled",
        "subscription_ends_at": event.attributes.ends_at,
        "updated_at": now,
    }


def _on_resumed(event: SubscriptionEvent, now: datetime) -> dict:
    return {
        "is_premium": True,
        "subscription_status": "active",
        "subscription_ends_at": None,
        "updated_at": now,
    }


def _on_expired(event: SubscriptionEvent, now: datetime) -> dict:
    return {
        "is_premium": False,
        "subscription_status": "expired",
        "subscription_id": None,
        "subscription_variant": None,
        "subscription_ends_at": None,
        "updated_at": now,
    }


def _on_payment_success(event: SubscriptionEvent, now: datetime) -> None:
    logger.info("Payment success for subscription %s", event.subscription_id)
    return None


def _on_payment_failed(event: SubscriptionEvent, now: datetime) -> dict:
    return {
        "subscription_status": "past_due",
        "updated_at": now,
    }


def _on_unknown(event: SubscriptionEvent, now: datetime) -> None:
    logger.info("Unhandled webhook event: %s", event.event_name)
    return None


TRANSITIONS: dict[EventKind, Callable[[SubscriptionEvent, datetime], dict | None]] = {
    EventKind.SUBSCRIPTION_CREATED: _on_created,
    EventKind.SUBSCRIPTION_UPDATED: _on_updated,
    EventKind.SUBSCRIPTION_CANCELLED: _on_cancelled,
    EventKind.SUBSCRIPTION_RESUMED: _on_resumed,
    EventKind.SUBSCRIPTION_EXPIRED: _on_expired,
    EventKind.SUBSCRIPTION_PAYMENT_SUCCESS: _on_payment_success,
    EventKind.SUBSCRIPTION_PAYMENT_FAILED: _on_payment_failed,
    EventKind.UNKNOWN: _on_unknown,
}

_missing = set(EventKind) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"No transition registered for: {sorted(k.value for k in _missing)}")

# New subscribers start the month with a clean search allowance
_RESETS_SEARCH_USAGE = frozenset({EventKind.SUBSCRIPTION_CREATED})


def apply_transition(
    profiles: ProfileStore,
    usage: SearchUsageStore,
    user_id: str,
    event: SubscriptionEvent,
    now: datetime,
) -> dict | None:
    """Write the state change for ``event`` to the user's profile."""
    fields = TRANSITIONS[event.kind](event, now)
    if fields is None:
        return None

    matched = profiles.update_subscription_fields(user_id, fields)
    if matched == 0:
        logger.warning("No profile %s for %s; nothing updated", user_id, event.event_name)
        return fields

    if event.kind in _RESETS_SEARCH_USAGE:
        usage.reset_monthly_count(user_id, now)

    logger.info("User %s subscription -> %s (%s)", user_id, fields.get("subscription_status"), event.event_name)
    return fields


# -- processor ----------------------------------------------------------------

@dataclass
class WebhookConfig:
    """Everything the processor needs, injected by the caller."""
    signing_secret: str
    profiles: ProfileStore
    events: WebhookEventStore
    usage: SearchUsageStore


@dataclass
class WebhookResult:
    status_code: int
    body: dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WebhookProcessor:
    """Verify, deduplicate and apply one Lemon Squeezy webhook delivery."""

    def __init__(self, config: WebhookConfig, clock: Callable[[], datetime] = _utcnow):
        self.config = config
        self.gate = IdempotencyGate(config.events)
        self.clock = clock

    def process(self, raw_body: bytes, signature: str | None) -> WebhookResult:
        """Handle one delivery.

        Raises WebhookConfigurationError when no signing secret is set and
        MalformedPayloadError when a correctly signed body is unusable. Store
        failures propagate so the provider retries the delivery.
        """
        if not self.config.signing_secret:
            raise WebhookConfigurationError("Webhook signing secret not configured")

        if not verify_signature(raw_body, signature, self.config.signing_secret):
            logger.warning("Invalid webhook signature (present: %s, body: %d bytes)", bool(signature), len(raw_body))
            return WebhookResult(401, {"error": "Invalid signature"})

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedPayloadError("Body is not valid JSON") from exc

        event = SubscriptionEvent.from_payload(payload)
        event_id = event.idempotency_key
        logger.info(
            "Processing %s (subscription: %s, user: %s, test_mode: %s)",
            event.event_name, event.subscription_id, event.user_id, event.attributes.test_mode,
        )

        if not self.gate.should_process(event_id):
            logger.info("Skipping duplicate webhook event: %s", event_id)
            return WebhookResult(200, {"received": True, "message": "Already processed"})

        try:
            self.gate.record_seen(event_id, event.event_name, payload)
        except DuplicateEventError:
            logger.info("Concurrent delivery already recorded %s", event_id)
            return WebhookResult(200, {"received": True, "message": "Already processed"})

        user_id = resolve_user(self.config.profiles, event.user_id, event.attributes.user_email)
        if not user_id:
            # Acknowledge: redelivery cannot make an unknown user resolvable
            logger.warning("User not found for %s (email: %s)", event_id, event.attributes.user_email)
            self.gate.mark_processed(event_id)
            return WebhookResult(200, {"received": True, "warning": "User not found"})

        apply_transition(self.config.profiles, self.config.usage, user_id, event, self.clock())

        self.gate.mark_processed(event_id)
        logger.info("Processed webhook event %s", event_id)
        return WebhookResult(200, {"received": True})
