"""Tests for the webhook processor against store doubles."""

import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from halulu.services.signature import compute_signature
from halulu.services.stores import DuplicateEventError
from halulu.services.webhook_service import (
    TRANSITIONS,
    EventKind,
    MalformedPayloadError,
    SubscriptionEvent,
    WebhookConfig,
    WebhookConfigurationError,
    WebhookProcessor,
    parse_timestamp,
    resolve_user,
)

SECRET = "ls_whsec_test"
NOW = datetime(2026, 3, 15, 12, 0, 0)


def _payload(event_name="subscription_created", user_id="U1", **attributes):
    attrs = {
        "status": "active",
        "cancelled": False,
        "variant_name": "Monthly",
        "user_email": "diner@example.com",
        "renews_at": "2026-04-15T12:00:00.000000Z",
        "ends_at": None,
        "updated_at": "2026-03-15T12:00:00.000000Z",
        "test_mode": True,
    }
    attrs.update(attributes)
    meta = {"event_name": event_name}
    if user_id:
        meta["custom_data"] = {"user_id": user_id}
    return {
        "meta": meta,
        "data": {"id": "sub_123", "type": "subscriptions", "attributes": attrs},
    }


def _body(payload) -> bytes:
    return json.dumps(payload).encode()


def _stores():
    profiles = MagicMock()
    profiles.update_subscription_fields.return_value = 1
    events = MagicMock()
    events.find_event_by_id.return_value = None
    usage = MagicMock()
    return profiles, events, usage


def _processor(profiles, events, usage, secret=SECRET):
    config = WebhookConfig(signing_secret=secret, profiles=profiles, events=events, usage=usage)
    return WebhookProcessor(config, clock=lambda: NOW)


def _deliver(processor, payload):
    body = _body(payload)
    return processor.process(body, compute_signature(body, SECRET))


def _written_fields(profiles):
    args, _ = profiles.update_subscription_fields.call_args
    return args[0], args[1]


class TestSignatureGate:
    def test_missing_signature_touches_no_store(self):
        profiles, events, usage = _stores()
        result = _processor(profiles, events, usage).process(_body(_payload()), None)

        assert result.status_code == 401
        assert result.body == {"error": "Invalid signature"}
        assert profiles.method_calls == []
        assert events.method_calls == []
        assert usage.method_calls == []

    def test_bad_signature_rejected(self):
        profiles, events, usage = _stores()
        result = _processor(profiles, events, usage).process(_body(_payload()), "0" * 64)
        assert result.status_code == 401
        assert events.method_calls == []

    def test_missing_secret_raises_configuration_error(self):
        profiles, events, usage = _stores()
        with pytest.raises(WebhookConfigurationError):
            _processor(profiles, events, usage, secret="").process(b"{}", "abc")
        assert events.method_calls == []


class TestMalformedPayload:
    def test_invalid_json(self):
        profiles, events, usage = _stores()
        body = b"not json"
        with pytest.raises(MalformedPayloadError):
            _processor(profiles, events, usage).process(body, compute_signature(body, SECRET))

    def test_missing_event_name(self):
        payload = _payload()
        del payload["meta"]["event_name"]
        profiles, events, usage = _stores()
        with pytest.raises(MalformedPayloadError):
            _deliver(_processor(profiles, events, usage), payload)
        assert events.method_calls == []

    def test_bad_timestamp(self):
        profiles, events, usage = _stores()
        with pytest.raises(MalformedPayloadError):
            _deliver(_processor(profiles, events, usage), _payload(ends_at="next tuesday"))


class TestIdempotency:
    def test_event_key_uses_name_subscription_and_updated_at(self):
        event = SubscriptionEvent.from_payload(_payload())
        assert event.idempotency_key == "subscription_created-sub_123-2026-03-15T12:00:00.000000Z"

    def test_record_written_before_mutation(self):
        profiles, events, usage = _stores()
        manager = MagicMock()
        manager.attach_mock(events, "events")
        manager.attach_mock(profiles, "profiles")

        _deliver(_processor(profiles, events, usage), _payload())

        names = [c[0] for c in manager.mock_calls]
        assert names.index("events.insert_event") < names.index("profiles.update_subscription_fields")
        assert names.index("profiles.update_subscription_fields") < names.index("events.update_event_processed")

    def test_insert_records_unprocessed_payload(self):
        profiles, events, usage = _stores()
        payload = _payload()
        _deliver(_processor(profiles, events, usage), payload)

        events.insert_event.assert_called_once_with(
            "subscription_created-sub_123-2026-03-15T12:00:00.000000Z",
            "subscription_created",
            payload,
        )
        events.update_event_processed.assert_called_once_with(
            "subscription_created-sub_123-2026-03-15T12:00:00.000000Z", True
        )

    def test_replay_mutates_once(self):
        profiles, events, usage = _stores()
        events.find_event_by_id.side_effect = [None, MagicMock(processed=True)]
        processor = _processor(profiles, events, usage)

        first = _deliver(processor, _payload())
        assert first.body == {"received": True}
        assert profiles.update_subscription_fields.call_count == 1

        profiles.reset_mock()
        second = _deliver(processor, _payload())
        assert second.status_code == 200
        assert second.body == {"received": True, "message": "Already processed"}
        assert profiles.method_calls == []
        assert events.insert_event.call_count == 1

    def test_later_update_is_a_new_event(self):
        profiles, events, usage = _stores()
        processor = _processor(profiles, events, usage)

        _deliver(processor, _payload("subscription_updated"))
        _deliver(processor, _payload("subscription_updated", updated_at="2026-03-16T08:00:00.000000Z"))

        keys = [c.args[0] for c in events.insert_event.call_args_list]
        assert len(set(keys)) == 2
        assert profiles.update_subscription_fields.call_count == 2

    def test_concurrent_insert_treated_as_duplicate(self):
        profiles, events, usage = _stores()
        events.insert_event.side_effect = DuplicateEventError("key")

        result = _deliver(_processor(profiles, events, usage), _payload())

        assert result.body == {"received": True, "message": "Already processed"}
        profiles.update_subscription_fields.assert_not_called()


class TestUserResolution:
    def test_explicit_user_id_trusted(self):
        profiles = MagicMock()
        assert resolve_user(profiles, "U1", "diner@example.com") == "U1"
        profiles.find_profile_by_email.assert_not_called()

    def test_email_fallback(self):
        profiles = MagicMock()
        profiles.find_profile_by_email.return_value = MagicMock(id="U2")
        assert resolve_user(profiles, None, "diner@example.com") == "U2"
        profiles.find_profile_by_email.assert_called_once_with("diner@example.com")

    def test_unresolvable(self):
        profiles = MagicMock()
        profiles.find_profile_by_email.return_value = None
        assert resolve_user(profiles, None, "ghost@example.com") is None
        assert resolve_user(profiles, None, None) is None

    def test_user_not_found_acknowledged(self):
        profiles, events, usage = _stores()
        profiles.find_profile_by_email.return_value = None

        result = _deliver(_processor(profiles, events, usage), _payload(user_id=None))

        assert result.status_code == 200
        assert result.body == {"received": True, "warning": "User not found"}
        profiles.update_subscription_fields.assert_not_called()
        events.update_event_processed.assert_called_once()


class TestDispatch:
    def test_every_event_kind_has_a_transition(self):
        assert set(TRANSITIONS) == set(EventKind)

    def test_unknown_names_map_to_unknown(self):
        assert EventKind.from_name("order_created") is EventKind.UNKNOWN
        assert EventKind.from_name("subscription_paused") is EventKind.UNKNOWN
        assert EventKind.from_name("subscription_expired") is EventKind.SUBSCRIPTION_EXPIRED

    def test_created(self):
        profiles, events, usage = _stores()
        _deliver(_processor(profiles, events, usage), _payload("subscription_created"))

        user_id, fields = _written_fields(profiles)
        assert user_id == "U1"
        assert fields == {
            "is_premium": True,
            "subscription_status": "active",
            "subscription_id": "sub_123",
            "subscription_variant": "monthly",
            "subscription_ends_at": None,
            "updated_at": NOW,
        }
        usage.reset_monthly_count.assert_called_once_with("U1", NOW)

    @pytest.mark.parametrize("status,premium", [
        ("active", True),
        ("on_trial", True),
        ("past_due", True),
        ("unpaid", False),
        ("paused", False),
        ("expired", False),
    ])
    def test_updated_premium_follows_status(self, status, premium):
        profiles, events, usage = _stores()
        _deliver(_processor(profiles, events, usage), _payload("subscription_updated", status=status))

        _, fields = _written_fields(profiles)
        assert fields["is_premium"] is premium
        assert fields["subscription_status"] == status
        usage.reset_monthly_count.assert_not_called()

    def test_updated_cancelled_flag_wins(self):
        profiles, events, usage = _stores()
        _deliver(_processor(profiles, events, usage), _payload(
            "subscription_updated", status="active", cancelled=True,
            ends_at="2026-04-15T12:00:00.000000Z", variant_name="Yearly",
        ))

        _, fields = _written_fields(profiles)
        assert fields == {
            "is_premium": True,
            "subscription_status": "cancelled",
            "subscription_variant": "yearly",
            "subscription_ends_at": datetime(2026, 4, 15, 12, 0, 0),
            "updated_at": NOW,
        }

    def test_updated_without_variant_keeps_stored_variant(self):
        payload = _payload("subscription_updated", status="active")
        del payload["data"]["attributes"]["variant_name"]
        profiles, events, usage = _stores()
        _deliver(_processor(profiles, events, usage), payload)

        _, fields = _written_fields(profiles)
        assert "subscription_variant" not in fields
        assert fields["subscription_status"] == "active"

    def test_updated_without_status_is_malformed(self):
        payload = _payload("subscription_updated")
        del payload["data"]["attributes"]["status"]
        profiles, events, usage = _stores()

        with pytest.raises(MalformedPayloadError):
            _deliver(_processor(profiles, events, usage), payload)

        profiles.update_subscription_fields.assert_not_called()
        events.update_event_processed.assert_not_called()

    def test_cancelled_keeps_premium_untouched(self):
        profiles, events, usage = _stores()
        _deliver(_processor(profiles, events, usage), _payload(
            "subscription_cancelled", status="cancelled", ends_at="2026-04-15T12:00:00Z",
        ))

        _, fields = _written_fields(profiles)
        assert "is_premium" not in fields
        assert fields["subscription_status"] == "cancelled"
        assert fields["subscription_ends_at"] == datetime(2026, 4, 15, 12, 0, 0)

    def test_resumed(self):
        profiles, events, usage = _stores()
        _deliver(_processor(profiles, events, usage), _payload("subscription_resumed"))

        _, fields = _written_fields(profiles)
        assert fields == {
            "is_premium": True,
            "subscription_status": "active",
            "subscription_ends_at": None,
            "updated_at": NOW,
        }

    def test_expired_clears_subscription(self):
        profiles, events, usage = _stores()
        _deliver(_processor(profiles, events, usage), _payload("subscription_expired", status="expired"))

        _, fields = _written_fields(profiles)
        assert fields == {
            "is_premium": False,
            "subscription_status": "expired",
            "subscription_id": None,
            "subscription_variant": None,
            "subscription_ends_at": None,
            "updated_at": NOW,
        }

    def test_payment_failed_only_sets_past_due(self):
        profiles, events, usage = _stores()
        _deliver(_processor(profiles, events, usage), _payload("subscription_payment_failed"))

        _, fields = _written_fields(profiles)
        assert fields == {"subscription_status": "past_due", "updated_at": NOW}

    @pytest.mark.parametrize("event_name", ["subscription_payment_success", "order_created", "license_key_created"])
    def test_no_mutation_events_still_acknowledged(self, event_name):
        profiles, events, usage = _stores()
        result = _deliver(_processor(profiles, events, usage), _payload(event_name))

        assert result.status_code == 200
        assert result.body == {"received": True}
        profiles.update_subscription_fields.assert_not_called()
        events.update_event_processed.assert_called_once()

    def test_missing_profile_skips_usage_reset(self):
        profiles, events, usage = _stores()
        profiles.update_subscription_fields.return_value = 0

        result = _deliver(_processor(profiles, events, usage), _payload("subscription_created"))

        assert result.status_code == 200
        usage.reset_monthly_count.assert_not_called()

    def test_store_failure_propagates_and_leaves_event_unprocessed(self):
        profiles, events, usage = _stores()
        profiles.update_subscription_fields.side_effect = RuntimeError("db down")

        with pytest.raises(RuntimeError):
            _deliver(_processor(profiles, events, usage), _payload())

        events.insert_event.assert_called_once()
        events.update_event_processed.assert_not_called()


class TestParseTimestamp:
    def test_zulu(self):
        assert parse_timestamp("2026-04-15T12:00:00.000000Z") == datetime(2026, 4, 15, 12, 0, 0)

    def test_offset_converted_to_utc(self):
        assert parse_timestamp("2026-04-15T14:00:00+02:00") == datetime(2026, 4, 15, 12, 0, 0)

    def test_empty(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
