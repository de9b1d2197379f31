"""Tests for normalising Paddle and FastSpring payloads into subscription events."""

import uuid
from datetime import datetime

import pytest

from meisterdesk.billing.events import (
    EventKind,
    parse_event,
    parse_fastspring_event,
    parse_paddle_event,
    parse_timestamp,
    split_envelope,
)
from meisterdesk.billing.exceptions import MalformedEventError, MissingMetadataError
from meisterdesk.models.subscription import Provider, SubscriptionStatus

ACCOUNT_ID = str(uuid.uuid4())


def paddle_subscription_event(event_type: str = "subscription.created", **data) -> dict:
    payload = {
        "id": "sub_01paddle",
        "status": "active",
        "customer_id": "ctm_01",
        "custom_data": {"account_id": ACCOUNT_ID, "billing_interval": "monthly", "source": "upgrade_modal"},
        "items": [{"price": {"id": "pri_monthly_test"}}],
        "current_billing_period": {
            "starts_at": "2026-10-01T00:00:00Z",
            "ends_at": "2026-11-01T00:00:00Z",
        },
        "scheduled_change": None,
    }
    payload.update(data)
    return {
        "event_id": "evt_01",
        "event_type": event_type,
        "occurred_at": "2026-10-01T00:00:05.123Z",
        "data": payload,
    }


class TestParseTimestamp:
    """Test timestamp normalisation to naive UTC."""

    def test_iso_with_z(self):
        assert parse_timestamp("2026-11-01T00:00:00Z") == datetime(2026, 11, 1)

    def test_iso_with_offset_converted_to_utc(self):
        assert parse_timestamp("2026-11-01T02:00:00+02:00") == datetime(2026, 11, 1)

    def test_unix_seconds(self):
        assert parse_timestamp(1_700_000_000) == datetime(2023, 11, 14, 22, 13, 20)

    def test_unix_milliseconds(self):
        assert parse_timestamp(1_700_000_000_000) == datetime(2023, 11, 14, 22, 13, 20)

    def test_numeric_string(self):
        assert parse_timestamp("1700000000") == datetime(2023, 11, 14, 22, 13, 20)

    @pytest.mark.parametrize("value", [None, "", "not a date", True])
    def test_unusable_values(self, value):
        assert parse_timestamp(value) is None

    @pytest.mark.parametrize(
        "value", [99999999999999999999, "99999999999999999999", 10**400, float("inf"), float("nan")]
    )
    def test_out_of_range_values(self, value):
        assert parse_timestamp(value) is None


class TestSplitEnvelope:
    """Test delivery envelopes."""

    def test_paddle_single_event(self):
        raw = paddle_subscription_event()
        assert split_envelope(Provider.PADDLE, raw) == [raw]

    def test_fastspring_batch(self):
        events = [{"id": "a", "type": "x"}, {"id": "b", "type": "y"}]
        assert split_envelope(Provider.FASTSPRING, {"events": events}) == events

    def test_fastspring_without_events_list(self):
        with pytest.raises(MalformedEventError):
            split_envelope(Provider.FASTSPRING, {"event": {}})

    def test_paddle_without_event_type(self):
        with pytest.raises(MalformedEventError):
            split_envelope(Provider.PADDLE, {"data": {}})

    def test_non_object_body(self):
        with pytest.raises(MalformedEventError):
            split_envelope(Provider.PADDLE, ["not", "an", "object"])


class TestParsePaddleEvent:
    """Test Paddle Billing notification parsing."""

    def test_subscription_created(self):
        event = parse_paddle_event(paddle_subscription_event())
        assert event.kind is EventKind.CREATED
        assert event.provider is Provider.PADDLE
        assert event.provider_subscription_id == "sub_01paddle"
        assert event.provider_customer_id == "ctm_01"
        assert event.status is SubscriptionStatus.ACTIVE
        assert event.price_id == "pri_monthly_test"
        assert event.current_period_start == datetime(2026, 10, 1)
        assert event.current_period_end == datetime(2026, 11, 1)
        assert event.billing_interval == "monthly"
        assert event.require_account_id() == uuid.UUID(ACCOUNT_ID)
        assert event.cancel_at_period_end is False

    def test_trialing_status_sets_trial_dates(self):
        raw = paddle_subscription_event(
            "subscription.trialing",
            status="trialing",
            items=[{
                "price": {"id": "pri_monthly_test"},
                "trial_dates": {"starts_at": "2026-10-01T00:00:00Z", "ends_at": "2026-10-08T00:00:00Z"},
            }],
        )
        event = parse_paddle_event(raw)
        assert event.kind is EventKind.UPDATED
        assert event.status is SubscriptionStatus.TRIAL
        assert event.trial_ends_at == datetime(2026, 10, 8)

    def test_scheduled_cancel_sets_cancel_at_period_end(self):
        raw = paddle_subscription_event(
            "subscription.updated",
            scheduled_change={"action": "cancel", "effective_at": "2026-11-01T00:00:00Z"},
        )
        event = parse_paddle_event(raw)
        assert event.cancel_at_period_end is True
        assert event.scheduled_change["action"] == "cancel"

    def test_canceled_spelling_maps_to_cancelled(self):
        event = parse_paddle_event(paddle_subscription_event("subscription.canceled", status="canceled"))
        assert event.kind is EventKind.CANCELLED
        assert event.status is SubscriptionStatus.CANCELLED

    def test_payment_failed_transaction_is_past_due(self):
        raw = {
            "event_id": "evt_tx",
            "event_type": "transaction.payment_failed",
            "data": {"id": "txn_01", "subscription_id": "sub_01paddle", "custom_data": {}},
        }
        event = parse_paddle_event(raw)
        assert event.kind is EventKind.PAST_DUE
        assert event.status is SubscriptionStatus.PAST_DUE
        assert event.provider_subscription_id == "sub_01paddle"

    def test_transaction_without_subscription_is_malformed(self):
        raw = {"event_type": "transaction.completed", "data": {"id": "txn_01"}}
        with pytest.raises(MalformedEventError):
            parse_paddle_event(raw)

    def test_unknown_event_type(self):
        event = parse_paddle_event({"event_id": "evt_x", "event_type": "address.created", "data": {}})
        assert event.kind is EventKind.UNKNOWN
        assert event.event_type == "address.created"

    def test_missing_subscription_id_is_malformed(self):
        raw = paddle_subscription_event()
        del raw["data"]["id"]
        with pytest.raises(MalformedEventError):
            parse_paddle_event(raw)

    def test_missing_account_metadata(self):
        event = parse_paddle_event(paddle_subscription_event(custom_data=None))
        with pytest.raises(MissingMetadataError):
            event.require_account_id()

    def test_malformed_account_metadata(self):
        event = parse_paddle_event(paddle_subscription_event(custom_data={"account_id": "not-a-uuid"}))
        with pytest.raises(MissingMetadataError):
            event.require_account_id()


class TestParseFastSpringEvent:
    """Test FastSpring batch entry parsing."""

    def _event(self, event_type: str = "subscription.activated", **sub) -> dict:
        subscription = {
            "id": "fs_sub_01",
            "state": "active",
            "account": "fs_acct_01",
            "product": "promeister-yearly",
            "autoRenew": True,
            "nextChargeDate": 1_793_491_200_000,  # 2026-11-01 in ms
            "intervalUnit": "month",
            "intervalLength": 1,
            "tags": {"account_id": ACCOUNT_ID, "billing_interval": "yearly"},
        }
        subscription.update(sub)
        return {"id": "fs_evt_01", "type": event_type, "created": 1_790_812_800_000, "data": subscription}

    def test_activated_maps_to_created(self):
        event = parse_fastspring_event(self._event())
        assert event.kind is EventKind.CREATED
        assert event.provider is Provider.FASTSPRING
        assert event.provider_subscription_id == "fs_sub_01"
        assert event.provider_customer_id == "fs_acct_01"
        assert event.price_id == "promeister-yearly"
        assert event.status is SubscriptionStatus.ACTIVE
        assert event.current_period_end == datetime(2026, 11, 1)
        assert event.billing_interval == "yearly"
        assert event.cancel_at_period_end is False

    def test_nested_subscription_object(self):
        raw = self._event()
        raw["data"] = {"subscription": raw["data"], "account": {"id": "fs_acct_02"}}
        event = parse_fastspring_event(raw)
        assert event.provider_subscription_id == "fs_sub_01"
        assert event.provider_customer_id == "fs_acct_02"

    def test_auto_renew_off_means_cancel_at_period_end(self):
        event = parse_fastspring_event(self._event("subscription.updated", autoRenew=False))
        assert event.kind is EventKind.UPDATED
        assert event.cancel_at_period_end is True
        assert event.status is SubscriptionStatus.ACTIVE

    def test_deactivated_is_cancelled(self):
        event = parse_fastspring_event(self._event("subscription.deactivated", state="deactivated"))
        assert event.kind is EventKind.CANCELLED
        assert event.status is SubscriptionStatus.CANCELLED

    def test_uncanceled_is_resumed(self):
        assert parse_fastspring_event(self._event("subscription.uncanceled")).kind is EventKind.RESUMED

    def test_charge_failed_is_past_due(self):
        event = parse_fastspring_event(self._event("subscription.charge.failed"))
        assert event.kind is EventKind.PAST_DUE
        assert event.status is SubscriptionStatus.PAST_DUE

    def test_in_trial(self):
        event = parse_fastspring_event(self._event(inTrial=True, state="trial"))
        assert event.status is SubscriptionStatus.TRIAL
        assert event.trial_ends_at == datetime(2026, 11, 1)

    def test_without_subscription_id_is_malformed(self):
        with pytest.raises(MalformedEventError):
            parse_fastspring_event(self._event(id=None))

    def test_out_of_range_dates_dropped(self):
        raw = self._event(nextChargeDate=99999999999999999999)
        raw["created"] = 99999999999999999999
        event = parse_fastspring_event(raw)
        assert event.current_period_end is None
        assert event.occurred_at is None

    def test_non_string_interval_unit_defaults_to_month(self):
        event = parse_fastspring_event(self._event(intervalUnit=["month"]))
        assert event.current_period_start == datetime(2026, 10, 2)

    def test_parse_event_dispatches_on_provider(self):
        event = parse_event(Provider.FASTSPRING, self._event())
        assert event.provider is Provider.FASTSPRING
