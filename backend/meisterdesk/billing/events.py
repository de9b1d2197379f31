"""Provider webhook payloads normalised into one closed set of subscription events.

Each provider has its own event names and entity shapes. Both are parsed here
into :class:`SubscriptionEvent`, whose :class:`EventKind` is what the handlers
dispatch on. Event names without a mapping become ``EventKind.UNKNOWN`` so new
provider events are acknowledged instead of rejected.
"""

import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from meisterdesk.billing.exceptions import MalformedEventError, MissingMetadataError
from meisterdesk.models.subscription import Provider, SubscriptionStatus

logger = logging.getLogger(__name__)

ACCOUNT_ID_KEY = "account_id"
BILLING_INTERVAL_KEY = "billing_interval"


class EventKind(str, enum.Enum):
    """Provider-independent subscription event kinds."""

    CREATED = "created"
    UPDATED = "updated"
    ACTIVATED = "activated"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    RESUMED = "resumed"
    PAST_DUE = "past_due"
    TRANSACTION_COMPLETED = "transaction_completed"
    TRIAL_REMINDER = "trial_reminder"
    UNKNOWN = "unknown"


PADDLE_EVENT_KINDS: dict[str, EventKind] = {
    "subscription.created": EventKind.CREATED,
    "subscription.updated": EventKind.UPDATED,
    "subscription.trialing": EventKind.UPDATED,
    "subscription.activated": EventKind.ACTIVATED,
    "subscription.canceled": EventKind.CANCELLED,
    "subscription.cancelled": EventKind.CANCELLED,
    "subscription.paused": EventKind.PAUSED,
    "subscription.resumed": EventKind.RESUMED,
    "subscription.past_due": EventKind.PAST_DUE,
    "transaction.payment_failed": EventKind.PAST_DUE,
    "transaction.completed": EventKind.TRANSACTION_COMPLETED,
    "transaction.paid": EventKind.TRANSACTION_COMPLETED,
}

FASTSPRING_EVENT_KINDS: dict[str, EventKind] = {
    "subscription.activated": EventKind.CREATED,
    "subscription.updated": EventKind.UPDATED,
    "subscription.canceled": EventKind.CANCELLED,
    "subscription.deactivated": EventKind.CANCELLED,
    "subscription.uncanceled": EventKind.RESUMED,
    "subscription.paused": EventKind.PAUSED,
    "subscription.resumed": EventKind.RESUMED,
    "subscription.charge.completed": EventKind.TRANSACTION_COMPLETED,
    "subscription.charge.failed": EventKind.PAST_DUE,
    "subscription.payment.overdue": EventKind.PAST_DUE,
    "subscription.trial.reminder": EventKind.TRIAL_REMINDER,
}

_PADDLE_STATUSES: dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIAL,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELLED,
}

_FASTSPRING_STATUSES: dict[str, SubscriptionStatus] = {
    "trial": SubscriptionStatus.TRIAL,
    "active": SubscriptionStatus.ACTIVE,
    "overdue": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELLED,
    "deactivated": SubscriptionStatus.CANCELLED,
}


@dataclass(frozen=True)
class SubscriptionEvent:
    """One webhook event, normalised. Datetimes are naive UTC."""

    provider: Provider
    kind: EventKind
    event_type: str
    event_id: str | None = None
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    status: SubscriptionStatus | None = None
    price_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_starts_at: datetime | None = None
    trial_ends_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_at_period_end: bool | None = None
    scheduled_change: dict | None = None
    provider_metadata: dict | None = None
    occurred_at: datetime | None = None

    @property
    def billing_interval(self) -> str | None:
        value = self.metadata.get(BILLING_INTERVAL_KEY)
        return value if isinstance(value, str) else None

    def require_account_id(self) -> uuid.UUID:
        """The local account id carried through checkout metadata.

        Raises:
            MissingMetadataError: If the metadata is absent or not a UUID.
        """
        raw = self.metadata.get(ACCOUNT_ID_KEY)
        if not raw:
            raise MissingMetadataError(
                f"{self.event_type} {self.provider_subscription_id}: no {ACCOUNT_ID_KEY} in checkout metadata"
            )
        try:
            return uuid.UUID(str(raw))
        except ValueError:
            raise MissingMetadataError(
                f"{self.event_type} {self.provider_subscription_id}: malformed {ACCOUNT_ID_KEY} {raw!r}"
            ) from None


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings or Unix seconds/milliseconds into naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            seconds = value / 1000 if value > 10**11 else value
            dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning("Out-of-range timestamp %r in webhook payload", value)
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable timestamp %r in webhook payload", value)
            return None
    else:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _get(d: Any, *keys: str, default: Any = None) -> Any:
    cur = d
    for key in keys:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _first(d: dict, *keys: str) -> Any:
    for key in keys:
        value = d.get(key)
        if value not in (None, ""):
            return value
    return None


def _metadata(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _first_item(data: dict) -> dict:
    items = data.get("items")
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def _first_item_price(data: dict) -> str | None:
    return _get(_first_item(data), "price", "id")


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


def split_envelope(provider: Provider, payload: Any) -> list[dict]:
    """Split a delivery body into raw event dicts.

    Paddle delivers one event per request; FastSpring batches events under
    ``events``.

    Raises:
        MalformedEventError: If the body is not a recognisable envelope.
    """
    if not isinstance(payload, dict):
        raise MalformedEventError("Webhook body is not a JSON object")

    if provider is Provider.FASTSPRING:
        events = payload.get("events")
        if not isinstance(events, list):
            raise MalformedEventError("FastSpring envelope has no 'events' list")
        return [e for e in events if isinstance(e, dict)]

    if "event_type" not in payload:
        raise MalformedEventError("Paddle envelope has no 'event_type'")
    return [payload]


def parse_event(provider: Provider, raw: dict) -> SubscriptionEvent:
    """Normalise one raw event of the given provider."""
    if provider is Provider.FASTSPRING:
        return parse_fastspring_event(raw)
    return parse_paddle_event(raw)


# ---------------------------------------------------------------------------
# Paddle
# ---------------------------------------------------------------------------


def parse_paddle_event(raw: dict) -> SubscriptionEvent:
    """Normalise a Paddle Billing notification (``event_type`` + ``data``)."""
    event_type = raw.get("event_type")
    if not isinstance(event_type, str):
        raise MalformedEventError("Paddle event without event_type")
    kind = PADDLE_EVENT_KINDS.get(event_type, EventKind.UNKNOWN)
    event_id = raw.get("event_id") or raw.get("notification_id")
    occurred_at = parse_timestamp(raw.get("occurred_at"))

    data = raw.get("data")
    if kind is EventKind.UNKNOWN:
        return SubscriptionEvent(
            provider=Provider.PADDLE,
            kind=kind,
            event_type=event_type,
            event_id=event_id,
            occurred_at=occurred_at,
        )
    if not isinstance(data, dict):
        raise MalformedEventError(f"Paddle {event_type} without data object")

    if event_type.startswith("transaction."):
        subscription_id = data.get("subscription_id")
        if not subscription_id:
            raise MalformedEventError(f"Paddle {event_type} {data.get('id')} has no subscription_id")
        return SubscriptionEvent(
            provider=Provider.PADDLE,
            kind=kind,
            event_type=event_type,
            event_id=event_id,
            provider_subscription_id=subscription_id,
            provider_customer_id=data.get("customer_id"),
            status=SubscriptionStatus.PAST_DUE if kind is EventKind.PAST_DUE else None,
            price_id=_first_item_price(data),
            metadata=_metadata(data.get("custom_data")),
            occurred_at=occurred_at,
        )

    subscription_id = data.get("id")
    if not subscription_id:
        raise MalformedEventError(f"Paddle {event_type} without subscription id")

    first_item = _first_item(data)
    raw_status = data.get("status")
    status = _PADDLE_STATUSES.get(raw_status) if isinstance(raw_status, str) else None
    if kind is EventKind.PAST_DUE:
        status = SubscriptionStatus.PAST_DUE

    period_start = parse_timestamp(_get(data, "current_billing_period", "starts_at"))
    period_end = parse_timestamp(_get(data, "current_billing_period", "ends_at"))

    trial_starts_at = trial_ends_at = None
    if status is SubscriptionStatus.TRIAL:
        trial_starts_at = (
            parse_timestamp(_get(first_item, "trial_dates", "starts_at"))
            or parse_timestamp(data.get("started_at"))
            or period_start
        )
        trial_ends_at = parse_timestamp(_get(first_item, "trial_dates", "ends_at")) or period_end

    scheduled_change = data.get("scheduled_change")
    if not isinstance(scheduled_change, dict):
        scheduled_change = None

    return SubscriptionEvent(
        provider=Provider.PADDLE,
        kind=kind,
        event_type=event_type,
        event_id=event_id,
        provider_subscription_id=subscription_id,
        provider_customer_id=data.get("customer_id"),
        status=status,
        price_id=_first_item_price(data),
        metadata=_metadata(data.get("custom_data")),
        current_period_start=period_start,
        current_period_end=period_end,
        trial_starts_at=trial_starts_at,
        trial_ends_at=trial_ends_at,
        cancelled_at=parse_timestamp(data.get("canceled_at")),
        cancel_at_period_end=bool(scheduled_change and scheduled_change.get("action") == "cancel"),
        scheduled_change=scheduled_change,
        occurred_at=occurred_at,
    )


# ---------------------------------------------------------------------------
# FastSpring
# ---------------------------------------------------------------------------


def _fastspring_subscription(data: dict) -> dict:
    """The subscription object, whether nested under ``subscription`` or not."""
    nested = data.get("subscription")
    if isinstance(nested, dict):
        return nested
    return data


def _fastspring_ref(value: Any, key: str) -> str | None:
    """FastSpring references are either plain ids or expanded objects."""
    if isinstance(value, dict):
        ref = value.get(key) or value.get("id")
        return str(ref) if ref else None
    return str(value) if value else None


def _fastspring_period_start(sub: dict, period_end: datetime | None) -> datetime | None:
    begin = parse_timestamp(_first(sub, "beginInSeconds", "begin", "beginValue"))
    if period_end is None:
        return begin
    unit = sub.get("intervalUnit")
    if not isinstance(unit, str):
        unit = "month"
    try:
        length = int(sub.get("intervalLength") or 1)
    except (TypeError, ValueError):
        length = 1
    days = {"day": 1, "week": 7, "month": 30, "year": 365}.get(unit, 30) * length
    start = period_end - timedelta(days=days)
    return max(start, begin) if begin else start


def parse_fastspring_event(raw: dict) -> SubscriptionEvent:
    """Normalise one entry of a FastSpring ``events`` batch."""
    event_type = raw.get("type")
    if not isinstance(event_type, str):
        raise MalformedEventError("FastSpring event without type")
    kind = FASTSPRING_EVENT_KINDS.get(event_type, EventKind.UNKNOWN)
    event_id = raw.get("id")
    occurred_at = parse_timestamp(raw.get("created"))

    if kind is EventKind.UNKNOWN:
        return SubscriptionEvent(
            provider=Provider.FASTSPRING,
            kind=kind,
            event_type=event_type,
            event_id=event_id,
            occurred_at=occurred_at,
        )

    data = raw.get("data")
    if not isinstance(data, dict):
        raise MalformedEventError(f"FastSpring {event_type} without data object")
    sub = _fastspring_subscription(data)

    subscription_id = _fastspring_ref(sub.get("id") or sub.get("subscription"), "id")
    if not subscription_id:
        raise MalformedEventError(f"FastSpring {event_type} without subscription id")

    raw_state = sub.get("state")
    status = _FASTSPRING_STATUSES.get(raw_state) if isinstance(raw_state, str) else None
    if sub.get("inTrial") is True and status in (None, SubscriptionStatus.ACTIVE):
        status = SubscriptionStatus.TRIAL
    if kind is EventKind.PAST_DUE:
        status = SubscriptionStatus.PAST_DUE

    period_end = parse_timestamp(_first(sub, "nextChargeDate", "nextInSeconds", "next", "nextValue"))
    if period_end is None:
        period_end = parse_timestamp(_first(sub, "endInSeconds", "end", "endValue"))
    period_start = _fastspring_period_start(sub, period_end)

    trial_starts_at = trial_ends_at = None
    if status is SubscriptionStatus.TRIAL:
        trial_starts_at = period_start
        trial_ends_at = parse_timestamp(_first(sub, "trialEndDate", "trialEndInSeconds")) or period_end

    auto_renew = sub.get("autoRenew")
    cancel_at_period_end = None if auto_renew is None else not bool(auto_renew)

    cancelled_at = parse_timestamp(_first(sub, "canceledDateInSeconds", "canceledDate", "canceledDateValue"))
    deactivation = parse_timestamp(
        _first(sub, "deactivationDateInSeconds", "deactivationDate", "deactivationDateValue")
    )
    scheduled_change = None
    if deactivation is not None:
        scheduled_change = {"action": "cancel", "effective_at": deactivation.isoformat()}

    account = data.get("account", sub.get("account"))
    provider_metadata = {
        key: sub[key] for key in ("autoRenew", "intervalUnit", "intervalLength") if key in sub
    }

    return SubscriptionEvent(
        provider=Provider.FASTSPRING,
        kind=kind,
        event_type=event_type,
        event_id=event_id,
        provider_subscription_id=subscription_id,
        provider_customer_id=_fastspring_ref(account, "id"),
        status=status,
        price_id=_fastspring_ref(sub.get("product"), "product"),
        metadata=_metadata(sub.get("tags") or data.get("tags")),
        current_period_start=period_start,
        current_period_end=period_end,
        trial_starts_at=trial_starts_at,
        trial_ends_at=trial_ends_at,
        cancelled_at=cancelled_at,
        cancel_at_period_end=cancel_at_period_end,
        scheduled_change=scheduled_change,
        provider_metadata=provider_metadata or None,
        occurred_at=occurred_at,
    )
