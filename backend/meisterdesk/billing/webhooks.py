"""Webhook event handlers — apply subscription lifecycle events to the canonical store.

Handlers receive a normalised :class:`SubscriptionEvent` and are dispatched on
its :class:`EventKind`. Constructive events (created, updated, activated,
resumed, past_due) insert the row when the provider id is unknown; destructive
ones (cancelled, paused) are a logged no-op in that case.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meisterdesk.billing.events import EventKind, SubscriptionEvent, parse_event
from meisterdesk.billing.exceptions import MalformedEventError, MissingMetadataError
from meisterdesk.billing.plans import resolve_plan_name
from meisterdesk.database import utcnow
from meisterdesk.models.subscription import Provider, Subscription, SubscriptionStatus
from meisterdesk.services.subscription_service import (
    account_exists,
    get_plan_by_name,
    get_subscription_by_provider_id,
    mirror_account_status,
    update_subscription_by_provider_id,
    upsert_subscription,
)

logger = logging.getLogger(__name__)


class HandlerOutcome(str, enum.Enum):
    """Per-event result reported in the webhook response."""

    APPLIED = "applied"  # canonical row inserted or updated
    NOOP = "noop"  # destructive event for an unknown subscription
    SKIPPED = "skipped"  # malformed event or unusable checkout metadata
    IGNORED = "ignored"  # unknown or informational event type
    ERROR = "error"  # handler raised; logged, batch still acknowledged


@dataclass
class EventResult:
    """Outcome of one event within a delivery."""

    event_type: str
    outcome: HandlerOutcome
    event_id: str | None = None
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "outcome": self.outcome.value,
            "detail": self.detail,
        }


def _result(event: SubscriptionEvent, outcome: HandlerOutcome, detail: str | None = None) -> EventResult:
    return EventResult(
        event_type=event.event_type,
        outcome=outcome,
        event_id=event.event_id,
        detail=detail,
    )


def _period_values(event: SubscriptionEvent) -> dict[str, Any]:
    """Period/trial columns present in the payload (absent ones are left alone)."""
    values: dict[str, Any] = {}
    for column in ("current_period_start", "current_period_end", "trial_starts_at", "trial_ends_at"):
        value = getattr(event, column)
        if value is not None:
            values[column] = value
    if event.provider_customer_id:
        values["provider_customer_id"] = event.provider_customer_id
    if event.provider_metadata is not None:
        values["provider_metadata"] = event.provider_metadata
    return values


async def _mirror(db: AsyncSession, subscription: Subscription) -> None:
    """Mirror a display-only status onto the account row."""
    ends_at = subscription.current_period_end
    if subscription.status == SubscriptionStatus.TRIAL.value and subscription.trial_ends_at:
        ends_at = subscription.trial_ends_at
    await mirror_account_status(db, subscription.account_id, subscription.status, ends_at)


async def _self_heal(
    db: AsyncSession,
    event: SubscriptionEvent,
    status: SubscriptionStatus,
    extra: dict[str, Any] | None = None,
) -> Subscription:
    """Insert the row a constructive event refers to, from its checkout metadata.

    Raises:
        MissingMetadataError: If the account id is missing, malformed, or unknown.
        LookupError: If the resolved plan is not seeded.
    """
    account_id = event.require_account_id()
    if not await account_exists(db, account_id):
        raise MissingMetadataError(
            f"{event.event_type} {event.provider_subscription_id}: account {account_id} does not exist"
        )

    plan_name = resolve_plan_name(event.price_id, event.billing_interval)
    plan = await get_plan_by_name(db, plan_name)
    if plan is None:
        raise LookupError(f"Plan {plan_name!r} is not seeded")

    values: dict[str, Any] = {
        "account_id": account_id,
        "plan_id": plan.id,
        "status": status.value,
        "provider": event.provider.value,
        "provider_subscription_id": event.provider_subscription_id,
        "cancel_at_period_end": bool(event.cancel_at_period_end),
        "cancelled_at": event.cancelled_at,
        "scheduled_change": event.scheduled_change,
        **_period_values(event),
        **(extra or {}),
    }
    return await upsert_subscription(db, values)


async def _update_or_heal(
    db: AsyncSession,
    event: SubscriptionEvent,
    values: dict[str, Any],
    heal_status: SubscriptionStatus,
) -> EventResult:
    """Update by provider id; insert from metadata when the row is unknown."""
    subscription = await update_subscription_by_provider_id(
        db, event.provider_subscription_id, values
    )
    if subscription is None:
        logger.info(
            "%s for unknown subscription %s; inserting from checkout metadata",
            event.event_type,
            event.provider_subscription_id,
        )
        subscription = await _self_heal(db, event, heal_status, extra=values)

    await _mirror(db, subscription)
    logger.info(
        "%s applied: subscription %s status=%s",
        event.event_type,
        event.provider_subscription_id,
        subscription.status,
    )
    return _result(event, HandlerOutcome.APPLIED, subscription.status)


async def _update_or_noop(
    db: AsyncSession, event: SubscriptionEvent, values: dict[str, Any]
) -> EventResult:
    """Update by provider id; an unknown id is a logged no-op."""
    subscription = await update_subscription_by_provider_id(
        db, event.provider_subscription_id, values
    )
    if subscription is None:
        logger.warning(
            "%s for unknown subscription %s; nothing to change",
            event.event_type,
            event.provider_subscription_id,
        )
        return _result(event, HandlerOutcome.NOOP, "unknown subscription")

    await _mirror(db, subscription)
    logger.info(
        "%s applied: subscription %s status=%s",
        event.event_type,
        event.provider_subscription_id,
        subscription.status,
    )
    return _result(event, HandlerOutcome.APPLIED, subscription.status)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def handle_subscription_created(db: AsyncSession, event: SubscriptionEvent) -> EventResult:
    """created — insert (or converge on) the row; trial if the provider says so."""
    status = (
        SubscriptionStatus.TRIAL
        if event.status is SubscriptionStatus.TRIAL
        else SubscriptionStatus.ACTIVE
    )
    subscription = await _self_heal(db, event, status)
    await _mirror(db, subscription)
    logger.info(
        "Subscription created: %s for account %s (status=%s)",
        event.provider_subscription_id,
        subscription.account_id,
        subscription.status,
    )
    return _result(event, HandlerOutcome.APPLIED, subscription.status)


async def handle_subscription_updated(db: AsyncSession, event: SubscriptionEvent) -> EventResult:
    """updated — overwrite status and period from the payload."""
    values = _period_values(event)
    if event.status is not None:
        values["status"] = event.status.value
    if event.cancel_at_period_end is not None:
        values["cancel_at_period_end"] = event.cancel_at_period_end
    if event.cancelled_at is not None:
        values["cancelled_at"] = event.cancelled_at
    if event.provider is Provider.PADDLE or event.scheduled_change is not None:
        values["scheduled_change"] = event.scheduled_change
    return await _update_or_heal(db, event, values, event.status or SubscriptionStatus.ACTIVE)


async def handle_subscription_activated(db: AsyncSession, event: SubscriptionEvent) -> EventResult:
    """activated — escape trial/pending into active."""
    values = {**_period_values(event), "status": SubscriptionStatus.ACTIVE.value}
    return await _update_or_heal(db, event, values, SubscriptionStatus.ACTIVE)


async def handle_subscription_cancelled(db: AsyncSession, event: SubscriptionEvent) -> EventResult:
    """cancelled — keep access until ``current_period_end`` (already paid for)."""
    values: dict[str, Any] = {
        "status": SubscriptionStatus.CANCELLED.value,
        "cancelled_at": event.cancelled_at or event.occurred_at or utcnow(),
    }
    if event.current_period_end is not None:
        values["current_period_end"] = event.current_period_end
    return await _update_or_noop(db, event, values)


async def handle_subscription_paused(db: AsyncSession, event: SubscriptionEvent) -> EventResult:
    """paused — no access while paused."""
    return await _update_or_noop(db, event, {"status": SubscriptionStatus.PAUSED.value})


async def handle_subscription_resumed(db: AsyncSession, event: SubscriptionEvent) -> EventResult:
    """resumed — back to active; any cancellation is withdrawn."""
    values = {
        **_period_values(event),
        "status": SubscriptionStatus.ACTIVE.value,
        "cancelled_at": None,
        "cancel_at_period_end": False,
        "scheduled_change": None,
    }
    return await _update_or_heal(db, event, values, SubscriptionStatus.ACTIVE)


async def handle_past_due(db: AsyncSession, event: SubscriptionEvent) -> EventResult:
    """past_due / payment failed — access retained, flagged for follow-up."""
    values = {**_period_values(event), "status": SubscriptionStatus.PAST_DUE.value}
    result = await _update_or_heal(db, event, values, SubscriptionStatus.PAST_DUE)
    logger.warning(
        "Payment failed for subscription %s; marked past_due (access retained)",
        event.provider_subscription_id,
    )
    return result


async def handle_transaction_completed(db: AsyncSession, event: SubscriptionEvent) -> EventResult:
    """transaction/charge completed — informational, status is left to subscription events."""
    subscription = await get_subscription_by_provider_id(db, event.provider_subscription_id)
    logger.info(
        "%s for subscription %s (%s); no status change",
        event.event_type,
        event.provider_subscription_id,
        subscription.status if subscription else "unknown locally",
    )
    return _result(event, HandlerOutcome.IGNORED, "informational")


async def handle_trial_reminder(db: AsyncSession, event: SubscriptionEvent) -> EventResult:
    """trial reminder — informational."""
    logger.info("Trial reminder for subscription %s", event.provider_subscription_id)
    return _result(event, HandlerOutcome.IGNORED, "informational")


async def dispatch_event(db: AsyncSession, event: SubscriptionEvent) -> EventResult:
    """Route a normalised event to its handler."""
    match event.kind:
        case EventKind.CREATED:
            return await handle_subscription_created(db, event)
        case EventKind.UPDATED:
            return await handle_subscription_updated(db, event)
        case EventKind.ACTIVATED:
            return await handle_subscription_activated(db, event)
        case EventKind.CANCELLED:
            return await handle_subscription_cancelled(db, event)
        case EventKind.PAUSED:
            return await handle_subscription_paused(db, event)
        case EventKind.RESUMED:
            return await handle_subscription_resumed(db, event)
        case EventKind.PAST_DUE:
            return await handle_past_due(db, event)
        case EventKind.TRANSACTION_COMPLETED:
            return await handle_transaction_completed(db, event)
        case EventKind.TRIAL_REMINDER:
            return await handle_trial_reminder(db, event)
        case _:
            logger.info("Unhandled %s webhook event type: %s", event.provider.value, event.event_type)
            return _result(event, HandlerOutcome.IGNORED, "unhandled event type")


async def process_events(
    session_factory: async_sessionmaker[AsyncSession],
    provider: Provider,
    raw_events: list[dict],
) -> list[EventResult]:
    """Apply each raw event in its own transaction; one failure never aborts the batch."""
    results: list[EventResult] = []
    for raw in raw_events:
        event_type = str(raw.get("event_type") or raw.get("type") or "unknown")
        event_id = raw.get("event_id") or raw.get("id")
        try:
            event = parse_event(provider, raw)
        except MalformedEventError as e:
            logger.warning("Skipping malformed %s event %s: %s", provider.value, event_id, e)
            results.append(EventResult(event_type, HandlerOutcome.SKIPPED, event_id, str(e)))
            continue
        except Exception as e:
            logger.exception("Error parsing %s webhook event %s", provider.value, event_id)
            results.append(EventResult(event_type, HandlerOutcome.ERROR, event_id, type(e).__name__))
            continue

        logger.info("Processing %s webhook event: %s (id=%s)", provider.value, event.event_type, event.event_id)
        async with session_factory() as db:
            try:
                result = await dispatch_event(db, event)
                await db.commit()
            except MissingMetadataError as e:
                await db.rollback()
                logger.warning("Skipping %s: %s", event.event_type, e)
                result = _result(event, HandlerOutcome.SKIPPED, str(e))
            except Exception as e:
                await db.rollback()
                logger.exception("Error processing %s webhook event %s", provider.value, event.event_id)
                result = _result(event, HandlerOutcome.ERROR, type(e).__name__)
        results.append(result)
    return results
