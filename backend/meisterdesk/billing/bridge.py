"""Cancel/reactivate bridge — provider REST call first, then record the scheduled change.

Only the provider's *scheduled* change is written locally. ``status`` is left
for the confirming webhook; a successful REST call does not mean the local
row is already consistent.
"""

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from meisterdesk.billing.providers import ProviderAdapter
from meisterdesk.models.subscription import Subscription
from meisterdesk.services.subscription_service import (
    get_subscription_by_provider_id,
    record_scheduled_change,
)

logger = logging.getLogger(__name__)


class SubscriptionNotFoundError(LookupError):
    """No subscription with that provider id belongs to the account."""


@dataclass(frozen=True)
class BridgeResult:
    """What the provider scheduled. ``status`` is the unchanged local status."""

    provider_subscription_id: str
    status: str
    scheduled_change: dict | None
    cancel_at_period_end: bool


async def find_account_subscription(
    db: AsyncSession, provider_subscription_id: str, account_id: uuid.UUID
) -> Subscription:
    """Return the account's subscription with this provider id.

    Raises:
        SubscriptionNotFoundError: If it does not exist or belongs to someone else.
    """
    subscription = await get_subscription_by_provider_id(db, provider_subscription_id)
    if subscription is None or subscription.account_id != account_id:
        raise SubscriptionNotFoundError(provider_subscription_id)
    return subscription


async def _record(
    db: AsyncSession,
    subscription: Subscription,
    scheduled_change: dict | None,
    cancel_at_period_end: bool,
) -> BridgeResult:
    updated = await record_scheduled_change(
        db, subscription.provider_subscription_id, scheduled_change, cancel_at_period_end
    )
    row = updated or subscription
    return BridgeResult(
        provider_subscription_id=row.provider_subscription_id,
        status=row.status,
        scheduled_change=scheduled_change,
        cancel_at_period_end=cancel_at_period_end,
    )


async def cancel_subscription(
    db: AsyncSession, adapter: ProviderAdapter, subscription: Subscription
) -> BridgeResult:
    """Schedule cancellation at period end with the provider.

    Raises:
        ProviderAPIError: Propagated untouched; nothing is written locally.
    """
    logger.info(
        "Cancelling %s subscription %s for account %s",
        adapter.provider.value,
        subscription.provider_subscription_id,
        subscription.account_id,
    )
    scheduled = await adapter.cancel(subscription.provider_subscription_id)
    return await _record(db, subscription, scheduled, cancel_at_period_end=True)


async def reactivate_subscription(
    db: AsyncSession, adapter: ProviderAdapter, subscription: Subscription
) -> BridgeResult:
    """Withdraw a scheduled cancellation with the provider.

    Raises:
        ProviderAPIError: Propagated untouched; nothing is written locally.
    """
    logger.info(
        "Reactivating %s subscription %s for account %s",
        adapter.provider.value,
        subscription.provider_subscription_id,
        subscription.account_id,
    )
    scheduled = await adapter.reactivate(subscription.provider_subscription_id)
    return await _record(db, subscription, scheduled, cancel_at_period_end=False)
