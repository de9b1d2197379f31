"""Entitlement resolver — derive an account's plan and features at read time.

Entitlement is never stored. It is re-derived from the account's most recently
created subscription row on every (uncached) read. Any failure resolves to the
freemium plan: entitlement code must not take the rest of the site down with it.
"""

import logging
import math
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meisterdesk.billing.exceptions import ResolutionError
from meisterdesk.billing.plans import FREEMIUM, get_plan_spec
from meisterdesk.database import utcnow
from meisterdesk.models.plan import Plan
from meisterdesk.models.subscription import Subscription, SubscriptionStatus
from meisterdesk.services.subscription_service import (
    LAPSABLE_STATUSES,
    expire_lapsed_subscription,
    get_latest_subscription,
    get_plan_by_name,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Statuses whose access runs until current_period_end: cancelled keeps the
# paid-for grace period, past_due keeps access while payment is retried.
_PERIOD_GOVERNED = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.PAST_DUE.value,
)


def _trial_deadline(subscription: Subscription) -> datetime | None:
    return subscription.trial_ends_at or subscription.current_period_end


def is_subscription_active(subscription: Subscription, now: datetime) -> bool:
    """Whether a subscription row grants its plan at ``now``."""
    if subscription.status == SubscriptionStatus.TRIAL.value:
        deadline = _trial_deadline(subscription)
        return deadline is not None and now < deadline
    if subscription.status in _PERIOD_GOVERNED:
        return subscription.current_period_end is not None and now < subscription.current_period_end
    return False


def has_lapsed(subscription: Subscription, now: datetime) -> bool:
    """Whether a non-terminal row's deadline has passed without a terminal webhook."""
    if subscription.status not in LAPSABLE_STATUSES:
        return False
    if subscription.status == SubscriptionStatus.TRIAL.value:
        deadline = _trial_deadline(subscription)
    else:
        deadline = subscription.current_period_end
    return deadline is not None and now >= deadline


@dataclass(frozen=True)
class Entitlement:
    """The resolved plan, features, and subscription facts for one account."""

    account_id: uuid.UUID
    plan_name: str
    plan_display_name: str
    price_monthly: Decimal
    features: dict[str, int | None]
    is_active: bool
    resolved_at: datetime
    status: str | None = None
    subscription_id: uuid.UUID | None = None
    provider: str | None = None
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    current_period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    cancel_at_period_end: bool = False
    cancelled_at: datetime | None = None
    degraded: bool = field(default=False, compare=False)

    # -- predicates -----------------------------------------------------

    def has_feature_access(self, feature_key: str) -> bool:
        return feature_key in self.features

    def get_plan_limit(self, feature_key: str) -> int | None:
        return self.features.get(feature_key)

    @property
    def is_freemium(self) -> bool:
        return self.plan_name == FREEMIUM

    @property
    def is_in_trial(self) -> bool:
        return self.is_active and self.status == SubscriptionStatus.TRIAL.value

    @property
    def is_paid(self) -> bool:
        return self.is_active and not self.is_freemium and not self.is_in_trial

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED.value

    @property
    def is_expired(self) -> bool:
        return self.status == SubscriptionStatus.EXPIRED.value

    @property
    def trial_days_remaining(self) -> int:
        if not self.is_in_trial or self.trial_ends_at is None:
            return 0
        remaining = (self.trial_ends_at - self.resolved_at) / timedelta(days=1)
        return max(math.ceil(remaining), 0)

    def fingerprint(self) -> tuple:
        """Everything a consumer renders; ``resolved_at`` excluded."""
        return (
            self.plan_name,
            tuple(sorted(self.features.items())),
            self.is_active,
            self.status,
            self.subscription_id,
            self.current_period_end,
            self.trial_ends_at,
            self.cancel_at_period_end,
            self.cancelled_at,
        )


def freemium_fallback(account_id: uuid.UUID, now: datetime) -> Entitlement:
    """Lowest-privilege entitlement built from the static catalogue (no database)."""
    spec = get_plan_spec(FREEMIUM)
    return Entitlement(
        account_id=account_id,
        plan_name=spec.name,
        plan_display_name=spec.display_name,
        price_monthly=spec.price_monthly,
        features={f.key: f.limit_value for f in spec.features},
        is_active=False,
        resolved_at=now,
        degraded=True,
    )


def _plan_features(plan: Plan) -> dict[str, int | None]:
    return {f.feature_key: f.limit_value for f in plan.features if f.is_enabled}


class EntitlementResolver:
    """Resolve entitlements from the canonical store.

    ``clock`` returns naive UTC and is injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def resolve(self, account_id: uuid.UUID) -> Entitlement:
        """Resolve an account's entitlement. Never raises; fails open to freemium."""
        now = self._clock()
        try:
            return await self._resolve(account_id, now)
        except Exception as e:
            logger.warning(
                "Entitlement resolution failed for account %s (%s); falling back to freemium",
                account_id,
                e,
            )
            return freemium_fallback(account_id, now)

    async def _resolve(self, account_id: uuid.UUID, now: datetime) -> Entitlement:
        async with self._session_factory() as db:
            try:
                subscription = await get_latest_subscription(db, account_id)
            except SQLAlchemyError as e:
                raise ResolutionError(f"Could not load subscription for {account_id}") from e

            if subscription is None:
                logger.debug("No subscription for account %s; freemium", account_id)
                return await self._freemium(db, account_id, now)

            if is_subscription_active(subscription, now):
                return self._from_subscription(account_id, subscription, subscription.plan, now)

            status = subscription.status
            if has_lapsed(subscription, now):
                status = await self._expire(db, subscription, now)

            logger.debug(
                "Subscription %s for account %s not active (status=%s); freemium",
                subscription.id,
                account_id,
                status,
            )
            return await self._freemium(db, account_id, now, subscription, status)

    async def _expire(self, db: AsyncSession, subscription: Subscription, now: datetime) -> str:
        """Lazily mark a lapsed row expired. Redundant concurrent writes are harmless."""
        try:
            await expire_lapsed_subscription(db, subscription.id, now)
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception("Could not mark subscription %s expired", subscription.id)
            return subscription.status
        return SubscriptionStatus.EXPIRED.value

    def _from_subscription(
        self,
        account_id: uuid.UUID,
        subscription: Subscription,
        plan: Plan,
        now: datetime,
        *,
        is_active: bool = True,
        status: str | None = None,
    ) -> Entitlement:
        return Entitlement(
            account_id=account_id,
            plan_name=plan.name,
            plan_display_name=plan.display_name,
            price_monthly=plan.price_monthly,
            features=_plan_features(plan),
            is_active=is_active,
            resolved_at=now,
            status=status or subscription.status,
            subscription_id=subscription.id,
            provider=subscription.provider,
            provider_subscription_id=subscription.provider_subscription_id,
            provider_customer_id=subscription.provider_customer_id,
            current_period_end=subscription.current_period_end,
            trial_ends_at=subscription.trial_ends_at,
            cancel_at_period_end=subscription.cancel_at_period_end,
            cancelled_at=subscription.cancelled_at,
        )

    async def _freemium(
        self,
        db: AsyncSession,
        account_id: uuid.UUID,
        now: datetime,
        subscription: Subscription | None = None,
        status: str | None = None,
    ) -> Entitlement:
        plan = await get_plan_by_name(db, FREEMIUM)
        if plan is None:
            logger.warning("Freemium plan is not seeded; using built-in catalogue")
            fallback = freemium_fallback(account_id, now)
            if subscription is None:
                return fallback
            return Entitlement(
                **{
                    **fallback.__dict__,
                    "degraded": False,
                    "status": status,
                    "subscription_id": subscription.id,
                    "provider": subscription.provider,
                    "provider_subscription_id": subscription.provider_subscription_id,
                    "provider_customer_id": subscription.provider_customer_id,
                    "current_period_end": subscription.current_period_end,
                    "trial_ends_at": subscription.trial_ends_at,
                    "cancel_at_period_end": subscription.cancel_at_period_end,
                    "cancelled_at": subscription.cancelled_at,
                }
            )

        if subscription is None:
            return Entitlement(
                account_id=account_id,
                plan_name=plan.name,
                plan_display_name=plan.display_name,
                price_monthly=plan.price_monthly,
                features=_plan_features(plan),
                is_active=False,
                resolved_at=now,
            )
        return self._from_subscription(
            account_id, subscription, plan, now, is_active=False, status=status
        )
