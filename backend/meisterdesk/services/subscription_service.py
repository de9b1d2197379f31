"""Subscription service — canonical subscription store operations.

Every webhook-driven write is keyed by ``provider_subscription_id`` and
expressed as a single conditional statement (upsert or guarded UPDATE), so
duplicate or concurrent deliveries converge on the same row without locks.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from meisterdesk.billing.plans import FREEMIUM
from meisterdesk.database import utcnow
from meisterdesk.models.account import Account
from meisterdesk.models.plan import Plan, PlanFeature
from meisterdesk.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

# Statuses that lapse into ``expired`` once their deadline passes without a
# terminal webhook. ``cancelled`` is already terminal and is left as-is.
LAPSABLE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.TRIAL.value,
)

# Columns an upsert may overwrite on conflict. ``account_id`` and
# ``created_at`` are fixed at first insert.
_UPSERT_MUTABLE_COLUMNS = (
    "plan_id",
    "status",
    "provider_customer_id",
    "current_period_start",
    "current_period_end",
    "trial_starts_at",
    "trial_ends_at",
    "cancel_at_period_end",
    "cancelled_at",
    "scheduled_change",
    "provider_metadata",
)


class TrialNotAllowedError(Exception):
    """The account already has subscription history."""


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_latest_subscription(
    db: AsyncSession, account_id: uuid.UUID
) -> Subscription | None:
    """Return the account's most recently created subscription row."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.account_id == account_id)
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_subscription_by_provider_id(
    db: AsyncSession, provider_subscription_id: str
) -> Subscription | None:
    """Look up a subscription by provider subscription ID (used by webhooks)."""
    result = await db.execute(
        select(Subscription).where(
            Subscription.provider_subscription_id == provider_subscription_id
        )
    )
    return result.scalar_one_or_none()


async def get_plan_by_name(db: AsyncSession, name: str) -> Plan | None:
    """Look up a plan by its catalogue name."""
    result = await db.execute(select(Plan).where(Plan.name == name))
    return result.scalar_one_or_none()


async def get_plan_features(db: AsyncSession, plan_id: uuid.UUID) -> list[PlanFeature]:
    """Return the enabled features of a plan."""
    result = await db.execute(
        select(PlanFeature)
        .where(PlanFeature.plan_id == plan_id, PlanFeature.is_enabled.is_(True))
        .order_by(PlanFeature.feature_key)
    )
    return list(result.scalars().all())


async def list_plans(db: AsyncSession) -> list[Plan]:
    """Return all active plans, cheapest first."""
    result = await db.execute(
        select(Plan).where(Plan.is_active.is_(True)).order_by(Plan.price_monthly, Plan.name)
    )
    return list(result.scalars().all())


async def account_exists(db: AsyncSession, account_id: uuid.UUID) -> bool:
    """Check whether a local account exists."""
    result = await db.execute(select(Account.id).where(Account.id == account_id))
    return result.scalar_one_or_none() is not None


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def _dialect_insert(db: AsyncSession):
    """``insert`` construct with ON CONFLICT support for the bound dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert is not supported on {dialect}")


async def upsert_subscription(db: AsyncSession, values: dict[str, Any]) -> Subscription:
    """Insert a subscription or update the row with the same provider id.

    A single ``INSERT ... ON CONFLICT (provider_subscription_id) DO UPDATE``,
    so replays and concurrent duplicate deliveries converge on one row.
    """
    if not values.get("provider_subscription_id"):
        raise ValueError("upsert_subscription requires provider_subscription_id")

    now = utcnow()
    row = {"id": uuid.uuid4(), "created_at": now, "updated_at": now, **values}
    insert = _dialect_insert(db)
    stmt = insert(Subscription).values(**row)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.provider_subscription_id],
        set_={
            **{col: stmt.excluded[col] for col in _UPSERT_MUTABLE_COLUMNS if col in values},
            "updated_at": now,
        },
    ).returning(Subscription.id)
    subscription_id = (await db.execute(stmt)).scalar_one()

    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .execution_options(populate_existing=True)
    )
    subscription = result.scalar_one()
    logger.info(
        "Upserted subscription %s (%s): status=%s",
        subscription.id,
        subscription.provider_subscription_id,
        subscription.status,
    )
    return subscription


async def update_subscription_by_provider_id(
    db: AsyncSession, provider_subscription_id: str, values: dict[str, Any]
) -> Subscription | None:
    """Apply ``values`` to the row with this provider id.

    Returns the updated row, or ``None`` when no such row exists.
    """
    result = await db.execute(
        update(Subscription)
        .where(Subscription.provider_subscription_id == provider_subscription_id)
        .values(**values, updated_at=utcnow())
        .returning(Subscription.id)
    )
    subscription_id = result.scalar_one_or_none()
    if subscription_id is None:
        return None

    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def expire_lapsed_subscription(
    db: AsyncSession, subscription_id: uuid.UUID, now: datetime
) -> bool:
    """Mark a subscription ``expired`` if it is still lapsed at ``now``.

    Guarded by status and deadline in the WHERE clause, so a concurrent reader
    doing the same write, or a renewal webhook landing first, is harmless.
    Returns ``True`` when this call changed the row.
    """
    trial_deadline = and_(
        Subscription.status == SubscriptionStatus.TRIAL.value,
        or_(
            Subscription.trial_ends_at <= now,
            and_(Subscription.trial_ends_at.is_(None), Subscription.current_period_end <= now),
        ),
    )
    paid_deadline = and_(
        Subscription.status.in_(
            [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]
        ),
        Subscription.current_period_end <= now,
    )
    result = await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id, or_(trial_deadline, paid_deadline))
        .values(status=SubscriptionStatus.EXPIRED.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    changed = result.rowcount > 0
    if changed:
        logger.info("Subscription %s lapsed without a terminal webhook; marked expired", subscription_id)
    return changed


async def mirror_account_status(
    db: AsyncSession,
    account_id: uuid.UUID,
    status: str,
    ends_at: datetime | None,
) -> None:
    """Copy a display-only status onto the account row."""
    await db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(subscription_status=status, subscription_ends_at=ends_at, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def start_trial(
    db: AsyncSession,
    account_id: uuid.UUID,
    plan_name: str,
    days: int,
    now: datetime | None = None,
) -> Subscription:
    """Insert a provider-less trial row for an account with no history.

    Raises:
        TrialNotAllowedError: If the account already has a subscription row.
        LookupError: If the plan is not in the catalogue table.
    """
    if await get_latest_subscription(db, account_id) is not None:
        raise TrialNotAllowedError(f"Account {account_id} already has a subscription")
    if plan_name == FREEMIUM:
        raise ValueError("A trial must be on a paid plan")

    plan = await get_plan_by_name(db, plan_name)
    if plan is None:
        raise LookupError(f"Plan {plan_name!r} is not seeded")

    now = now or utcnow()
    ends_at = now + timedelta(days=days)
    subscription = Subscription(
        account_id=account_id,
        plan_id=plan.id,
        status=SubscriptionStatus.TRIAL.value,
        current_period_start=now,
        current_period_end=ends_at,
        trial_starts_at=now,
        trial_ends_at=ends_at,
    )
    db.add(subscription)
    await db.flush()
    await mirror_account_status(db, account_id, SubscriptionStatus.TRIAL.value, ends_at)

    logger.info("Started %s-day %s trial for account %s", days, plan_name, account_id)
    return subscription


async def record_scheduled_change(
    db: AsyncSession,
    provider_subscription_id: str,
    scheduled_change: dict | None,
    cancel_at_period_end: bool,
) -> Subscription | None:
    """Persist a provider's scheduled change without touching ``status``.

    The row only changes status once the confirming webhook arrives.
    """
    return await update_subscription_by_provider_id(
        db,
        provider_subscription_id,
        {"scheduled_change": scheduled_change, "cancel_at_period_end": cancel_at_period_end},
    )
