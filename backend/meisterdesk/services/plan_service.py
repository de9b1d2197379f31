"""Plan service — keep the plan tables in line with the static catalogue."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meisterdesk.billing.plans import PLAN_CATALOGUE, PlanSpec
from meisterdesk.models.plan import Plan, PlanFeature

logger = logging.getLogger(__name__)


async def _sync_plan(db: AsyncSession, spec: PlanSpec) -> tuple[Plan, bool]:
    result = await db.execute(select(Plan).where(Plan.name == spec.name))
    plan = result.scalar_one_or_none()
    created = plan is None
    if plan is None:
        plan = Plan(name=spec.name, features=[])
        db.add(plan)

    plan.display_name = spec.display_name
    plan.description = spec.description
    plan.price_monthly = spec.price_monthly
    plan.is_active = True

    wanted = {f.key: f for f in spec.features}
    for feature in plan.features:
        feature_spec = wanted.pop(feature.feature_key, None)
        if feature_spec is None:
            # Dropped from the catalogue: disable, keep the row
            feature.is_enabled = False
        else:
            feature.is_enabled = True
            feature.limit_value = feature_spec.limit_value
    for feature_spec in wanted.values():
        plan.features.append(
            PlanFeature(feature_key=feature_spec.key, is_enabled=True, limit_value=feature_spec.limit_value)
        )
    return plan, created


async def sync_plan_catalogue(db: AsyncSession) -> list[Plan]:
    """Insert or update every catalogue plan and its features. Idempotent."""
    plans = []
    for spec in PLAN_CATALOGUE.values():
        plan, created = await _sync_plan(db, spec)
        logger.info("%s plan %s (%d features)", "Created" if created else "Updated", spec.name, len(spec.features))
        plans.append(plan)
    await db.flush()
    return plans
