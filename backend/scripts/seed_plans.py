"""Seed the plan catalogue (freemium, pro, pro_yearly) and their features.

Idempotent: existing plans are updated in place, features removed from the
catalogue are disabled rather than deleted.

Run inside Docker:
    docker compose exec backend python -m scripts.seed_plans
"""

import asyncio
import logging

from meisterdesk.database import async_session_factory, engine
from meisterdesk.services.plan_service import sync_plan_catalogue


async def seed() -> None:
    """Write the static plan catalogue to the database."""
    async with async_session_factory() as session:
        plans = await sync_plan_catalogue(session)
        await session.commit()

    print("=" * 60)
    print("Plan catalogue")
    print("=" * 60)
    for plan in plans:
        enabled = sorted(f.feature_key for f in plan.features if f.is_enabled)
        print(f"   {plan.name:<12} {plan.price_monthly:>7}/month  {', '.join(enabled)}")
    print("=" * 60)

    await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(seed())
