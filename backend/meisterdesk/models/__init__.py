"""SQLAlchemy models for MeisterDesk.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from meisterdesk.models.account import Account
from meisterdesk.models.plan import Plan, PlanFeature
from meisterdesk.models.subscription import Provider, Subscription, SubscriptionStatus

__all__ = [
    "Account",
    "Plan",
    "PlanFeature",
    "Provider",
    "Subscription",
    "SubscriptionStatus",
]
