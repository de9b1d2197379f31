"""Plan catalogue — plan names, feature sets, and provider price lookup."""

from dataclasses import dataclass, field
from decimal import Decimal

from meisterdesk.config import settings

FREEMIUM = "freemium"
PRO = "pro"
PRO_YEARLY = "pro_yearly"

BILLING_INTERVALS = ("monthly", "yearly")


@dataclass(frozen=True)
class FeatureSpec:
    """A feature granted by a plan."""

    key: str
    limit_value: int | None = None  # None = unlimited


@dataclass(frozen=True)
class PlanSpec:
    """Static definition of a plan, used for seeding and as the fail-open fallback."""

    name: str
    display_name: str
    description: str
    price_monthly: Decimal
    features: tuple[FeatureSpec, ...] = field(default_factory=tuple)

    @property
    def feature_keys(self) -> frozenset[str]:
        return frozenset(f.key for f in self.features)


_PRO_FEATURES = (
    FeatureSpec("business_card"),
    FeatureSpec("customer_inquiries"),
    FeatureSpec("invoicing"),
    FeatureSpec("quotes"),
    FeatureSpec("customer_management"),
    FeatureSpec("services_management"),
    FeatureSpec("pdf_archive"),
    FeatureSpec("invoice_email"),
    FeatureSpec("settings"),
)

PLAN_CATALOGUE: dict[str, PlanSpec] = {
    FREEMIUM: PlanSpec(
        name=FREEMIUM,
        display_name="Freemium",
        description="Digital business card with a limited customer list.",
        price_monthly=Decimal("0.00"),
        features=(
            FeatureSpec("business_card"),
            FeatureSpec("customer_management", limit_value=10),
            FeatureSpec("settings"),
        ),
    ),
    PRO: PlanSpec(
        name=PRO,
        display_name="PRO",
        description="Invoicing, inquiries and customer management, billed monthly.",
        price_monthly=Decimal("19.90"),
        features=_PRO_FEATURES,
    ),
    PRO_YEARLY: PlanSpec(
        name=PRO_YEARLY,
        display_name="PRO (yearly)",
        description="Everything in PRO, billed yearly.",
        price_monthly=Decimal("16.58"),
        features=_PRO_FEATURES,
    ),
}

VALID_PLAN_NAMES: set[str] = set(PLAN_CATALOGUE.keys())
PAID_PLAN_NAMES: set[str] = VALID_PLAN_NAMES - {FREEMIUM}


def get_plan_spec(plan_name: str) -> PlanSpec:
    """Get a plan definition by name. Defaults to freemium if unknown."""
    return PLAN_CATALOGUE.get(plan_name, PLAN_CATALOGUE[FREEMIUM])


def plan_for_interval(billing_interval: str | None) -> str:
    """Paid plan name for a billing interval (monthly unless stated otherwise)."""
    return PRO_YEARLY if billing_interval == "yearly" else PRO


def _price_table() -> dict[str, str]:
    table = {
        settings.paddle_price_id_monthly: PRO,
        settings.paddle_price_id_yearly: PRO_YEARLY,
        settings.fastspring_product_monthly: PRO,
        settings.fastspring_product_yearly: PRO_YEARLY,
    }
    table.pop("", None)
    return table


def get_plan_by_price_id(price_id: str | None) -> str | None:
    """Reverse lookup: Paddle price ID or FastSpring product path -> plan name."""
    if not price_id:
        return None
    return _price_table().get(price_id)


def resolve_plan_name(price_id: str | None, billing_interval: str | None = None) -> str:
    """Plan for a checkout, falling back to the billing interval from metadata."""
    return get_plan_by_price_id(price_id) or plan_for_interval(billing_interval)


def price_id_for(provider: str, billing_interval: str) -> str:
    """Provider price/product reference to charge for a billing interval."""
    yearly = billing_interval == "yearly"
    if provider == "fastspring":
        return settings.fastspring_product_yearly if yearly else settings.fastspring_product_monthly
    return settings.paddle_price_id_yearly if yearly else settings.paddle_price_id_monthly
