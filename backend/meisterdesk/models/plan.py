"""Plan and feature models — the catalogue entitlements are resolved against."""

import uuid
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meisterdesk.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Plan(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A subscription plan (``freemium``, ``pro``, ``pro_yearly``)."""

    __tablename__ = "subscription_plans"

    name: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_monthly: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    features: Mapped[list["PlanFeature"]] = relationship(
        back_populates="plan", lazy="selectin", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Plan name={self.name!r} price_monthly={self.price_monthly}>"


class PlanFeature(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A feature switch (and optional limit) granted by a plan."""

    __tablename__ = "subscription_features"
    __table_args__ = (
        UniqueConstraint("plan_id", "feature_key", name="uq_subscription_features_plan_key"),
    )

    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscription_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    feature_key: Mapped[str] = mapped_column(String(100), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    limit_value: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unlimited

    plan: Mapped[Plan] = relationship(back_populates="features")

    def __repr__(self) -> str:
        return f"<PlanFeature plan_id={self.plan_id} key={self.feature_key!r} enabled={self.is_enabled}>"
