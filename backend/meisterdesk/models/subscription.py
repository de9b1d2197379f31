"""Subscription model — canonical, append-mostly subscription lineage per account."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meisterdesk.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

_JsonType = JSON().with_variant(JSONB(), "postgresql")


class SubscriptionStatus(str, enum.Enum):
    """Local subscription states (providers' vocabularies are mapped onto these)."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Provider(str, enum.Enum):
    """Supported payment providers."""

    PADDLE = "paddle"
    FASTSPRING = "fastspring"


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One subscription row. Rows are never deleted.

    The current subscription of an account is always the most recently created
    row; there is no pointer column. Webhooks find rows exclusively through
    ``provider_subscription_id``.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_account_created", "account_id", "created_at"),)

    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscription_plans.id"),
        nullable=False,
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Provider linkage
    provider: Mapped[str | None] = mapped_column(String(20), nullable=True)
    provider_subscription_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    provider_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Billing period & trial
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_starts_at: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Cancellation
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    scheduled_change: Mapped[dict | None] = mapped_column(_JsonType, nullable=True)
    provider_metadata: Mapped[dict | None] = mapped_column(_JsonType, nullable=True)

    # Relationships
    account: Mapped["Account"] = relationship(back_populates="subscriptions", lazy="noload")  # type: ignore[name-defined]  # noqa: F821
    plan: Mapped["Plan"] = relationship(lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, account_id={self.account_id}, "
            f"status={self.status}, provider_subscription_id={self.provider_subscription_id})>"
        )
