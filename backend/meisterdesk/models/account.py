"""Account model — the craftsman's login and display-only subscription mirror."""

from datetime import datetime

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meisterdesk.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Account(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A business account.

    ``subscription_status`` and ``subscription_ends_at`` are a denormalised
    display cache written by the webhook handlers. Entitlement is never read
    from them; the ``subscriptions`` table is authoritative.
    """

    __tablename__ = "accounts"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Display mirror (not authoritative)
    subscription_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="freemium", server_default="freemium"
    )
    subscription_ends_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    subscriptions: Mapped[list["Subscription"]] = relationship(  # type: ignore[name-defined]  # noqa: F821
        "Subscription", back_populates="account", lazy="noload"
    )

    def __repr__(self) -> str:
        return f"<Account id={self.id} email={self.email!r} status={self.subscription_status!r}>"
