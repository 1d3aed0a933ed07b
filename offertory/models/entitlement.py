"""Entitlement ORM models: a tenant's subscription instance and its usage counters."""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from offertory.models import Base, BaseModel

UNLIMITED = 0
"""Limit sentinel: zero means no ceiling."""


class ResourceKind(str, Enum):
    """Metered resource kinds."""

    TENANTS = "tenants"
    CAMPAIGNS = "campaigns"
    STAFF = "staff"
    VOLUNTEERS = "volunteers"
    TEAMS = "teams"


class EntitlementStatus(str, Enum):
    """Entitlement lifecycle states."""

    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class BillingCycle(str, Enum):
    """Billing cycle and its period length in days."""

    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def period_days(self) -> int:
        return 365 if self is BillingCycle.YEARLY else 30


class TenantEntitlement(Base, BaseModel):
    """Model representing one subscription instance of a tenant.

    At most one row per tenant is ACTIVE; a partial unique index enforces it.
    Rows are never deleted, only moved to a terminal status, so billing
    history survives plan changes.
    """

    __tablename__ = "tenant_entitlements"

    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id"),
        nullable=False,
        index=True,
        comment="Subscribing tenant",
    )
    plan_name: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=EntitlementStatus.ACTIVE.value,
        comment="active/expired/cancelled/suspended",
    )
    billing_cycle: Mapped[str] = mapped_column(
        String(10), nullable=False, default=BillingCycle.MONTHLY.value
    )
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Cancellation (nullable as a group)
    cancellation_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancellation_effective_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_requested_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    usage: Mapped[list["EntitlementUsage"]] = relationship(
        "EntitlementUsage",
        back_populates="entitlement",
        cascade="all, delete-orphan",
        order_by="EntitlementUsage.resource_kind",
    )

    __table_args__ = (
        Index(
            "uq_entitlement_one_active",
            "tenant_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("idx_entitlement_status_end", "status", "period_end"),
    )

    def usage_for(self, kind: ResourceKind | str) -> "EntitlementUsage | None":
        kind_value = getattr(kind, "value", kind)
        for row in self.usage:
            if row.resource_kind == kind_value:
                return row
        return None

    def __repr__(self) -> str:
        return (
            f"<TenantEntitlement(id={self.id}, tenant_id={self.tenant_id}, "
            f"plan={self.plan_name}, status={self.status}, end={self.period_end})>"
        )


class EntitlementUsage(Base, BaseModel):
    """Usage counter for one resource kind under one entitlement.

    current only changes through atomic conditional UPDATEs issued by the
    entitlement engine.
    """

    __tablename__ = "entitlement_usage"

    entitlement_id: Mapped[int] = mapped_column(
        ForeignKey("tenant_entitlements.id"),
        nullable=False,
        index=True,
    )
    resource_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    limit: Mapped[int] = mapped_column(
        "usage_limit",
        Integer,
        nullable=False,
        comment="Ceiling; 0 means unlimited",
    )

    entitlement: Mapped["TenantEntitlement"] = relationship(
        "TenantEntitlement", back_populates="usage"
    )

    __table_args__ = (
        UniqueConstraint("entitlement_id", "resource_kind", name="uq_usage_kind"),
    )

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED

    def __repr__(self) -> str:
        return (
            f"<EntitlementUsage(entitlement_id={self.entitlement_id}, "
            f"kind={self.resource_kind}, current={self.current}, limit={self.limit})>"
        )


__all__ = [
    "UNLIMITED",
    "ResourceKind",
    "EntitlementStatus",
    "BillingCycle",
    "TenantEntitlement",
    "EntitlementUsage",
]
