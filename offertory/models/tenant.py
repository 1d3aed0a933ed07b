"""Tenant ORM model for organizations owning monetary records."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from offertory.models import Base, BaseModel


class Tenant(Base, BaseModel):
    """Model representing a tenant (church or ministry).

    Owns its monetary records, campaigns and entitlements. Aggregate
    statistics are maintained by the ledger aggregator through atomic
    increments; nothing else writes them.
    """

    __tablename__ = "tenants"

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="Display name",
    )
    receipt_prefix: Mapped[str] = mapped_column(
        String(8),
        nullable=False,
        comment="Receipt number code derived from name; may repeat across tenants",
    )

    # Aggregates (minor units)
    total_contributions: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        comment="Sum of completed contributions",
    )
    completed_contribution_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Number of completed contributions",
    )
    total_refunded: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        comment="Sum of refunds issued",
    )
    stats_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last aggregate update",
    )

    __table_args__ = (Index("idx_tenant_name", "name"),)

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name={self.name!r}, prefix={self.receipt_prefix})>"


__all__ = ["Tenant"]
