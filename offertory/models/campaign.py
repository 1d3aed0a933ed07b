"""Campaign ORM models: fundraising campaigns, milestones and donor index."""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from offertory.models import Base, BaseModel


class CampaignStatus(str, Enum):
    """Campaign lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Campaign(Base, BaseModel):
    """Model representing a fundraising campaign.

    Progress fields are derived: they are only ever written by the ledger
    aggregator when a contribution completes or is refunded. Contributions
    reference the campaign (never the other way round); the reverse lookup
    goes through the campaign_donors index.
    """

    __tablename__ = "campaigns"

    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id"),
        nullable=False,
        index=True,
        comment="Owning tenant",
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    target_amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Target in minor units",
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=CampaignStatus.ACTIVE.value,
        comment="draft/active/paused/completed/cancelled",
    )
    close_on_target: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Complete the campaign once the target is reached",
    )

    # Derived progress (minor units)
    raised_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    contribution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_donor_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_contribution: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    largest_contribution: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    analytics_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    milestones: Mapped[list["CampaignMilestone"]] = relationship(
        "CampaignMilestone",
        back_populates="campaign",
        order_by="CampaignMilestone.amount",
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("idx_campaign_tenant_status", "tenant_id", "status"),)

    @property
    def progress_percentage(self) -> float:
        """Progress towards target, capped at 100."""
        if not self.target_amount:
            return 0.0
        percentage = (self.raised_amount or 0) * 100 / self.target_amount
        return min(round(percentage, 2), 100.0)

    @property
    def is_target_reached(self) -> bool:
        return (self.raised_amount or 0) >= self.target_amount

    def __repr__(self) -> str:
        return (
            f"<Campaign(id={self.id}, tenant_id={self.tenant_id}, title={self.title!r}, "
            f"raised={self.raised_amount}/{self.target_amount})>"
        )


class CampaignMilestone(Base, BaseModel):
    """Amount threshold on a campaign; reached_at is set once when crossed."""

    __tablename__ = "campaign_milestones"

    campaign_id: Mapped[int] = mapped_column(
        ForeignKey("campaigns.id"),
        nullable=False,
        index=True,
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="Threshold, minor units")
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    reached_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    campaign: Mapped["Campaign"] = relationship("Campaign", back_populates="milestones")

    @property
    def is_reached(self) -> bool:
        return self.reached_at is not None

    def __repr__(self) -> str:
        return (
            f"<CampaignMilestone(id={self.id}, campaign_id={self.campaign_id}, "
            f"amount={self.amount}, reached_at={self.reached_at})>"
        )


class CampaignDonor(Base, BaseModel):
    """Reverse index of donors who completed a contribution to a campaign."""

    __tablename__ = "campaign_donors"

    campaign_id: Mapped[int] = mapped_column(ForeignKey("campaigns.id"), nullable=False)
    donor_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("campaign_id", "donor_id", name="uq_campaign_donor"),
    )

    def __repr__(self) -> str:
        return f"<CampaignDonor(campaign_id={self.campaign_id}, donor_id={self.donor_id})>"


__all__ = ["Campaign", "CampaignDonor", "CampaignMilestone", "CampaignStatus"]
