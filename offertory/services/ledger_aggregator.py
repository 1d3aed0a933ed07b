"""Derived totals for campaigns and tenants.

Runs inside the transaction that applied the transition, and only when the
transition was actually applied, so a replayed callback never reaches it.
Every counter moves through a single SQL UPDATE that reads the current column
value; nothing is read into Python, changed and written back.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from offertory.models import utcnow
from offertory.models.campaign import Campaign, CampaignDonor, CampaignMilestone, CampaignStatus
from offertory.models.monetary_record import MonetaryRecord, PaymentStatus, RecordKind
from offertory.models.tenant import Tenant

logger = logging.getLogger(__name__)


@dataclass
class AggregationResult:
    """Campaign and tenant figures after one aggregation step."""

    tenant_total: int
    campaign_id: int | None = None
    raised_amount: int | None = None
    contribution_count: int | None = None
    unique_donor_count: int | None = None
    new_donor: bool = False
    milestones_reached: list[int] = field(default_factory=list)
    target_reached: bool = False
    campaign_closed: bool = False


def _floored_sub(column, amount):
    return case((column > amount, column - amount), else_=0)


class LedgerAggregator:
    """Maintain campaign progress and tenant statistics."""

    def __init__(self, db: Session):
        self.db = db

    def apply_contribution(self, record: MonetaryRecord) -> AggregationResult:
        """
        Add a newly completed contribution to its campaign and tenant.

        Args:
            record: Contribution that has just moved to completed

        Returns:
            AggregationResult with the refreshed figures
        """
        amount = record.amount
        now = utcnow()

        self.db.execute(
            update(Tenant)
            .where(Tenant.id == record.tenant_id)
            .values(
                total_contributions=Tenant.total_contributions + amount,
                completed_contribution_count=Tenant.completed_contribution_count + 1,
                stats_updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        tenant = self.db.get(Tenant, record.tenant_id, populate_existing=True)
        result = AggregationResult(tenant_total=tenant.total_contributions)

        if record.campaign_id is None:
            return result

        new_donor = self._index_donor(record.campaign_id, record.donor_id)

        self.db.execute(
            update(Campaign)
            .where(Campaign.id == record.campaign_id)
            .values(
                raised_amount=Campaign.raised_amount + amount,
                contribution_count=Campaign.contribution_count + 1,
                unique_donor_count=Campaign.unique_donor_count + (1 if new_donor else 0),
                # SET expressions see pre-update values
                average_contribution=(Campaign.raised_amount + amount)
                // (Campaign.contribution_count + 1),
                largest_contribution=case(
                    (Campaign.largest_contribution < amount, amount),
                    else_=Campaign.largest_contribution,
                ),
                analytics_updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        campaign = self.db.get(Campaign, record.campaign_id, populate_existing=True)

        result.campaign_id = campaign.id
        result.raised_amount = campaign.raised_amount
        result.contribution_count = campaign.contribution_count
        result.unique_donor_count = campaign.unique_donor_count
        result.new_donor = new_donor
        result.milestones_reached = self._mark_milestones(campaign, now)
        result.target_reached = campaign.is_target_reached

        if (
            result.target_reached
            and campaign.close_on_target
            and campaign.status == CampaignStatus.ACTIVE.value
        ):
            closed = self.db.execute(
                update(Campaign)
                .where(Campaign.id == campaign.id, Campaign.status == CampaignStatus.ACTIVE.value)
                .values(status=CampaignStatus.COMPLETED.value)
                .execution_options(synchronize_session=False)
            ).rowcount
            if closed:
                self.db.get(Campaign, campaign.id, populate_existing=True)
                result.campaign_closed = True
                logger.info("Campaign %s reached its target and was closed", campaign.id)

        logger.info(
            "Aggregated record %s into campaign %s: raised=%s count=%s",
            record.id,
            campaign.id,
            result.raised_amount,
            result.contribution_count,
        )
        return result

    def apply_refund(self, record: MonetaryRecord) -> AggregationResult:
        """
        Reverse a refunded contribution's effect on its campaign and tenant.

        Totals are floored at zero. Milestones already reached stay reached.

        Args:
            record: The refunded contribution or its compensating refund record
                (both carry the same tenant, campaign, donor and amount)

        Returns:
            AggregationResult with the refreshed figures
        """
        amount = record.amount
        now = utcnow()

        self.db.execute(
            update(Tenant)
            .where(Tenant.id == record.tenant_id)
            .values(
                total_contributions=_floored_sub(Tenant.total_contributions, amount),
                completed_contribution_count=_floored_sub(Tenant.completed_contribution_count, 1),
                total_refunded=Tenant.total_refunded + amount,
                stats_updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        tenant = self.db.get(Tenant, record.tenant_id, populate_existing=True)
        result = AggregationResult(tenant_total=tenant.total_contributions)

        if record.campaign_id is None:
            return result

        donor_removed = self._unindex_donor(record.campaign_id, record.donor_id)

        completed = and_(
            MonetaryRecord.campaign_id == record.campaign_id,
            MonetaryRecord.kind == RecordKind.CONTRIBUTION.value,
            MonetaryRecord.status == PaymentStatus.COMPLETED.value,
        )
        largest = (
            select(func.coalesce(func.max(MonetaryRecord.amount), 0))
            .where(completed)
            .scalar_subquery()
        )
        remaining = _floored_sub(Campaign.contribution_count, 1)
        raised = _floored_sub(Campaign.raised_amount, amount)

        self.db.execute(
            update(Campaign)
            .where(Campaign.id == record.campaign_id)
            .values(
                raised_amount=raised,
                contribution_count=remaining,
                unique_donor_count=_floored_sub(
                    Campaign.unique_donor_count, 1 if donor_removed else 0
                ),
                average_contribution=case((remaining > 0, raised // remaining), else_=0),
                largest_contribution=largest,
                analytics_updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        campaign = self.db.get(Campaign, record.campaign_id, populate_existing=True)

        result.campaign_id = campaign.id
        result.raised_amount = campaign.raised_amount
        result.contribution_count = campaign.contribution_count
        result.unique_donor_count = campaign.unique_donor_count
        result.target_reached = campaign.is_target_reached

        logger.info(
            "Reversed record %s from campaign %s: raised=%s count=%s",
            record.id,
            campaign.id,
            result.raised_amount,
            result.contribution_count,
        )
        return result

    def _index_donor(self, campaign_id: int, donor_id: int | None) -> bool:
        """Add donor to the campaign's donor index. Returns True for a first-time donor."""
        if donor_id is None:
            return False
        try:
            with self.db.begin_nested():
                self.db.add(CampaignDonor(campaign_id=campaign_id, donor_id=donor_id))
        except IntegrityError:
            return False
        return True

    def _unindex_donor(self, campaign_id: int, donor_id: int | None) -> bool:
        """Drop donor from the index when they have no completed contribution left."""
        if donor_id is None:
            return False
        still_giving = self.db.execute(
            select(func.count(MonetaryRecord.id)).where(
                MonetaryRecord.campaign_id == campaign_id,
                MonetaryRecord.donor_id == donor_id,
                MonetaryRecord.kind == RecordKind.CONTRIBUTION.value,
                MonetaryRecord.status == PaymentStatus.COMPLETED.value,
            )
        ).scalar_one()
        if still_giving:
            return False
        removed = self.db.execute(
            delete(CampaignDonor)
            .where(CampaignDonor.campaign_id == campaign_id, CampaignDonor.donor_id == donor_id)
            .execution_options(synchronize_session=False)
        ).rowcount
        return bool(removed)

    def _mark_milestones(self, campaign: Campaign, now) -> list[int]:
        """Stamp milestones crossed by the campaign's current total."""
        crossed = list(
            self.db.execute(
                select(CampaignMilestone.id).where(
                    CampaignMilestone.campaign_id == campaign.id,
                    CampaignMilestone.reached_at.is_(None),
                    CampaignMilestone.amount <= campaign.raised_amount,
                )
            ).scalars()
        )
        if not crossed:
            return []

        self.db.execute(
            update(CampaignMilestone)
            .where(CampaignMilestone.id.in_(crossed), CampaignMilestone.reached_at.is_(None))
            .values(reached_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            select(CampaignMilestone)
            .where(CampaignMilestone.id.in_(crossed))
            .execution_options(populate_existing=True)
        ).scalars().all()
        for milestone_id in crossed:
            logger.info("Campaign %s reached milestone %s", campaign.id, milestone_id)
        return crossed


__all__ = ["LedgerAggregator", "AggregationResult"]
