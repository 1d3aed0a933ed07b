"""Entitlement engine: plan gating and usage metering per tenant.

Usage counters only move through conditional UPDATE statements, so the
increment itself is the admission check: two concurrent requests for the
last free slot cannot both succeed. Plan changes cancel the previous
entitlement and create the new one in one transaction; a partial unique
index keeps a second active row from ever becoming visible.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from offertory.api.errors import AlreadySubscribed, DowngradeExceedsUsage, LimitExceeded, NotFound
from offertory.models import as_utc, utcnow
from offertory.models.entitlement import (
    UNLIMITED,
    BillingCycle,
    EntitlementStatus,
    EntitlementUsage,
    ResourceKind,
    TenantEntitlement,
)
from offertory.services.audit_service import AuditService
from offertory.services.plan_catalog import DEFAULT_PLAN, PlanCatalog, SubscriptionPlan

logger = logging.getLogger(__name__)

MAX_SUBSCRIBE_ATTEMPTS = 3


class _ActivationRace(Exception):
    """The active entitlement changed between read and retire."""


class EntitlementEngine:
    """Answer "can tenant X create Y" and keep usage counters."""

    def __init__(self, db: Session, catalog: PlanCatalog):
        self.db = db
        self.catalog = catalog

    # Queries

    def get_active(self, tenant_id: int) -> Optional[TenantEntitlement]:
        """Active entitlement for tenant, or None."""
        return self.db.execute(
            select(TenantEntitlement)
            .where(
                TenantEntitlement.tenant_id == tenant_id,
                TenantEntitlement.status == EntitlementStatus.ACTIVE.value,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _usage_row(self, entitlement_id: int, kind: ResourceKind) -> Optional[EntitlementUsage]:
        return self.db.execute(
            select(EntitlementUsage)
            .where(
                EntitlementUsage.entitlement_id == entitlement_id,
                EntitlementUsage.resource_kind == kind.value,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _default_plan(self) -> Optional[SubscriptionPlan]:
        return self.catalog.get(DEFAULT_PLAN) if DEFAULT_PLAN in self.catalog else None

    def can_perform(self, tenant_id: int, kind: ResourceKind | str) -> bool:
        """
        Check whether tenant may create one more resource of kind.

        Unlimited (limit 0) always allows; otherwise current < limit. A kind
        the plan does not include is never allowed, and neither is anything
        for a tenant without an active entitlement (no counters to meter).
        """
        kind = ResourceKind(kind)
        entitlement = self.get_active(tenant_id)
        if entitlement is None:
            return False

        row = self._usage_row(entitlement.id, kind)
        if row is None:
            return False
        return row.limit == UNLIMITED or row.current < row.limit

    def require(self, tenant_id: int, kind: ResourceKind | str) -> None:
        """
        Raise LimitExceeded unless tenant may create one more resource of kind.

        Raises:
            LimitExceeded: With current usage, limit and plan name
        """
        kind = ResourceKind(kind)
        if self.can_perform(tenant_id, kind):
            return
        entitlement = self.get_active(tenant_id)
        if entitlement is None:
            raise LimitExceeded(kind.value, 0, None, DEFAULT_PLAN)
        row = self._usage_row(entitlement.id, kind)
        raise LimitExceeded(
            kind.value,
            row.current if row else 0,
            row.limit if row else None,
            entitlement.plan_name,
        )

    def usage_summary(self, tenant_id: int) -> dict[str, Any]:
        """Plan, period and per-kind usage for display."""
        entitlement = self.get_active(tenant_id)
        if entitlement is None:
            plan = self._default_plan()
            return {
                "plan": DEFAULT_PLAN,
                "status": None,
                "period_end": None,
                "usage": {
                    kind.value: {
                        "current": 0,
                        "limit": plan.limit_for(kind) if plan else None,
                        "unlimited": bool(plan and plan.is_unlimited(kind)),
                    }
                    for kind in ResourceKind
                },
            }

        rows = {row.resource_kind: row for row in self._usage_rows(entitlement.id)}
        usage = {}
        for kind in ResourceKind:
            row = rows.get(kind.value)
            if row is None:
                usage[kind.value] = {"current": 0, "limit": None, "unlimited": False}
                continue
            entry = {"current": row.current, "limit": row.limit, "unlimited": row.is_unlimited}
            if not row.is_unlimited:
                entry["remaining"] = max(row.limit - row.current, 0)
            usage[kind.value] = entry
        return {
            "plan": entitlement.plan_name,
            "status": entitlement.status,
            "period_end": as_utc(entitlement.period_end),
            "usage": usage,
        }

    # Usage counters

    def increment(
        self, tenant_id: int, kind: ResourceKind | str, amount: int = 1, *, commit: bool = True
    ) -> EntitlementUsage:
        """
        Atomically add amount to the usage counter if the limit allows it.

        Args:
            tenant_id: Tenant ID
            kind: Resource kind being created
            amount: How many resources (>= 1)
            commit: Commit the increment. With False the caller owns the
                transaction and a refusal leaves its pending work untouched.

        Returns:
            Updated EntitlementUsage row

        Raises:
            LimitExceeded: If the increment would pass the limit, or the plan
                does not include kind
        """
        kind = ResourceKind(kind)
        if amount < 1:
            raise ValueError(f"amount must be >= 1, got {amount}")

        entitlement = self.get_active(tenant_id)
        if entitlement is None:
            raise LimitExceeded(kind.value, 0, None, DEFAULT_PLAN)
        row = self._usage_row(entitlement.id, kind)
        if row is None:
            raise LimitExceeded(kind.value, 0, None, entitlement.plan_name)

        accepted = self.db.execute(
            update(EntitlementUsage)
            .where(
                EntitlementUsage.id == row.id,
                or_(
                    EntitlementUsage.limit == UNLIMITED,
                    EntitlementUsage.current + amount <= EntitlementUsage.limit,
                ),
            )
            .values(current=EntitlementUsage.current + amount)
            .execution_options(synchronize_session=False)
        ).rowcount

        row = self._usage_row(entitlement.id, kind)
        if not accepted:
            current, limit, plan_name = row.current, row.limit, entitlement.plan_name
            if commit:
                self.db.rollback()
            logger.info(
                "Tenant %s refused %s +%s: %s/%s on %s",
                tenant_id,
                kind.value,
                amount,
                current,
                limit,
                plan_name,
            )
            raise LimitExceeded(kind.value, current, limit, plan_name)

        if commit:
            self.db.commit()
        logger.debug("Tenant %s %s usage now %s/%s", tenant_id, kind.value, row.current, row.limit)
        return row

    def decrement(
        self, tenant_id: int, kind: ResourceKind | str, amount: int = 1, *, commit: bool = True
    ) -> Optional[EntitlementUsage]:
        """
        Atomically subtract amount from the usage counter, floored at zero.

        Returns:
            Updated EntitlementUsage row, or None when there is nothing to decrement
        """
        kind = ResourceKind(kind)
        if amount < 1:
            raise ValueError(f"amount must be >= 1, got {amount}")

        entitlement = self.get_active(tenant_id)
        if entitlement is None:
            return None
        row = self._usage_row(entitlement.id, kind)
        if row is None:
            return None

        self.db.execute(
            update(EntitlementUsage)
            .where(EntitlementUsage.id == row.id)
            .values(
                current=case(
                    (EntitlementUsage.current > amount, EntitlementUsage.current - amount),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return self._usage_row(entitlement.id, kind)

    # Plan changes

    def _check_usage_fits(self, plan: SubscriptionPlan, usage: dict[str, int]) -> None:
        """Raise DowngradeExceedsUsage at the first kind the plan cannot hold."""
        for kind in ResourceKind:
            current = usage.get(kind.value, 0)
            new_limit = plan.limit_for(kind)
            if new_limit is None:
                if current > 0:
                    raise DowngradeExceedsUsage(kind.value, current, None, plan.name)
            elif new_limit != UNLIMITED and new_limit < current:
                raise DowngradeExceedsUsage(kind.value, current, new_limit, plan.name)

    def _usage_rows(self, entitlement_id: int, lock: bool = False) -> list[EntitlementUsage]:
        stmt = select(EntitlementUsage).where(EntitlementUsage.entitlement_id == entitlement_id)
        if lock:
            stmt = stmt.with_for_update()
        return list(
            self.db.execute(stmt.execution_options(populate_existing=True)).scalars()
        )

    def _carried_usage(self, entitlement_id: int) -> dict[str, int]:
        return {
            row.resource_kind: row.current
            for row in self._usage_rows(entitlement_id, lock=True)
        }

    def validate_plan_change(self, tenant_id: int, new_plan_name: str) -> SubscriptionPlan:
        """
        Check that the tenant's current usage fits the new plan.

        Args:
            tenant_id: Tenant ID
            new_plan_name: Target plan

        Returns:
            The target SubscriptionPlan

        Raises:
            NotFound: If the plan does not exist
            DowngradeExceedsUsage: For the first resource kind over the new limit
        """
        plan = self.catalog.get(new_plan_name)
        entitlement = self.get_active(tenant_id)
        if entitlement is not None:
            usage = {row.resource_kind: row.current for row in self._usage_rows(entitlement.id)}
            self._check_usage_fits(plan, usage)
        return plan

    def subscribe(
        self,
        tenant_id: int,
        plan_name: str,
        billing_cycle: BillingCycle | str = BillingCycle.MONTHLY,
        actor_id: Optional[int] = None,
    ) -> TenantEntitlement:
        """
        Activate plan for tenant, replacing any active entitlement.

        With an active entitlement this is a plan change: the old row is
        cancelled, usage is carried over, and the change is refused if usage
        does not fit the new limits. A refusal is raised before anything is
        written, so the session is left as it was. An accepted change commits.

        Raises:
            NotFound: If the plan does not exist
            AlreadySubscribed: If the tenant is already active on plan_name
            DowngradeExceedsUsage: If current usage exceeds a new limit
        """
        plan = self.catalog.get(plan_name)
        cycle = BillingCycle(billing_cycle)

        for attempt in range(1, MAX_SUBSCRIBE_ATTEMPTS + 1):
            try:
                return self._activate(tenant_id, plan, cycle, actor_id)
            except (IntegrityError, _ActivationRace):
                # A concurrent subscribe activated or retired a row first
                self.db.rollback()
                logger.info(
                    "Concurrent subscription for tenant %s (attempt %s), retrying",
                    tenant_id,
                    attempt,
                )
        raise AlreadySubscribed(plan.name)

    def _activate(
        self,
        tenant_id: int,
        plan: SubscriptionPlan,
        cycle: BillingCycle,
        actor_id: Optional[int],
    ) -> TenantEntitlement:
        now = utcnow()
        previous = self.get_active(tenant_id)
        carried: dict[str, int] = {}

        if previous is not None:
            if previous.plan_name == plan.name:
                raise AlreadySubscribed(plan.name)

            # Refuse before writing anything
            try:
                self._check_usage_fits(plan, self._carried_usage(previous.id))
            except DowngradeExceedsUsage:
                logger.info(
                    "Tenant %s refused change from %s to %s", tenant_id, previous.plan_name, plan.name
                )
                raise

            retired = self.db.execute(
                update(TenantEntitlement)
                .where(
                    TenantEntitlement.id == previous.id,
                    TenantEntitlement.status == EntitlementStatus.ACTIVE.value,
                )
                .values(
                    status=EntitlementStatus.CANCELLED.value,
                    cancellation_requested_at=now,
                    cancellation_effective_at=now,
                    cancellation_reason=f"Changed to plan '{plan.name}'",
                    cancellation_requested_by=actor_id,
                    auto_renew=False,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if not retired:
                raise _ActivationRace()

            carried = self._carried_usage(previous.id)
            try:
                self._check_usage_fits(plan, carried)
            except DowngradeExceedsUsage:
                # Usage grew after the first check; retry from a fresh read
                raise _ActivationRace() from None

        entitlement = TenantEntitlement(
            tenant_id=tenant_id,
            plan_name=plan.name,
            status=EntitlementStatus.ACTIVE.value,
            billing_cycle=cycle.value,
            period_start=now,
            period_end=now + timedelta(days=cycle.period_days),
            auto_renew=True,
        )
        for kind, limit in plan.limits.items():
            entitlement.usage.append(
                EntitlementUsage(
                    resource_kind=kind.value,
                    current=carried.get(kind.value, 0),
                    limit=limit,
                )
            )
        self.db.add(entitlement)
        self.db.flush()

        AuditService.log(
            self.db,
            "entitlement",
            entitlement.id,
            "plan_change" if previous is not None else "subscribe",
            actor_id=actor_id,
            changes={
                "from_plan": previous.plan_name if previous is not None else None,
                "to_plan": plan.name,
                "billing_cycle": cycle.value,
                "carried_usage": carried,
            },
        )
        self.db.commit()
        if previous is not None:
            self.db.expire(previous)

        logger.info(
            "Tenant %s subscribed to %s (%s) until %s",
            tenant_id,
            plan.name,
            cycle.value,
            entitlement.period_end,
        )
        return entitlement

    # Lifecycle

    def cancel(
        self,
        tenant_id: int,
        reason: Optional[str] = None,
        actor_id: Optional[int] = None,
        effective_at: Optional[datetime] = None,
    ) -> TenantEntitlement:
        """
        Request cancellation of the active entitlement.

        The entitlement stays active until effective_at (default: end of the
        current period); an effective date that is already due cancels it now.

        Raises:
            NotFound: If the tenant has no active entitlement
        """
        entitlement = self.get_active(tenant_id)
        if entitlement is None:
            raise NotFound(f"No active entitlement for tenant {tenant_id}")

        now = utcnow()
        effective = as_utc(effective_at) if effective_at else as_utc(entitlement.period_end)
        values: dict[str, Any] = {
            "cancellation_requested_at": now,
            "cancellation_effective_at": effective,
            "cancellation_reason": reason,
            "cancellation_requested_by": actor_id,
            "auto_renew": False,
            "updated_at": now,
        }
        if effective <= now:
            values["status"] = EntitlementStatus.CANCELLED.value

        updated = self.db.execute(
            update(TenantEntitlement)
            .where(
                TenantEntitlement.id == entitlement.id,
                TenantEntitlement.status == EntitlementStatus.ACTIVE.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not updated:
            self.db.rollback()
            raise NotFound(f"No active entitlement for tenant {tenant_id}")

        AuditService.log(
            self.db,
            "entitlement",
            entitlement.id,
            "cancel",
            actor_id=actor_id,
            changes={"effective_at": effective.isoformat(), "reason": reason},
        )
        self.db.commit()
        self.db.refresh(entitlement)
        logger.info("Tenant %s cancelled %s effective %s", tenant_id, entitlement.plan_name, effective)
        return entitlement

    def renew(
        self,
        tenant_id: int,
        billing_cycle: BillingCycle | str | None = None,
        actor_id: Optional[int] = None,
    ) -> TenantEntitlement:
        """
        Extend the active entitlement by one billing period.

        Extends from the current period end when it is still ahead, else from
        now. A pending cancellation is withdrawn.

        Raises:
            NotFound: If the tenant has no active entitlement
        """
        entitlement = self.get_active(tenant_id)
        if entitlement is None:
            raise NotFound(f"No active entitlement for tenant {tenant_id}")

        cycle = BillingCycle(billing_cycle or entitlement.billing_cycle)
        now = utcnow()
        period_end = as_utc(entitlement.period_end)
        start = period_end if period_end > now else now
        new_end = start + timedelta(days=cycle.period_days)

        updated = self.db.execute(
            update(TenantEntitlement)
            .where(
                TenantEntitlement.id == entitlement.id,
                TenantEntitlement.status == EntitlementStatus.ACTIVE.value,
            )
            .values(
                billing_cycle=cycle.value,
                period_start=start,
                period_end=new_end,
                auto_renew=True,
                cancellation_requested_at=None,
                cancellation_effective_at=None,
                cancellation_reason=None,
                cancellation_requested_by=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if not updated:
            self.db.rollback()
            raise NotFound(f"No active entitlement for tenant {tenant_id}")

        AuditService.log(
            self.db,
            "entitlement",
            entitlement.id,
            "renew",
            actor_id=actor_id,
            changes={"period_end": new_end.isoformat(), "billing_cycle": cycle.value},
        )
        self.db.commit()
        self.db.refresh(entitlement)
        logger.info("Tenant %s renewed %s until %s", tenant_id, entitlement.plan_name, new_end)
        return entitlement

    def expire_lapsed(self, now: Optional[datetime] = None) -> int:
        """
        Retire active entitlements whose cancellation or period has come due.

        Due cancellations become cancelled; other lapsed periods become expired.

        Returns:
            Number of entitlements retired
        """
        now = as_utc(now) if now else utcnow()
        active = TenantEntitlement.status == EntitlementStatus.ACTIVE.value

        cancelled = self.db.execute(
            update(TenantEntitlement)
            .where(
                active,
                TenantEntitlement.cancellation_effective_at.is_not(None),
                TenantEntitlement.cancellation_effective_at <= now,
            )
            .values(status=EntitlementStatus.CANCELLED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        expired = self.db.execute(
            update(TenantEntitlement)
            .where(active, TenantEntitlement.period_end <= now)
            .values(status=EntitlementStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()

        if cancelled or expired:
            logger.info("Retired entitlements: %s cancelled, %s expired", cancelled, expired)
        return cancelled + expired


__all__ = ["EntitlementEngine", "MAX_SUBSCRIBE_ATTEMPTS"]
