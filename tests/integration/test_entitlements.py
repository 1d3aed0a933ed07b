"""Integration tests for plan gating and usage metering."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from offertory.api.errors import AlreadySubscribed, DowngradeExceedsUsage, LimitExceeded, NotFound
from offertory.models import (
    EntitlementStatus,
    EntitlementUsage,
    ResourceKind,
    Tenant,
    TenantEntitlement,
    utcnow,
)
from offertory.models.entitlement import BillingCycle
from offertory.services.audit_service import AuditService
from offertory.services.entitlement_service import EntitlementEngine
from offertory.services.plan_catalog import PlanCatalog, SubscriptionPlan

pytestmark = pytest.mark.integration


@pytest.fixture
def engine_service(db, catalog):
    return EntitlementEngine(db, catalog)


def _set_usage(db, entitlement_id, kind, current):
    db.execute(
        update(EntitlementUsage)
        .where(
            EntitlementUsage.entitlement_id == entitlement_id,
            EntitlementUsage.resource_kind == kind.value,
        )
        .values(current=current)
    )
    db.commit()


def _active_count(db, tenant_id):
    return db.execute(
        select(func.count(TenantEntitlement.id)).where(
            TenantEntitlement.tenant_id == tenant_id,
            TenantEntitlement.status == EntitlementStatus.ACTIVE.value,
        )
    ).scalar_one()


def _tenant_count(db, name):
    return db.execute(select(func.count(Tenant.id)).where(Tenant.name == name)).scalar_one()


class TestSubscribe:
    """Tests for subscribe and plan changes."""

    def test_first_subscription(self, db, engine_service, tenant):
        """Test a new entitlement gets one usage row per plan limit."""
        entitlement = engine_service.subscribe(tenant.id, "starter", actor_id=1)

        assert entitlement.status == "active"
        assert entitlement.plan_name == "starter"
        assert entitlement.auto_renew
        period = entitlement.period_end - entitlement.period_start
        assert period == timedelta(days=30)

        rows = {row.resource_kind: row for row in entitlement.usage}
        assert rows["campaigns"].limit == 3
        assert rows["campaigns"].current == 0
        assert rows["volunteers"].is_unlimited

        actions = [e.action for e in AuditService.history(db, "entitlement", entitlement.id)]
        assert actions == ["subscribe"]

    def test_yearly_cycle(self, engine_service, tenant):
        entitlement = engine_service.subscribe(tenant.id, "starter", BillingCycle.YEARLY)
        assert entitlement.period_end - entitlement.period_start == timedelta(days=365)

    def test_unknown_plan(self, engine_service, tenant):
        with pytest.raises(NotFound):
            engine_service.subscribe(tenant.id, "platinum")

    def test_same_plan_refused(self, engine_service, tenant):
        engine_service.subscribe(tenant.id, "starter")
        with pytest.raises(AlreadySubscribed):
            engine_service.subscribe(tenant.id, "starter")

    def test_upgrade_carries_usage(self, db, engine_service, tenant):
        """Test changing plan retires the old row and keeps usage counts."""
        old = engine_service.subscribe(tenant.id, "starter")
        engine_service.increment(tenant.id, ResourceKind.CAMPAIGNS, 2)

        new = engine_service.subscribe(tenant.id, "organisation", actor_id=4)

        assert new.id != old.id
        db.expire_all()
        assert db.get(TenantEntitlement, old.id).status == "cancelled"
        assert _active_count(db, tenant.id) == 1
        campaigns = engine_service._usage_row(new.id, ResourceKind.CAMPAIGNS)
        assert campaigns.current == 2
        assert campaigns.is_unlimited

        history = AuditService.history(db, "entitlement", new.id)
        assert history[0].action == "plan_change"
        assert history[0].changes["from_plan"] == "starter"

    def test_downgrade_exceeding_usage_refused(self, db, engine_service, tenant):
        """Test a downgrade below current usage changes nothing."""
        current = engine_service.subscribe(tenant.id, "organisation")
        _set_usage(db, current.id, ResourceKind.CAMPAIGNS, 5)

        with pytest.raises(DowngradeExceedsUsage) as exc_info:
            engine_service.subscribe(tenant.id, "starter")

        assert exc_info.value.resource == "campaigns"
        assert exc_info.value.current == 5
        assert exc_info.value.limit == 3
        db.expire_all()
        active = engine_service.get_active(tenant.id)
        assert active.id == current.id
        assert active.plan_name == "organisation"
        assert _active_count(db, tenant.id) == 1

    def test_downgrade_refusal_keeps_pending_work(self, db, engine_service, tenant):
        current = engine_service.subscribe(tenant.id, "organisation")
        _set_usage(db, current.id, ResourceKind.CAMPAIGNS, 5)
        pending = Tenant(name="Pending Work", receipt_prefix="PEN")
        db.add(pending)
        db.flush()

        with pytest.raises(DowngradeExceedsUsage):
            engine_service.subscribe(tenant.id, "starter")

        assert pending in db
        db.commit()
        assert _tenant_count(db, "Pending Work") == 1
        assert engine_service.get_active(tenant.id).id == current.id

    def test_downgrade_to_plan_without_kind(self, db, engine_service, tenant):
        current = engine_service.subscribe(tenant.id, "starter")
        _set_usage(db, current.id, ResourceKind.STAFF, 1)

        with pytest.raises(DowngradeExceedsUsage) as exc_info:
            engine_service.subscribe(tenant.id, "free")

        assert exc_info.value.limit is None

    def test_downgrade_within_usage_allowed(self, db, engine_service, tenant):
        current = engine_service.subscribe(tenant.id, "organisation")
        _set_usage(db, current.id, ResourceKind.CAMPAIGNS, 3)

        new = engine_service.subscribe(tenant.id, "starter")

        assert engine_service._usage_row(new.id, ResourceKind.CAMPAIGNS).current == 3

    def test_validate_plan_change(self, db, engine_service, tenant):
        current = engine_service.subscribe(tenant.id, "organisation")
        _set_usage(db, current.id, ResourceKind.STAFF, 4)

        with pytest.raises(DowngradeExceedsUsage):
            engine_service.validate_plan_change(tenant.id, "starter")
        assert engine_service.validate_plan_change(tenant.id, "organisation").name == "organisation"

    def test_single_active_row_enforced_by_database(self, db, engine_service, tenant):
        """Test the partial unique index refuses a second active entitlement."""
        engine_service.subscribe(tenant.id, "starter")
        now = utcnow()
        db.add(
            TenantEntitlement(
                tenant_id=tenant.id,
                plan_name="organisation",
                status=EntitlementStatus.ACTIVE.value,
                billing_cycle="monthly",
                period_start=now,
                period_end=now + timedelta(days=30),
            )
        )

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_plan_changes_from_two_sessions_leave_one_active(self, db, session_factory, catalog, tenant):
        """Test plan changes made through two sessions leave exactly one active row."""
        EntitlementEngine(db, catalog).subscribe(tenant.id, "starter")

        first, second = session_factory(), session_factory()
        try:
            EntitlementEngine(first, catalog).subscribe(tenant.id, "organisation")
            EntitlementEngine(second, catalog).subscribe(tenant.id, "free")
        finally:
            first.close()
            second.close()

        assert _active_count(db, tenant.id) == 1


class TestCanPerform:
    """Tests for can_perform and require."""

    def test_usage_below_limit(self, db, engine_service, tenant):
        entitlement = engine_service.subscribe(tenant.id, "starter")
        _set_usage(db, entitlement.id, ResourceKind.STAFF, 2)

        assert engine_service.can_perform(tenant.id, ResourceKind.STAFF)

    def test_usage_at_limit(self, db, engine_service, tenant):
        entitlement = engine_service.subscribe(tenant.id, "starter")
        _set_usage(db, entitlement.id, ResourceKind.STAFF, 3)

        assert not engine_service.can_perform(tenant.id, "staff")
        with pytest.raises(LimitExceeded) as exc_info:
            engine_service.require(tenant.id, "staff")
        assert exc_info.value.current == 3
        assert exc_info.value.limit == 3
        assert exc_info.value.plan == "starter"

    def test_unlimited_always_allowed(self, db, engine_service, tenant):
        entitlement = engine_service.subscribe(tenant.id, "starter")
        _set_usage(db, entitlement.id, ResourceKind.VOLUNTEERS, 10_000)

        assert engine_service.can_perform(tenant.id, ResourceKind.VOLUNTEERS)

    def test_quota_of_five(self, db, tenant):
        """Test 4/5 allows, 5/5 refuses and 0 means unlimited."""
        catalog = PlanCatalog(
            [
                SubscriptionPlan(
                    name="five",
                    limits={ResourceKind.CAMPAIGNS: 5, ResourceKind.TEAMS: 0},
                )
            ]
        )
        service = EntitlementEngine(db, catalog)
        entitlement = service.subscribe(tenant.id, "five")

        _set_usage(db, entitlement.id, ResourceKind.CAMPAIGNS, 4)
        assert service.can_perform(tenant.id, ResourceKind.CAMPAIGNS)
        _set_usage(db, entitlement.id, ResourceKind.CAMPAIGNS, 5)
        assert not service.can_perform(tenant.id, ResourceKind.CAMPAIGNS)
        _set_usage(db, entitlement.id, ResourceKind.TEAMS, 5)
        assert service.can_perform(tenant.id, ResourceKind.TEAMS)

    def test_kind_not_in_plan(self, db, tenant):
        """Test a kind the plan does not include is refused with no limit."""
        catalog = PlanCatalog([SubscriptionPlan(name="basic", limits={ResourceKind.CAMPAIGNS: 5})])
        service = EntitlementEngine(db, catalog)
        service.subscribe(tenant.id, "basic")

        assert not service.can_perform(tenant.id, ResourceKind.STAFF)
        with pytest.raises(LimitExceeded) as exc_info:
            service.require(tenant.id, ResourceKind.STAFF)
        assert exc_info.value.limit is None
        assert exc_info.value.plan == "basic"

    def test_no_entitlement(self, engine_service, tenant):
        """Test a tenant without an entitlement may create nothing metered."""
        assert not engine_service.can_perform(tenant.id, ResourceKind.CAMPAIGNS)
        with pytest.raises(LimitExceeded) as exc_info:
            engine_service.require(tenant.id, ResourceKind.CAMPAIGNS)
        assert exc_info.value.plan == "free"


class TestUsageCounters:
    """Tests for increment and decrement."""

    def test_increment_until_limit(self, engine_service, tenant):
        """Test increments are admitted up to the limit and refused after."""
        engine_service.subscribe(tenant.id, "starter")

        for expected in (1, 2, 3):
            assert engine_service.increment(tenant.id, ResourceKind.CAMPAIGNS).current == expected

        with pytest.raises(LimitExceeded) as exc_info:
            engine_service.increment(tenant.id, ResourceKind.CAMPAIGNS)
        assert exc_info.value.current == 3
        assert engine_service._usage_row(
            engine_service.get_active(tenant.id).id, ResourceKind.CAMPAIGNS
        ).current == 3

    def test_increment_by_many_refused_atomically(self, engine_service, tenant):
        engine_service.subscribe(tenant.id, "starter")
        engine_service.increment(tenant.id, ResourceKind.STAFF, 2)

        with pytest.raises(LimitExceeded):
            engine_service.increment(tenant.id, ResourceKind.STAFF, 2)

        assert engine_service.usage_summary(tenant.id)["usage"]["staff"]["current"] == 2

    def test_increment_unlimited(self, engine_service, tenant):
        engine_service.subscribe(tenant.id, "organisation")
        row = engine_service.increment(tenant.id, ResourceKind.CAMPAIGNS, 250)
        assert row.current == 250

    def test_increment_without_entitlement(self, engine_service, tenant):
        with pytest.raises(LimitExceeded):
            engine_service.increment(tenant.id, ResourceKind.CAMPAIGNS)

    def test_increment_invalid_amount(self, engine_service, tenant):
        engine_service.subscribe(tenant.id, "starter")
        with pytest.raises(ValueError):
            engine_service.increment(tenant.id, ResourceKind.CAMPAIGNS, 0)

    def test_refusal_keeps_joined_transaction_work(self, db, engine_service, tenant):
        """Test a refused increment with commit=False leaves earlier flushed rows alone."""
        entitlement = engine_service.subscribe(tenant.id, "starter")
        _set_usage(db, entitlement.id, ResourceKind.CAMPAIGNS, 3)
        pending = Tenant(name="Pending Work", receipt_prefix="PEN")
        db.add(pending)
        db.flush()

        with pytest.raises(LimitExceeded):
            engine_service.increment(tenant.id, ResourceKind.CAMPAIGNS, commit=False)

        assert pending in db
        db.commit()
        assert _tenant_count(db, "Pending Work") == 1

    def test_decrement_floors_at_zero(self, engine_service, tenant):
        """Test decrement never goes below zero."""
        engine_service.subscribe(tenant.id, "starter")
        engine_service.increment(tenant.id, ResourceKind.CAMPAIGNS)

        assert engine_service.decrement(tenant.id, ResourceKind.CAMPAIGNS).current == 0
        assert engine_service.decrement(tenant.id, ResourceKind.CAMPAIGNS, 5).current == 0

    def test_decrement_frees_slot(self, engine_service, tenant):
        engine_service.subscribe(tenant.id, "starter")
        engine_service.increment(tenant.id, ResourceKind.CAMPAIGNS, 3)

        engine_service.decrement(tenant.id, ResourceKind.CAMPAIGNS)

        assert engine_service.can_perform(tenant.id, ResourceKind.CAMPAIGNS)

    def test_decrement_without_entitlement(self, engine_service, tenant):
        assert engine_service.decrement(tenant.id, ResourceKind.CAMPAIGNS) is None

    def test_last_slot_admits_one_session(self, session_factory, catalog, db, tenant):
        """Test two sessions asking for the last slot admit only one."""
        service = EntitlementEngine(db, catalog)
        entitlement = service.subscribe(tenant.id, "starter")
        _set_usage(db, entitlement.id, ResourceKind.CAMPAIGNS, 2)

        first, second = session_factory(), session_factory()
        outcomes = []
        try:
            for session in (first, second):
                try:
                    EntitlementEngine(session, catalog).increment(
                        tenant.id, ResourceKind.CAMPAIGNS
                    )
                    outcomes.append("admitted")
                except LimitExceeded:
                    outcomes.append("refused")
        finally:
            first.close()
            second.close()

        assert outcomes == ["admitted", "refused"]


class TestUsageSummary:
    """Tests for usage_summary."""

    def test_summary_for_subscriber(self, engine_service, tenant):
        engine_service.subscribe(tenant.id, "starter")
        engine_service.increment(tenant.id, ResourceKind.CAMPAIGNS)

        summary = engine_service.usage_summary(tenant.id)

        assert summary["plan"] == "starter"
        assert summary["status"] == "active"
        assert summary["usage"]["campaigns"] == {
            "current": 1,
            "limit": 3,
            "unlimited": False,
            "remaining": 2,
        }
        assert summary["usage"]["teams"]["unlimited"] is True
        assert "remaining" not in summary["usage"]["teams"]

    def test_summary_without_entitlement(self, engine_service, tenant):
        summary = engine_service.usage_summary(tenant.id)

        assert summary["plan"] == "free"
        assert summary["status"] is None
        assert summary["usage"]["campaigns"]["limit"] is None


class TestLifecycle:
    """Tests for cancel, renew and expire_lapsed."""

    def test_cancel_at_period_end(self, db, engine_service, tenant):
        """Test cancellation without a date keeps the entitlement active until period end."""
        entitlement = engine_service.subscribe(tenant.id, "starter")

        cancelled = engine_service.cancel(tenant.id, reason="Budget", actor_id=2)

        assert cancelled.status == "active"
        assert not cancelled.auto_renew
        assert cancelled.cancellation_reason == "Budget"
        assert cancelled.cancellation_effective_at is not None
        assert engine_service.get_active(tenant.id).id == entitlement.id

    def test_immediate_cancel(self, engine_service, tenant):
        engine_service.subscribe(tenant.id, "starter")

        cancelled = engine_service.cancel(tenant.id, effective_at=utcnow() - timedelta(seconds=1))

        assert cancelled.status == "cancelled"
        assert engine_service.get_active(tenant.id) is None

    def test_cancel_without_entitlement(self, engine_service, tenant):
        with pytest.raises(NotFound):
            engine_service.cancel(tenant.id)

    def test_renew_extends_period_and_withdraws_cancellation(self, engine_service, tenant):
        entitlement = engine_service.subscribe(tenant.id, "starter")
        original_end = entitlement.period_end
        engine_service.cancel(tenant.id)

        renewed = engine_service.renew(tenant.id, actor_id=2)

        assert renewed.auto_renew
        assert renewed.cancellation_effective_at is None
        delta = renewed.period_end.replace(tzinfo=None) - original_end.replace(tzinfo=None)
        assert delta == timedelta(days=30)

    def test_expire_lapsed(self, db, engine_service, tenant, other_tenant):
        """Test lapsed periods expire and due cancellations become cancelled."""
        engine_service.subscribe(tenant.id, "starter")
        engine_service.subscribe(other_tenant.id, "starter")
        engine_service.cancel(other_tenant.id, effective_at=utcnow() + timedelta(days=1))

        retired = engine_service.expire_lapsed(now=utcnow() + timedelta(days=31))

        assert retired == 2
        db.expire_all()
        statuses = dict(
            db.execute(select(TenantEntitlement.tenant_id, TenantEntitlement.status)).all()
        )
        assert statuses == {tenant.id: "expired", other_tenant.id: "cancelled"}

    def test_expire_lapsed_leaves_current(self, engine_service, tenant):
        engine_service.subscribe(tenant.id, "starter")
        assert engine_service.expire_lapsed() == 0
        assert engine_service.get_active(tenant.id) is not None
