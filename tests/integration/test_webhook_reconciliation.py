"""Integration tests for gateway callback reconciliation."""

from datetime import datetime

import pytest
from sqlalchemy import select

from offertory.api.errors import (
    MissingSignature,
    NotFound,
    ReconciliationConflict,
    SignatureMismatch,
)
from offertory.models import AuditLog, Campaign, MonetaryRecord, PaymentStatus, Tenant, utcnow
from offertory.services.audit_service import AuditService
from offertory.services.contribution_service import ContributionService
from offertory.services.notification_service import NotificationService
from offertory.services.receipts import derive_prefix
from offertory.services.signature import SignatureVerifier
from offertory.services.state_machine import TransactionStateMachine
from offertory.services.webhook_reconciler import ReconciliationOutcome, WebhookReconciler

pytestmark = pytest.mark.integration

REFERENCE = "MNFY|20250623|000001"


@pytest.fixture
def events():
    return []


@pytest.fixture
def reconciler(db, verifier, events):
    notifier = NotificationService([lambda event, payload: events.append((event, payload))])
    return WebhookReconciler(
        db, verifier=verifier, state_machine=TransactionStateMachine(db, notifier=notifier)
    )


class TestSuccessfulCallback:
    """Tests for first delivery of a success callback."""

    def test_completes_contribution(self, db, reconciler, make_contribution, signed_callback):
        """Test a valid callback completes the record with gateway data and a receipt."""
        record = make_contribution(amount=500_000)
        body, signature = signed_callback(REFERENCE, status="PAID", amount="5000.00")

        result = reconciler.reconcile(body, signature)

        assert result.outcome is ReconciliationOutcome.APPLIED_SUCCESS
        assert result.applied
        db.expire_all()
        stored = db.get(MonetaryRecord, record.id)
        assert stored.status == "completed"
        assert stored.version == 2
        assert stored.paid_amount == 500_000
        assert stored.payment_method == "CARD"
        assert stored.completed_at is not None
        assert stored.receipt_number.startswith("GRA")
        assert stored.receipt_number.endswith("0001")

    def test_updates_tenant_totals_once(self, db, reconciler, tenant, make_contribution, signed_callback):
        make_contribution(amount=500_000)
        body, signature = signed_callback(REFERENCE)

        reconciler.reconcile(body, signature)
        reconciler.reconcile(body, signature)

        db.expire_all()
        stored = db.get(Tenant, tenant.id)
        assert stored.total_contributions == 500_000
        assert stored.completed_contribution_count == 1

    def test_publishes_event_after_commit(self, reconciler, make_contribution, signed_callback, events):
        record = make_contribution()
        body, signature = signed_callback(REFERENCE)

        reconciler.reconcile(body, signature)

        assert len(events) == 1
        event, payload = events[0]
        assert event == "contribution.completed"
        assert payload["record_id"] == record.id
        assert payload["from"] == "processing"
        assert payload["receipt_number"] is not None

    def test_writes_audit_entry(self, db, reconciler, make_contribution, signed_callback):
        record = make_contribution()
        body, signature = signed_callback(REFERENCE)

        reconciler.reconcile(body, signature)

        history = AuditService.history(db, "monetary_record", record.id)
        assert [entry.action for entry in history] == ["transition"]
        assert history[0].changes["to"] == "completed"

    def test_campaign_contribution_aggregated(
        self, db, reconciler, make_contribution, campaign, signed_callback
    ):
        make_contribution(amount=300_000, campaign_id=campaign.id, donor_id=11)
        body, signature = signed_callback(REFERENCE, amount="3000.00")

        reconciler.reconcile(body, signature)

        db.expire_all()
        stored = db.get(Campaign, campaign.id)
        assert stored.raised_amount == 300_000
        assert stored.contribution_count == 1
        assert stored.unique_donor_count == 1


class TestDuplicateCallback:
    """Tests for replayed deliveries."""

    def test_replay_is_acknowledged_without_change(
        self, db, reconciler, make_contribution, signed_callback, events
    ):
        """Test a second identical delivery changes nothing and reports duplicate."""
        record = make_contribution()
        body, signature = signed_callback(REFERENCE)

        first = reconciler.reconcile(body, signature)
        receipt = first.record.receipt_number
        second = reconciler.reconcile(body, signature)

        assert second.outcome is ReconciliationOutcome.DUPLICATE
        assert not second.applied
        db.expire_all()
        stored = db.get(MonetaryRecord, record.id)
        assert stored.version == 2
        assert stored.receipt_number == receipt
        assert len(events) == 1

    def test_failed_replay(self, reconciler, make_contribution, signed_callback):
        make_contribution()
        body, signature = signed_callback(REFERENCE, status="FAILED")

        assert reconciler.reconcile(body, signature).outcome is ReconciliationOutcome.APPLIED_FAILURE
        assert reconciler.reconcile(body, signature).outcome is ReconciliationOutcome.DUPLICATE

    def test_concurrent_delivery_in_other_session(
        self, db, session_factory, verifier, make_contribution, signed_callback
    ):
        """Test a delivery racing on a stale snapshot loses the compare-and-set and is a no-op."""
        record = make_contribution()
        body, signature = signed_callback(REFERENCE)

        other = session_factory()
        try:
            stale = other.get(MonetaryRecord, record.id)
            assert stale.status == "processing"

            WebhookReconciler(db, verifier=verifier).reconcile(body, signature)
            result = WebhookReconciler(other, verifier=verifier).reconcile(body, signature)

            assert result.outcome is ReconciliationOutcome.DUPLICATE
            assert result.record.status == "completed"
        finally:
            other.close()

        db.expire_all()
        assert db.get(Tenant, record.tenant_id).completed_contribution_count == 1


class TestRejectedCallback:
    """Tests for callbacks that must not be applied."""

    def test_forged_signature(self, db, reconciler, make_contribution, callback_body, caplog):
        """Test a callback signed with another secret is rejected before any lookup."""
        record = make_contribution()
        body = callback_body(REFERENCE)
        forged = SignatureVerifier("attacker-secret").compute(body)

        with caplog.at_level("WARNING", logger="offertory.security"):
            with pytest.raises(SignatureMismatch):
                reconciler.reconcile(body, forged)

        assert "invalid signature" in caplog.text
        db.expire_all()
        assert db.get(MonetaryRecord, record.id).status == "processing"

    def test_missing_signature(self, reconciler, make_contribution, callback_body):
        make_contribution()
        with pytest.raises(MissingSignature):
            reconciler.reconcile(callback_body(REFERENCE), None)

    def test_signature_checked_before_lookup(self, reconciler, callback_body):
        """Test an unknown reference with a bad signature reports the signature."""
        with pytest.raises(SignatureMismatch):
            reconciler.reconcile(callback_body("MNFY|unknown"), "0" * 128)

    def test_unknown_reference(self, reconciler, signed_callback):
        body, signature = signed_callback("MNFY|unknown")
        with pytest.raises(NotFound):
            reconciler.reconcile(body, signature)


class TestConflictingCallback:
    """Tests for callbacks that contradict a terminal state."""

    def test_failure_after_completion(
        self, db, reconciler, tenant, make_contribution, signed_callback
    ):
        """Test FAILED for a completed record raises and leaves record and totals alone."""
        record = make_contribution(amount=500_000)
        body, signature = signed_callback(REFERENCE, status="PAID")
        reconciler.reconcile(body, signature)

        body, signature = signed_callback(REFERENCE, status="FAILED")
        with pytest.raises(ReconciliationConflict) as exc_info:
            reconciler.reconcile(body, signature)

        assert exc_info.value.current_status == "completed"
        assert exc_info.value.reported_status == "FAILED"
        db.expire_all()
        assert db.get(MonetaryRecord, record.id).status == "completed"
        assert db.get(Tenant, tenant.id).total_contributions == 500_000

        actions = [entry.action for entry in AuditService.history(db, "monetary_record", record.id)]
        assert actions == ["transition", "reconciliation_conflict"]

    def test_success_after_cancellation(self, db, reconciler, make_contribution, signed_callback):
        """Test money arriving for a cancelled record goes to an operator."""
        record = make_contribution(status=PaymentStatus.CANCELLED)
        body, signature = signed_callback(REFERENCE, status="PAID")

        with pytest.raises(ReconciliationConflict):
            reconciler.reconcile(body, signature)

        conflicts = db.execute(
            select(AuditLog).where(AuditLog.action == "reconciliation_conflict")
        ).scalars().all()
        assert len(conflicts) == 1
        assert conflicts[0].entity_id == record.id
        assert conflicts[0].changes["paid_amount"] == 500_000


class TestEarlyCallback:
    """Tests for callbacks that overtake the initialization response."""

    def test_matched_on_payment_reference(self, db, reconciler, make_contribution, signed_callback):
        """Test a pending record without a gateway reference is found by our reference."""
        record = make_contribution(
            status=PaymentStatus.PENDING,
            external_reference=None,
            payment_reference="CON_early",
        )
        body, signature = signed_callback(REFERENCE, payment_reference="CON_early")

        result = reconciler.reconcile(body, signature)

        assert result.outcome is ReconciliationOutcome.APPLIED_SUCCESS
        db.expire_all()
        stored = db.get(MonetaryRecord, record.id)
        assert stored.status == "completed"
        assert stored.external_reference == REFERENCE
        assert isinstance(stored.paid_on, datetime)


class TestSharedReceiptPrefix:
    """Tests for tenants whose names give the same receipt prefix."""

    @pytest.fixture
    def sister_tenant(self, db):
        sister = Tenant(name="Grace Church", receipt_prefix=derive_prefix("Grace Church"))
        db.add(sister)
        db.commit()
        return sister

    def test_both_tenants_complete(
        self, db, reconciler, tenant, sister_tenant, make_contribution, signed_callback
    ):
        """Test each tenant's first completion gets its own first receipt."""
        assert sister_tenant.receipt_prefix == tenant.receipt_prefix
        first = make_contribution(external_reference="MNFY|grace|1")
        second = make_contribution(external_reference="MNFY|grace|2", tenant_id=sister_tenant.id)

        for reference in ("MNFY|grace|1", "MNFY|grace|2"):
            result = reconciler.reconcile(*signed_callback(reference))
            assert result.outcome is ReconciliationOutcome.APPLIED_SUCCESS

        db.expire_all()
        year = utcnow().year
        for record in (first, second):
            stored = db.get(MonetaryRecord, record.id)
            assert stored.status == "completed"
            assert stored.receipt_number == f"GRA{year}0001"

    def test_offline_contribution_for_second_tenant(
        self, db, settings, tenant, sister_tenant
    ):
        service = ContributionService(db, settings=settings)
        service.record_offline_contribution(tenant.id, 100_000)

        record = service.record_offline_contribution(sister_tenant.id, 100_000)

        assert record.status == "completed"
        assert record.receipt_number == f"GRA{utcnow().year}0001"
