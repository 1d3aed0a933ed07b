"""Spend request and manual ledger entry services.

Both kinds follow the approval lifecycle (pending -> approved | rejected,
approved -> paid, pre-terminal -> cancelled). Ledger entries additionally
carry a verification status and, once verified, a reconciliation flag.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from offertory.api.errors import NotFound
from offertory.config import Settings, get_settings
from offertory.models import as_utc, utcnow
from offertory.models.monetary_record import (
    ApprovalStatus,
    MonetaryRecord,
    RecordKind,
    VerificationMethod,
    VerificationStatus,
)
from offertory.models.tenant import Tenant
from offertory.services.audit_service import AuditService
from offertory.services.state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)


class ApprovalService:
    """Approval lifecycle operations shared by spend requests and ledger entries."""

    kind: RecordKind

    def __init__(
        self,
        db: Session,
        state_machine: Optional[TransactionStateMachine] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.state_machine = state_machine or TransactionStateMachine(db)

    def get(self, record_id: int) -> MonetaryRecord:
        record = self.db.get(MonetaryRecord, record_id)
        if record is None or record.kind != self.kind.value:
            raise NotFound(f"{self.kind.value} {record_id} not found")
        return record

    def _new_record(
        self,
        tenant_id: int,
        amount: int,
        category: str,
        description: Optional[str],
        currency: Optional[str],
        campaign_id: Optional[int],
        actor_id: Optional[int],
        **fields,
    ) -> MonetaryRecord:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"amount must be a positive integer of minor units, got {amount!r}")
        if self.db.get(Tenant, tenant_id) is None:
            raise NotFound(f"Tenant {tenant_id} not found")

        record = MonetaryRecord(
            tenant_id=tenant_id,
            kind=self.kind.value,
            amount=amount,
            currency=currency or self.settings.default_currency,
            category=category,
            description=description,
            status=ApprovalStatus.PENDING.value,
            version=1,
            campaign_id=campaign_id,
            created_by=actor_id,
            **fields,
        )
        self.db.add(record)
        self.db.flush()
        AuditService.log(
            self.db,
            "monetary_record",
            record.id,
            "create",
            actor_id=actor_id,
            changes={"kind": record.kind, "amount": amount, "category": category},
        )
        self.db.commit()
        logger.info("Created %s %s for tenant %s: %s", record.kind, record.id, tenant_id, amount)
        return record

    def approve(
        self,
        record_id: int,
        actor_id: Optional[int],
        approved_amount: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> MonetaryRecord:
        """
        Approve a pending request.

        approved_amount may differ from the requested amount; it is stored
        next to it and never replaces it.
        """
        record = self.get(record_id)
        self.state_machine.transition(
            record,
            ApprovalStatus.APPROVED,
            actor_id,
            approved_amount=approved_amount,
            approval_notes=notes,
        )
        return record

    def reject(self, record_id: int, actor_id: Optional[int], reason: str) -> MonetaryRecord:
        """Reject a pending request; a reason is required."""
        if not reason or not reason.strip():
            raise ValueError("A rejection reason is required")
        record = self.get(record_id)
        self.state_machine.transition(
            record, ApprovalStatus.REJECTED, actor_id, rejection_reason=reason.strip()
        )
        return record

    def mark_paid(self, record_id: int, actor_id: Optional[int]) -> MonetaryRecord:
        """Record payout of an approved request."""
        record = self.get(record_id)
        self.state_machine.transition(record, ApprovalStatus.PAID, actor_id)
        return record

    def cancel(self, record_id: int, actor_id: Optional[int]) -> MonetaryRecord:
        record = self.get(record_id)
        self.state_machine.transition(record, ApprovalStatus.CANCELLED, actor_id)
        return record

    def list_pending(self, tenant_id: int) -> list[MonetaryRecord]:
        """Requests awaiting approval, oldest first."""
        return list(
            self.db.execute(
                select(MonetaryRecord)
                .where(
                    MonetaryRecord.tenant_id == tenant_id,
                    MonetaryRecord.kind == self.kind.value,
                    MonetaryRecord.status == ApprovalStatus.PENDING.value,
                )
                .order_by(MonetaryRecord.created_at)
            ).scalars()
        )


class SpendRequestService(ApprovalService):
    """Create spend requests and move them through approval and payout."""

    kind = RecordKind.SPEND_REQUEST

    def create_spend_request(
        self,
        tenant_id: int,
        amount: int,
        category: str,
        *,
        description: Optional[str] = None,
        currency: Optional[str] = None,
        campaign_id: Optional[int] = None,
        actor_id: Optional[int] = None,
    ) -> MonetaryRecord:
        """Create a pending spend request for amount (minor units)."""
        return self._new_record(
            tenant_id, amount, category, description, currency, campaign_id, actor_id
        )


class LedgerEntryService(ApprovalService):
    """Manually entered records: approval plus verification and reconciliation."""

    kind = RecordKind.LEDGER_ENTRY

    def __init__(
        self,
        db: Session,
        state_machine: Optional[TransactionStateMachine] = None,
        settings: Optional[Settings] = None,
        overdue_after: Optional[timedelta] = None,
    ):
        super().__init__(db, state_machine, settings)
        if overdue_after is None:
            overdue_after = timedelta(days=self.settings.verification_overdue_days)
        self.overdue_after = overdue_after

    def create_ledger_entry(
        self,
        tenant_id: int,
        amount: int,
        category: str,
        *,
        description: Optional[str] = None,
        currency: Optional[str] = None,
        campaign_id: Optional[int] = None,
        bank_statement_reference: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> MonetaryRecord:
        """Create a pending ledger entry awaiting approval and verification."""
        return self._new_record(
            tenant_id,
            amount,
            category,
            description,
            currency,
            campaign_id,
            actor_id,
            verification_status=VerificationStatus.PENDING.value,
            is_reconciled=False,
            bank_statement_reference=bank_statement_reference,
        )

    def verify(
        self,
        record_id: int,
        actor_id: Optional[int],
        method: VerificationMethod | str,
        notes: Optional[str] = None,
    ) -> MonetaryRecord:
        """Mark the entry verified with how it was checked."""
        record = self.get(record_id)
        self.state_machine.verify(
            record,
            actor_id,
            VerificationStatus.VERIFIED,
            verification_method=method,
            verification_notes=notes,
        )
        return record

    def reject_verification(
        self, record_id: int, actor_id: Optional[int], notes: Optional[str] = None
    ) -> MonetaryRecord:
        record = self.get(record_id)
        self.state_machine.verify(
            record, actor_id, VerificationStatus.REJECTED, verification_notes=notes
        )
        return record

    def reconcile(
        self,
        record_id: int,
        actor_id: Optional[int],
        notes: Optional[str] = None,
        bank_statement_reference: Optional[str] = None,
    ) -> MonetaryRecord:
        """
        Set the reconciliation flag. Only verified entries can be reconciled.

        Raises:
            InvalidStateTransition: If the entry is not verified
        """
        record = self.get(record_id)
        self.state_machine.reconcile(
            record,
            actor_id,
            notes=notes,
            bank_statement_reference=bank_statement_reference or record.bank_statement_reference,
        )
        return record

    def is_verification_overdue(self, record: MonetaryRecord, now: Optional[datetime] = None) -> bool:
        """True when the entry has waited for verification longer than overdue_after."""
        if record.verification_status != VerificationStatus.PENDING.value:
            return False
        now = as_utc(now) if now else utcnow()
        return now - as_utc(record.created_at) > self.overdue_after

    def list_overdue_verifications(
        self, tenant_id: int, now: Optional[datetime] = None
    ) -> list[MonetaryRecord]:
        """Pending verifications older than overdue_after, oldest first."""
        now = as_utc(now) if now else utcnow()
        cutoff = now - self.overdue_after
        return list(
            self.db.execute(
                select(MonetaryRecord)
                .where(
                    MonetaryRecord.tenant_id == tenant_id,
                    MonetaryRecord.kind == RecordKind.LEDGER_ENTRY.value,
                    MonetaryRecord.verification_status == VerificationStatus.PENDING.value,
                    MonetaryRecord.created_at < cutoff,
                )
                .order_by(MonetaryRecord.created_at)
            ).scalars()
        )

    def list_unreconciled(self, tenant_id: int) -> list[MonetaryRecord]:
        """Verified entries not yet matched against a bank statement."""
        return list(
            self.db.execute(
                select(MonetaryRecord)
                .where(
                    MonetaryRecord.tenant_id == tenant_id,
                    MonetaryRecord.kind == RecordKind.LEDGER_ENTRY.value,
                    MonetaryRecord.verification_status == VerificationStatus.VERIFIED.value,
                    MonetaryRecord.is_reconciled.is_(False),
                )
                .order_by(MonetaryRecord.created_at)
            ).scalars()
        )


__all__ = ["ApprovalService", "SpendRequestService", "LedgerEntryService"]
