"""Lifecycle rules for monetary records.

Three lifecycles are declared as edge tables:

- PAYMENT_LIFECYCLE governs contributions:
  pending -> processing -> completed | failed, completed -> refunded, and any
  pre-terminal state -> cancelled. A pending contribution may also complete
  or fail directly (offline payments, callbacks that arrive before the
  initialization response).
- APPROVAL_LIFECYCLE governs spend requests and ledger entries:
  pending -> approved | rejected, approved -> paid, pre-terminal -> cancelled.
- VERIFICATION_LIFECYCLE governs a ledger entry's verification_status:
  pending -> verified | rejected. Once verified the entry may be reconciled.

plan_transition() is pure: it looks at a record and returns the field values
to write plus the side effects to run, without touching the database.
TransactionStateMachine.transition() applies a plan with a compare-and-set
UPDATE on (status, version), so of two concurrent attempts exactly one
writes and the other sees a no-op or an InvalidStateTransition.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from offertory.api.errors import InvalidStateTransition
from offertory.models import as_utc, utcnow
from offertory.models.monetary_record import (
    ApprovalStatus,
    MonetaryRecord,
    PaymentStatus,
    RecordKind,
    VerificationMethod,
    VerificationStatus,
)
from offertory.models.tenant import Tenant
from offertory.services.audit_service import AuditService
from offertory.services.ledger_aggregator import LedgerAggregator
from offertory.services.notification_service import NotificationService
from offertory.services.receipts import ReceiptNumberService

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3


class EffectKind(str, Enum):
    """Work that follows an applied transition."""

    ASSIGN_RECEIPT = "assign_receipt"
    AGGREGATE_CONTRIBUTION = "aggregate_contribution"
    AGGREGATE_REFUND = "aggregate_refund"
    NOTIFY = "notify"


@dataclass(frozen=True)
class SideEffect:
    kind: EffectKind
    event: str | None = None


@dataclass(frozen=True)
class Lifecycle:
    """Edge table plus the per-target fields a transition writes."""

    name: str
    field: str
    edges: Mapping[str, frozenset[str]]
    timestamps: Mapping[str, str]
    side_fields: Mapping[str, frozenset[str]]

    def allowed_from(self, state: str | None) -> frozenset[str]:
        return self.edges.get(state, frozenset())

    def is_terminal(self, state: str | None) -> bool:
        return not self.allowed_from(state)


PAYMENT_LIFECYCLE = Lifecycle(
    name="payment",
    field="status",
    edges={
        PaymentStatus.PENDING.value: frozenset(
            {
                PaymentStatus.PROCESSING.value,
                PaymentStatus.COMPLETED.value,
                PaymentStatus.FAILED.value,
                PaymentStatus.CANCELLED.value,
            }
        ),
        PaymentStatus.PROCESSING.value: frozenset(
            {
                PaymentStatus.COMPLETED.value,
                PaymentStatus.FAILED.value,
                PaymentStatus.CANCELLED.value,
            }
        ),
        PaymentStatus.COMPLETED.value: frozenset({PaymentStatus.REFUNDED.value}),
    },
    timestamps={
        PaymentStatus.PROCESSING.value: "processing_at",
        PaymentStatus.COMPLETED.value: "completed_at",
        PaymentStatus.FAILED.value: "failed_at",
        PaymentStatus.CANCELLED.value: "cancelled_at",
        PaymentStatus.REFUNDED.value: "refunded_at",
    },
    side_fields={
        PaymentStatus.PROCESSING.value: frozenset({"external_reference", "checkout_url"}),
        PaymentStatus.COMPLETED.value: frozenset(
            {"paid_amount", "payment_method", "paid_on", "transaction_hash", "external_reference"}
        ),
        PaymentStatus.FAILED.value: frozenset(
            {
                "failure_reason",
                "payment_method",
                "paid_on",
                "transaction_hash",
                "external_reference",
            }
        ),
    },
)

APPROVAL_LIFECYCLE = Lifecycle(
    name="approval",
    field="status",
    edges={
        ApprovalStatus.PENDING.value: frozenset(
            {
                ApprovalStatus.APPROVED.value,
                ApprovalStatus.REJECTED.value,
                ApprovalStatus.CANCELLED.value,
            }
        ),
        ApprovalStatus.APPROVED.value: frozenset(
            {ApprovalStatus.PAID.value, ApprovalStatus.CANCELLED.value}
        ),
    },
    timestamps={
        ApprovalStatus.APPROVED.value: "approved_at",
        ApprovalStatus.REJECTED.value: "rejected_at",
        ApprovalStatus.PAID.value: "paid_at",
        ApprovalStatus.CANCELLED.value: "cancelled_at",
    },
    side_fields={
        ApprovalStatus.APPROVED.value: frozenset({"approved_amount", "approval_notes"}),
        ApprovalStatus.REJECTED.value: frozenset({"rejection_reason"}),
    },
)

VERIFICATION_LIFECYCLE = Lifecycle(
    name="verification",
    field="verification_status",
    edges={
        VerificationStatus.PENDING.value: frozenset(
            {VerificationStatus.VERIFIED.value, VerificationStatus.REJECTED.value}
        ),
    },
    timestamps={
        VerificationStatus.VERIFIED.value: "verified_at",
        VerificationStatus.REJECTED.value: "verified_at",
    },
    side_fields={
        VerificationStatus.VERIFIED.value: frozenset({"verification_method", "verification_notes"}),
        VerificationStatus.REJECTED.value: frozenset({"verification_notes"}),
    },
)

_STATUS_LIFECYCLES = {
    RecordKind.CONTRIBUTION.value: PAYMENT_LIFECYCLE,
    RecordKind.SPEND_REQUEST.value: APPROVAL_LIFECYCLE,
    RecordKind.LEDGER_ENTRY.value: APPROVAL_LIFECYCLE,
}


# Side data that a replay must repeat unchanged to count as a no-op
DECISION_FIELDS = ("approved_amount", "rejection_reason", "verification_method")


def lifecycle_for(record: MonetaryRecord) -> Lifecycle | None:
    """Status lifecycle for the record's kind. Refund records have none."""
    return _STATUS_LIFECYCLES.get(record.kind)


@dataclass(frozen=True)
class TransitionPlan:
    """Field values and side effects for one transition, or a no-op."""

    lifecycle: Lifecycle
    from_state: str
    to_state: str
    values: Mapping[str, Any] = field(default_factory=dict)
    effects: tuple[SideEffect, ...] = ()
    noop: bool = False


@dataclass
class TransitionResult:
    record: MonetaryRecord
    applied: bool
    from_state: str
    to_state: str
    effects: tuple[SideEffect, ...] = ()


def _effects_for(record: MonetaryRecord, lifecycle: Lifecycle, target: str) -> tuple[SideEffect, ...]:
    if lifecycle is VERIFICATION_LIFECYCLE:
        event = "verified" if target == VerificationStatus.VERIFIED.value else "verification_rejected"
        return (SideEffect(EffectKind.NOTIFY, f"{record.kind}.{event}"),)

    effects = []
    if lifecycle is PAYMENT_LIFECYCLE:
        if target == PaymentStatus.COMPLETED.value:
            if record.receipt_number is None:
                effects.append(SideEffect(EffectKind.ASSIGN_RECEIPT))
            effects.append(SideEffect(EffectKind.AGGREGATE_CONTRIBUTION))
        elif target == PaymentStatus.REFUNDED.value:
            effects.append(SideEffect(EffectKind.AGGREGATE_REFUND))
    if target != PaymentStatus.PROCESSING.value:
        effects.append(SideEffect(EffectKind.NOTIFY, f"{record.kind}.{target}"))
    return tuple(effects)


def _check_side_data(record: MonetaryRecord, target: str, side_data: dict[str, Any]) -> None:
    if "approved_amount" in side_data and side_data["approved_amount"] is not None:
        approved = side_data["approved_amount"]
        if isinstance(approved, bool) or not isinstance(approved, int) or approved <= 0:
            raise ValueError(f"approved_amount must be a positive integer, got {approved!r}")
    if "verification_method" in side_data and side_data["verification_method"] is not None:
        method = getattr(side_data["verification_method"], "value", side_data["verification_method"])
        if method not in {m.value for m in VerificationMethod}:
            raise ValueError(f"Unknown verification method {method!r}")
        side_data["verification_method"] = method
    if "paid_amount" in side_data and side_data["paid_amount"] is not None:
        if side_data["paid_amount"] != record.amount:
            logger.warning(
                "Record %s paid %s against requested amount %s",
                record.id,
                side_data["paid_amount"],
                record.amount,
            )


def _replay_differs(record: MonetaryRecord, side_data: dict[str, Any]) -> bool:
    """True when a repeated transition carries a different decision than the one stored."""
    for name in DECISION_FIELDS:
        value = side_data.get(name)
        if value is not None and getattr(value, "value", value) != getattr(record, name):
            return True
    return False


def plan_transition(
    record: MonetaryRecord,
    target: str | Enum,
    actor_id: int | None,
    now: datetime,
    lifecycle: Lifecycle | None = None,
    **side_data: Any,
) -> TransitionPlan:
    """
    Work out what moving record to target means, without writing anything.

    Args:
        record: Current record state
        target: Intended next state
        actor_id: Who triggers the transition (None for the gateway)
        now: Transition timestamp
        lifecycle: Lifecycle to use; defaults to the record kind's status lifecycle
        **side_data: Target-specific fields (approved_amount, failure_reason, ...)

    Returns:
        TransitionPlan; plan.noop is True when the record is already in target

    Raises:
        InvalidStateTransition: If the edge is not legal from the current state,
            or a repeat of the current state carries a different decision
        TypeError: If side_data carries fields the target does not accept
    """
    target = getattr(target, "value", target)
    lifecycle = lifecycle or lifecycle_for(record)
    entity = record.kind
    if lifecycle is None:
        raise InvalidStateTransition(entity, record.status, target)

    current = getattr(record, lifecycle.field)
    if current == target:
        if _replay_differs(record, side_data):
            raise InvalidStateTransition(entity, current, target)
        return TransitionPlan(lifecycle, current, target, noop=True)

    allowed = lifecycle.allowed_from(current)
    if target not in allowed:
        raise InvalidStateTransition(entity, current, target, list(allowed))

    accepted = lifecycle.side_fields.get(target, frozenset())
    unexpected = set(side_data) - accepted
    if unexpected:
        raise TypeError(f"Transition to '{target}' does not accept {sorted(unexpected)}")
    side_data = {k: v for k, v in side_data.items() if v is not None}
    _check_side_data(record, target, side_data)

    values: dict[str, Any] = {
        lifecycle.field: target,
        "version": record.version + 1,
        "updated_at": now,
        lifecycle.timestamps[target]: now,
    }
    if lifecycle is VERIFICATION_LIFECYCLE:
        values["verified_by"] = actor_id
    elif target != PaymentStatus.PROCESSING.value:
        values["actor_id"] = actor_id
    values.update(side_data)

    return TransitionPlan(
        lifecycle,
        current,
        target,
        values=values,
        effects=_effects_for(record, lifecycle, target),
    )


class TransactionStateMachine:
    """Apply transitions to monetary records atomically.

    The machine owns every write to status, verification_status and
    is_reconciled. Side effects run inside the same database transaction as
    the compare-and-set, except notifications which are published after
    commit.
    """

    def __init__(
        self,
        db: Session,
        aggregator: LedgerAggregator | None = None,
        notifier: NotificationService | None = None,
    ):
        self.db = db
        self.aggregator = aggregator or LedgerAggregator(db)
        self.notifier = notifier or NotificationService()

    def transition(
        self,
        record: MonetaryRecord,
        target: str | Enum,
        actor_id: int | None = None,
        *,
        commit: bool = True,
        lifecycle: Lifecycle | None = None,
        **side_data: Any,
    ) -> TransitionResult:
        """
        Move record to target.

        Re-applying a transition the record already went through returns a
        no-op result. A lost race re-reads the row and plans again from the
        winner's state.

        Args:
            record: Record to move (attached to this session)
            target: Intended next state
            actor_id: Who triggers the transition
            commit: Commit and publish notifications when done. With False the
                caller owns the transaction: it commits and then calls
                dispatch_notifications(), and a lost race never rolls back
                its pending work.
            lifecycle: Lifecycle override (verification)
            **side_data: Target-specific fields

        Returns:
            TransitionResult(record, applied, from_state, to_state, effects)

        Raises:
            InvalidStateTransition: If the edge is not legal from the state
                the record is in when the write is attempted
        """
        target = getattr(target, "value", target)

        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            plan = plan_transition(
                record, target, actor_id, utcnow(), lifecycle=lifecycle, **side_data
            )
            if plan.noop:
                logger.debug(
                    "Record %s already %s, transition is a no-op", record.id, plan.to_state
                )
                return TransitionResult(record, False, plan.from_state, plan.to_state)

            if self._compare_and_set(record, plan):
                break

            logger.info(
                "Record %s changed concurrently (attempt %s), re-reading", record.id, attempt
            )
            self._reread(record, commit)
        else:
            current = getattr(record, (lifecycle or lifecycle_for(record)).field)
            raise InvalidStateTransition(record.kind, current, target)

        receipt_number = self._run_effects(record, plan)
        AuditService.log(
            self.db,
            "monetary_record",
            record.id,
            "transition",
            actor_id=actor_id,
            changes={
                "field": plan.lifecycle.field,
                "from": plan.from_state,
                "to": plan.to_state,
                "receipt_number": receipt_number,
            },
        )
        logger.info(
            "Record %s (%s) %s: %s -> %s",
            record.id,
            record.kind,
            plan.lifecycle.field,
            plan.from_state,
            plan.to_state,
        )

        result = TransitionResult(record, True, plan.from_state, plan.to_state, plan.effects)
        if commit:
            self.db.commit()
            self.dispatch_notifications(result)
        return result

    def verify(
        self,
        record: MonetaryRecord,
        actor_id: int | None,
        target: str | Enum = VerificationStatus.VERIFIED,
        *,
        commit: bool = True,
        **side_data: Any,
    ) -> TransitionResult:
        """Move a ledger entry's verification_status (verified or rejected)."""
        if record.kind != RecordKind.LEDGER_ENTRY.value:
            raise InvalidStateTransition(
                record.kind, str(record.verification_status), str(getattr(target, "value", target))
            )
        return self.transition(
            record,
            target,
            actor_id,
            commit=commit,
            lifecycle=VERIFICATION_LIFECYCLE,
            **side_data,
        )

    def reconcile(
        self,
        record: MonetaryRecord,
        actor_id: int | None,
        notes: str | None = None,
        bank_statement_reference: str | None = None,
        *,
        commit: bool = True,
    ) -> TransitionResult:
        """
        Set the reconciliation flag on a verified ledger entry.

        Returns a no-op result when the entry is already reconciled.

        Raises:
            InvalidStateTransition: If the entry is not verified
        """
        if record.kind != RecordKind.LEDGER_ENTRY.value or (
            record.verification_status != VerificationStatus.VERIFIED.value
        ):
            raise InvalidStateTransition(
                f"{record.kind} reconciliation",
                str(record.verification_status),
                "reconciled",
                [VerificationStatus.VERIFIED.value],
            )
        if record.is_reconciled:
            logger.debug("Record %s already reconciled", record.id)
            return TransitionResult(record, False, "reconciled", "reconciled")

        now = utcnow()
        values = {
            "is_reconciled": True,
            "reconciled_at": now,
            "reconciled_by": actor_id,
            "reconciliation_notes": notes,
            "bank_statement_reference": bank_statement_reference,
            "version": record.version + 1,
            "updated_at": now,
        }
        rowcount = self.db.execute(
            update(MonetaryRecord)
            .where(
                MonetaryRecord.id == record.id,
                MonetaryRecord.verification_status == VerificationStatus.VERIFIED.value,
                MonetaryRecord.is_reconciled.is_(False),
                MonetaryRecord.version == record.version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if rowcount == 0:
            self._reread(record, commit)
            if record.is_reconciled:
                return TransitionResult(record, False, "reconciled", "reconciled")
            return self.reconcile(record, actor_id, notes, bank_statement_reference, commit=commit)

        for key, value in values.items():
            set_committed_value(record, key, value)
        AuditService.log(
            self.db,
            "monetary_record",
            record.id,
            "reconcile",
            actor_id=actor_id,
            changes={"bank_statement_reference": bank_statement_reference},
        )
        logger.info("Record %s reconciled by %s", record.id, actor_id)

        effects = (SideEffect(EffectKind.NOTIFY, f"{record.kind}.reconciled"),)
        result = TransitionResult(record, True, "unreconciled", "reconciled", effects)
        if commit:
            self.db.commit()
            self.dispatch_notifications(result)
        return result

    def _reread(self, record: MonetaryRecord, commit: bool) -> None:
        """Reload record after a lost compare-and-set."""
        if commit:
            # Our own transaction; start a fresh one to see the winner
            self.db.rollback()
        self.db.refresh(record)

    def dispatch_notifications(self, result: TransitionResult) -> None:
        """Publish the notify effects of an applied, committed transition."""
        if not result.applied:
            return
        record = result.record
        for effect in result.effects:
            if effect.kind is EffectKind.NOTIFY:
                self.notifier.publish(
                    effect.event,
                    {
                        "record_id": record.id,
                        "tenant_id": record.tenant_id,
                        "kind": record.kind,
                        "from": result.from_state,
                        "to": result.to_state,
                        "amount": record.amount,
                        "receipt_number": record.receipt_number,
                    },
                )

    def _compare_and_set(self, record: MonetaryRecord, plan: TransitionPlan) -> bool:
        state_column = getattr(MonetaryRecord, plan.lifecycle.field)
        rowcount = self.db.execute(
            update(MonetaryRecord)
            .where(
                MonetaryRecord.id == record.id,
                state_column == plan.from_state,
                MonetaryRecord.version == record.version,
            )
            .values(**plan.values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if rowcount == 0:
            return False

        for key, value in plan.values.items():
            set_committed_value(record, key, value)
        return True

    def _run_effects(self, record: MonetaryRecord, plan: TransitionPlan) -> str | None:
        receipt_number = None
        for effect in plan.effects:
            if effect.kind is EffectKind.ASSIGN_RECEIPT:
                receipt_number = self._assign_receipt(record)
            elif effect.kind is EffectKind.AGGREGATE_CONTRIBUTION:
                self.aggregator.apply_contribution(record)
            elif effect.kind is EffectKind.AGGREGATE_REFUND:
                self.aggregator.apply_refund(record)
        return receipt_number

    def _assign_receipt(self, record: MonetaryRecord) -> str:
        tenant = self.db.get(Tenant, record.tenant_id)
        year = as_utc(record.completed_at).year
        receipt_number = ReceiptNumberService(self.db).next_receipt_number(tenant, year)
        self.db.execute(
            update(MonetaryRecord)
            .where(MonetaryRecord.id == record.id, MonetaryRecord.receipt_number.is_(None))
            .values(receipt_number=receipt_number)
            .execution_options(synchronize_session=False)
        )
        set_committed_value(record, "receipt_number", receipt_number)
        logger.info("Record %s assigned receipt %s", record.id, receipt_number)
        return receipt_number


__all__ = [
    "TransactionStateMachine",
    "TransitionPlan",
    "TransitionResult",
    "SideEffect",
    "EffectKind",
    "Lifecycle",
    "PAYMENT_LIFECYCLE",
    "APPROVAL_LIFECYCLE",
    "VERIFICATION_LIFECYCLE",
    "lifecycle_for",
    "plan_transition",
]
