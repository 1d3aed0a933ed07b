"""MonetaryRecord ORM model for contributions, spend requests and ledger entries."""

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
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from offertory.models import Base, BaseModel


class RecordKind(str, Enum):
    """Kind of monetary record; selects the lifecycle that governs status."""

    CONTRIBUTION = "contribution"
    """Donation collected online or recorded offline (payment lifecycle)."""

    SPEND_REQUEST = "spend_request"
    """Expense awaiting approval and payout (approval lifecycle)."""

    LEDGER_ENTRY = "ledger_entry"
    """Manually entered record (approval lifecycle plus verification)."""

    REFUND = "refund"
    """Compensating record linked to a refunded contribution."""


class PaymentStatus(str, Enum):
    """Contribution lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class ApprovalStatus(str, Enum):
    """Spend request and ledger entry lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    CANCELLED = "cancelled"


class VerificationStatus(str, Enum):
    """Ledger entry verification states (orthogonal to status)."""

    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class VerificationMethod(str, Enum):
    """How a ledger entry was verified."""

    DOCUMENT = "document"
    WITNESS = "witness"
    BANK_STATEMENT = "bank-statement"
    RECEIPT = "receipt"
    OTHER = "other"


class Currency(str, Enum):
    """Supported currencies."""

    NGN = "NGN"
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"


class MonetaryRecord(Base, BaseModel):
    """Model representing a monetary record owned by a tenant.

    Status is written only by the transaction state machine, through a
    compare-and-set on (status, version). The amount never changes after
    creation; refunds create a separate REFUND record linked back through
    refund_of_id, and an approved amount is stored next to the requested one.

    Optional fields form a closed set per kind:
    - contribution: payment/gateway references, receipt, payment outcome
    - spend_request / ledger_entry: approval outcome
    - ledger_entry: verification and reconciliation
    - refund: refund_of_id, refund_reason
    """

    __tablename__ = "monetary_records"

    # Ownership and classification
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id"),
        nullable=False,
        index=True,
        comment="Owning tenant",
    )
    kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="contribution/spend_request/ledger_entry/refund",
    )
    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Amount in minor units, immutable",
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default=Currency.NGN.value)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.PENDING.value,
        comment="Lifecycle state; see state machine",
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Bumped on every applied transition",
    )

    # Weak references
    campaign_id: Mapped[int | None] = mapped_column(
        ForeignKey("campaigns.id"),
        nullable=True,
        index=True,
        comment="Campaign this record counts towards",
    )
    donor_id: Mapped[int | None] = mapped_column(Integer, nullable=True, comment="Member ID")
    donor_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    donor_email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actor_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Who triggered the latest terminal transition",
    )

    # Contribution: gateway data
    payment_reference: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True, comment="Our reference sent to the gateway"
    )
    external_reference: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True, comment="Gateway transaction reference"
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    checkout_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    paid_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    paid_on: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transaction_hash: Mapped[str | None] = mapped_column(String(256), nullable=True)
    receipt_number: Mapped[str | None] = mapped_column(
        String(32), nullable=True, comment="Assigned once on completion, unique per tenant"
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Spend request / ledger entry: approval
    approved_amount: Mapped[int | None] = mapped_column(
        BigInteger, nullable=True, comment="May differ from requested amount"
    )
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Ledger entry: verification and reconciliation
    verification_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    verification_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    verification_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reconciled_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reconciliation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    bank_statement_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Refund
    refund_of_id: Mapped[int | None] = mapped_column(
        ForeignKey("monetary_records.id"),
        nullable=True,
        index=True,
        comment="Contribution compensated by this refund",
    )
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    refund_of: Mapped["MonetaryRecord | None"] = relationship(
        "MonetaryRecord",
        remote_side="MonetaryRecord.id",
        foreign_keys=[refund_of_id],
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_record_idempotency"),
        UniqueConstraint("tenant_id", "receipt_number", name="uq_record_receipt"),
        Index("idx_record_tenant_kind_status", "tenant_id", "kind", "status"),
        Index("idx_record_tenant_created", "tenant_id", "created_at"),
        Index("idx_record_verification", "tenant_id", "verification_status"),
    )

    @property
    def effective_amount(self) -> int:
        """Approved amount when set, else the requested amount."""
        return self.approved_amount if self.approved_amount is not None else self.amount

    def __repr__(self) -> str:
        return (
            f"<MonetaryRecord(id={self.id}, tenant_id={self.tenant_id}, kind={self.kind}, "
            f"amount={self.amount}, status={self.status}, version={self.version})>"
        )


__all__ = [
    "MonetaryRecord",
    "RecordKind",
    "PaymentStatus",
    "ApprovalStatus",
    "VerificationStatus",
    "VerificationMethod",
    "Currency",
]
