"""SQLAlchemy base model with common fields and model exports."""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class BaseModel:
    """Base model with common timestamp fields."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# Import models to register them with Base (after Base is defined)
# This must be after Base declaration to avoid circular imports
from offertory.models.audit_log import AuditLog  # noqa: E402
from offertory.models.campaign import (  # noqa: E402
    Campaign,
    CampaignDonor,
    CampaignMilestone,
    CampaignStatus,
)
from offertory.models.entitlement import (  # noqa: E402
    BillingCycle,
    EntitlementStatus,
    EntitlementUsage,
    ResourceKind,
    TenantEntitlement,
)
from offertory.models.monetary_record import (  # noqa: E402
    ApprovalStatus,
    Currency,
    MonetaryRecord,
    PaymentStatus,
    RecordKind,
    VerificationMethod,
    VerificationStatus,
)
from offertory.models.receipt_sequence import ReceiptSequence  # noqa: E402
from offertory.models.tenant import Tenant  # noqa: E402

__all__ = [
    "Base",
    "BaseModel",
    "utcnow",
    "as_utc",
    "AuditLog",
    "Campaign",
    "CampaignDonor",
    "CampaignMilestone",
    "CampaignStatus",
    "BillingCycle",
    "EntitlementStatus",
    "EntitlementUsage",
    "ResourceKind",
    "TenantEntitlement",
    "ApprovalStatus",
    "Currency",
    "MonetaryRecord",
    "PaymentStatus",
    "RecordKind",
    "VerificationMethod",
    "VerificationStatus",
    "ReceiptSequence",
    "Tenant",
]
