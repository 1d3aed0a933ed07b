"""ReceiptSequence ORM model: per-tenant, per-year receipt counter."""

from sqlalchemy import ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from offertory.models import Base, BaseModel


class ReceiptSequence(Base, BaseModel):
    """Counter of receipts issued by a tenant in a calendar year.

    last_value is only advanced by an atomic UPDATE ... SET last_value =
    last_value + 1, inside the transaction that completes the record.
    """

    __tablename__ = "receipt_sequences"

    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("tenant_id", "year", name="uq_receipt_sequence"),)

    def __repr__(self) -> str:
        return (
            f"<ReceiptSequence(tenant_id={self.tenant_id}, year={self.year}, "
            f"last_value={self.last_value})>"
        )


__all__ = ["ReceiptSequence"]
