"""Receipt number generation.

Format: {tenant_prefix}{year}{sequence:04d}, e.g. GRA20250001. The sequence is
the tenant's per-year counter; it advances only inside the transaction that
wins the transition into completed, so losers of a race never consume one.
"""

import logging
import re

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from offertory.models.receipt_sequence import ReceiptSequence
from offertory.models.tenant import Tenant

logger = logging.getLogger(__name__)

PREFIX_LENGTH = 3


def derive_prefix(tenant_name: str) -> str:
    """Short deterministic code from a tenant name.

    Examples:
        >>> derive_prefix("Grace Chapel")
        'GRA'
        >>> derive_prefix("St. John's")
        'STJ'
        >>> derive_prefix("A1")
        'A1X'
    """
    letters = re.sub(r"[^A-Za-z0-9]", "", tenant_name or "").upper()
    return letters[:PREFIX_LENGTH].ljust(PREFIX_LENGTH, "X")


def format_receipt_number(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}{year}{sequence:04d}"


class ReceiptNumberService:
    """Allocate receipt numbers from the per-tenant, per-year counter."""

    def __init__(self, db: Session):
        self.db = db

    def _advance(self, tenant_id: int, year: int) -> int:
        result = self.db.execute(
            update(ReceiptSequence)
            .where(ReceiptSequence.tenant_id == tenant_id, ReceiptSequence.year == year)
            .values(last_value=ReceiptSequence.last_value + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def next_sequence(self, tenant_id: int, year: int) -> int:
        """
        Atomically take the next sequence value.

        Must run inside the caller's transaction; the counter row stays locked
        until that transaction ends.

        Args:
            tenant_id: Tenant ID
            year: Calendar year of the completion

        Returns:
            Sequence value, starting at 1 each year
        """
        if self._advance(tenant_id, year) == 0:
            try:
                with self.db.begin_nested():
                    self.db.add(ReceiptSequence(tenant_id=tenant_id, year=year, last_value=1))
                logger.info("Started receipt sequence for tenant %s year %s", tenant_id, year)
                return 1
            except IntegrityError:
                # Another transaction created the row first
                logger.debug("Receipt sequence row appeared concurrently, advancing it")
                self._advance(tenant_id, year)

        return self.db.execute(
            select(ReceiptSequence.last_value).where(
                ReceiptSequence.tenant_id == tenant_id, ReceiptSequence.year == year
            )
        ).scalar_one()

    def next_receipt_number(self, tenant: Tenant, year: int) -> str:
        """Allocate the next receipt number for tenant in year."""
        sequence = self.next_sequence(tenant.id, year)
        return format_receipt_number(tenant.receipt_prefix, year, sequence)


__all__ = ["ReceiptNumberService", "derive_prefix", "format_receipt_number", "PREFIX_LENGTH"]
