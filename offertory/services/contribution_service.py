"""Contribution service: online collection, offline recording, cancellation, refunds."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from offertory.api.errors import GatewayError, GatewayTimeout, InvalidStateTransition, NotFound
from offertory.config import Settings, get_settings
from offertory.models import utcnow
from offertory.models.campaign import Campaign, CampaignStatus
from offertory.models.monetary_record import MonetaryRecord, PaymentStatus, RecordKind
from offertory.models.tenant import Tenant
from offertory.services.audit_service import AuditService
from offertory.services.gateway import PaymentGateway, PaymentInitRequest
from offertory.services.state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)

PAYMENT_REFERENCE_PREFIX = "CON_"
ANONYMOUS_DONOR = "Anonymous Donor"


@dataclass
class CancellationResult:
    """Outcome of a user cancellation.

    conflict is True when another transition (usually a gateway callback)
    reached the record first; the caller reports it instead of failing.
    """

    record: MonetaryRecord
    cancelled: bool
    conflict: bool = False
    message: Optional[str] = None


class ContributionService:
    """Service for contribution records."""

    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGateway] = None,
        state_machine: Optional[TransactionStateMachine] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self._gateway = gateway
        self.state_machine = state_machine or TransactionStateMachine(db)

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = PaymentGateway(self.settings)
        return self._gateway

    def get(self, record_id: int) -> MonetaryRecord:
        """Contribution by ID. Raises NotFound."""
        record = self.db.get(MonetaryRecord, record_id)
        if record is None or record.kind != RecordKind.CONTRIBUTION.value:
            raise NotFound(f"Contribution {record_id} not found")
        return record

    def get_by_external_reference(self, external_reference: str) -> MonetaryRecord:
        """Contribution by gateway transaction reference. Raises NotFound."""
        record = self.db.execute(
            select(MonetaryRecord).where(
                MonetaryRecord.external_reference == external_reference,
                MonetaryRecord.kind == RecordKind.CONTRIBUTION.value,
            )
        ).scalar_one_or_none()
        if record is None:
            raise NotFound(f"No contribution with reference '{external_reference}'")
        return record

    def _get_by_idempotency_key(self, tenant_id: int, key: str) -> Optional[MonetaryRecord]:
        return self.db.execute(
            select(MonetaryRecord).where(
                MonetaryRecord.tenant_id == tenant_id,
                MonetaryRecord.idempotency_key == key,
            )
        ).scalar_one_or_none()

    def _require_tenant(self, tenant_id: int) -> Tenant:
        tenant = self.db.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFound(f"Tenant {tenant_id} not found")
        return tenant

    def _require_campaign(self, tenant_id: int, campaign_id: Optional[int]) -> Optional[Campaign]:
        if campaign_id is None:
            return None
        campaign = self.db.get(Campaign, campaign_id)
        if (
            campaign is None
            or campaign.tenant_id != tenant_id
            or campaign.status != CampaignStatus.ACTIVE.value
        ):
            raise NotFound(f"Active campaign {campaign_id} not found")
        return campaign

    def initialize_online_contribution(
        self,
        tenant_id: int,
        amount: int,
        currency: Optional[str] = None,
        category: str = "offering",
        *,
        campaign_id: Optional[int] = None,
        donor_id: Optional[int] = None,
        donor_name: Optional[str] = None,
        donor_email: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> MonetaryRecord:
        """
        Create a pending contribution and start collection at the gateway.

        Calls with the same idempotency_key return the same record; a record
        left pending by an earlier timeout is handed to the gateway again.

        Args:
            tenant_id: Receiving tenant
            amount: Minor units, > 0
            currency: Defaults to the configured currency
            category: Contribution category ("offering", "tithe", ...)
            campaign_id: Campaign the contribution counts towards
            idempotency_key: Client-supplied retry token

        Returns:
            The contribution, processing on success

        Raises:
            NotFound: If tenant or campaign does not exist
            GatewayTimeout: Record stays pending; retry with the same key
            GatewayError: Record has been moved to failed
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"amount must be a positive integer of minor units, got {amount!r}")

        tenant = self._require_tenant(tenant_id)

        if idempotency_key:
            existing = self._get_by_idempotency_key(tenant_id, idempotency_key)
            if existing is not None:
                return self._resume(existing, tenant, actor_id)

        self._require_campaign(tenant_id, campaign_id)

        record = MonetaryRecord(
            tenant_id=tenant_id,
            kind=RecordKind.CONTRIBUTION.value,
            amount=amount,
            currency=currency or self.settings.default_currency,
            category=category,
            description=description,
            status=PaymentStatus.PENDING.value,
            version=1,
            campaign_id=campaign_id,
            donor_id=donor_id,
            donor_name=donor_name,
            donor_email=donor_email,
            created_by=actor_id,
            payment_reference=f"{PAYMENT_REFERENCE_PREFIX}{uuid.uuid4().hex}",
            idempotency_key=idempotency_key,
            payment_method="online",
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            # Same idempotency key created concurrently
            self.db.rollback()
            existing = self._get_by_idempotency_key(tenant_id, idempotency_key)
            if existing is None:
                raise
            return self._resume(existing, tenant, actor_id)

        logger.info(
            "Created contribution %s for tenant %s: %s %s",
            record.id,
            tenant_id,
            amount,
            record.currency,
        )
        return self._start_collection(record, tenant, actor_id)

    def _resume(self, record: MonetaryRecord, tenant: Tenant, actor_id: Optional[int]) -> MonetaryRecord:
        if record.status == PaymentStatus.PENDING.value and record.external_reference is None:
            logger.info("Retrying gateway initialization for contribution %s", record.id)
            return self._start_collection(record, tenant, actor_id)
        logger.debug("Idempotent replay for contribution %s (%s)", record.id, record.status)
        return record

    def _start_collection(
        self, record: MonetaryRecord, tenant: Tenant, actor_id: Optional[int]
    ) -> MonetaryRecord:
        request = PaymentInitRequest(
            amount=record.amount,
            currency=record.currency,
            payment_reference=record.payment_reference,
            customer_name=record.donor_name or ANONYMOUS_DONOR,
            customer_email=record.donor_email or "",
            description=record.description or f"Contribution to {tenant.name}",
            metadata={"tenant_id": tenant.id, "record_id": record.id},
        )

        try:
            response = self.gateway.initialize_payment(request)
        except GatewayTimeout:
            logger.warning("Contribution %s left pending after gateway timeout", record.id)
            raise
        except GatewayError as e:
            try:
                self.state_machine.transition(
                    record, PaymentStatus.FAILED, actor_id, failure_reason=e.message
                )
            except InvalidStateTransition:
                logger.warning(
                    "Contribution %s already %s when initialization failed", record.id, record.status
                )
            raise

        try:
            self.state_machine.transition(
                record,
                PaymentStatus.PROCESSING,
                actor_id,
                external_reference=response.transaction_reference,
                checkout_url=response.checkout_url,
            )
        except InvalidStateTransition:
            # The callback beat the initialization response
            logger.info(
                "Contribution %s already %s before initialization returned", record.id, record.status
            )
        return record

    def record_offline_contribution(
        self,
        tenant_id: int,
        amount: int,
        currency: Optional[str] = None,
        category: str = "offering",
        *,
        payment_method: str = "cash",
        campaign_id: Optional[int] = None,
        donor_id: Optional[int] = None,
        donor_name: Optional[str] = None,
        donor_email: Optional[str] = None,
        description: Optional[str] = None,
        paid_on: Optional[datetime] = None,
        actor_id: Optional[int] = None,
    ) -> MonetaryRecord:
        """
        Record a cash or bank-transfer contribution received by staff.

        The contribution completes immediately: it gets a receipt number and
        counts towards its campaign.

        Raises:
            NotFound: If tenant or campaign does not exist
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"amount must be a positive integer of minor units, got {amount!r}")

        self._require_tenant(tenant_id)
        self._require_campaign(tenant_id, campaign_id)

        record = MonetaryRecord(
            tenant_id=tenant_id,
            kind=RecordKind.CONTRIBUTION.value,
            amount=amount,
            currency=currency or self.settings.default_currency,
            category=category,
            description=description,
            status=PaymentStatus.PENDING.value,
            version=1,
            campaign_id=campaign_id,
            donor_id=donor_id,
            donor_name=donor_name,
            donor_email=donor_email,
            created_by=actor_id,
            payment_reference=f"{PAYMENT_REFERENCE_PREFIX}{uuid.uuid4().hex}",
        )
        self.db.add(record)
        self.db.commit()

        self.state_machine.transition(
            record,
            PaymentStatus.COMPLETED,
            actor_id,
            paid_amount=amount,
            payment_method=payment_method,
            paid_on=paid_on or utcnow(),
        )
        return record

    def cancel_contribution(self, record_id: int, actor_id: Optional[int]) -> CancellationResult:
        """
        Cancel a contribution that has not been confirmed yet.

        A lost race against a gateway callback is reported through
        CancellationResult.conflict rather than raised.

        Raises:
            NotFound: If the contribution does not exist
        """
        record = self.get(record_id)
        try:
            result = self.state_machine.transition(record, PaymentStatus.CANCELLED, actor_id)
        except InvalidStateTransition as e:
            logger.info("Cancellation of contribution %s lost to %s", record.id, record.status)
            return CancellationResult(record, cancelled=False, conflict=True, message=e.message)
        return CancellationResult(record, cancelled=result.applied)

    def refund_contribution(
        self, record_id: int, actor_id: Optional[int], reason: Optional[str] = None
    ) -> MonetaryRecord:
        """
        Refund a completed contribution in full.

        The contribution moves to refunded and a REFUND record linked through
        refund_of_id carries the compensating amount. The original amount is
        never touched. Refunding twice returns the existing refund record.

        Returns:
            The refund record

        Raises:
            NotFound: If the contribution does not exist
            InvalidStateTransition: If the contribution is not completed
        """
        record = self.get(record_id)
        result = self.state_machine.transition(record, PaymentStatus.REFUNDED, actor_id, commit=False)
        if not result.applied:
            existing = self.db.execute(
                select(MonetaryRecord).where(
                    MonetaryRecord.refund_of_id == record.id,
                    MonetaryRecord.kind == RecordKind.REFUND.value,
                )
            ).scalar_one_or_none()
            if existing is None:
                raise NotFound(f"Refund record for contribution {record.id} not found")
            return existing

        now = utcnow()
        refund = MonetaryRecord(
            tenant_id=record.tenant_id,
            kind=RecordKind.REFUND.value,
            amount=record.amount,
            currency=record.currency,
            category=record.category,
            description=f"Refund of {record.receipt_number or record.payment_reference}",
            status=PaymentStatus.COMPLETED.value,
            version=1,
            campaign_id=record.campaign_id,
            donor_id=record.donor_id,
            donor_name=record.donor_name,
            created_by=actor_id,
            actor_id=actor_id,
            completed_at=now,
            refund_of_id=record.id,
            refund_reason=reason,
        )
        self.db.add(refund)
        self.db.flush()

        AuditService.log(
            self.db,
            "monetary_record",
            record.id,
            "refund",
            actor_id=actor_id,
            changes={"refund_record_id": refund.id, "amount": refund.amount, "reason": reason},
        )
        self.db.commit()
        self.state_machine.dispatch_notifications(result)

        logger.info("Refunded contribution %s as record %s", record.id, refund.id)
        return refund

    def list_stale_pending(
        self, older_than: Optional[timedelta] = None, now: Optional[datetime] = None
    ) -> list[MonetaryRecord]:
        """
        Contributions still awaiting confirmation after older_than.

        Covers pending (initialization timed out) and processing (callback
        never arrived) records, oldest first, for the out-of-band sweep.
        """
        if older_than is None:
            older_than = timedelta(minutes=self.settings.stale_pending_after_minutes)
        cutoff = (now or utcnow()) - older_than
        return list(
            self.db.execute(
                select(MonetaryRecord)
                .where(
                    MonetaryRecord.kind == RecordKind.CONTRIBUTION.value,
                    MonetaryRecord.status.in_(
                        [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value]
                    ),
                    MonetaryRecord.created_at <= cutoff,
                )
                .order_by(MonetaryRecord.created_at)
            ).scalars()
        )


__all__ = ["ContributionService", "CancellationResult", "PAYMENT_REFERENCE_PREFIX"]
