"""Apply gateway payment callbacks to contributions.

Order of work for every delivery:
1. verify the signature over the raw body (before any lookup)
2. parse the payload
3. find the contribution by its gateway transaction reference
4. compare the reported outcome with the current state, then transition

Deliveries are at-least-once, so a callback that matches the state the
record is already in is acknowledged without touching anything. A callback
that contradicts a terminal state is written to the audit log and raised as
ReconciliationConflict for an operator.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from sqlalchemy import select
from sqlalchemy.orm import Session

from offertory.api.errors import (
    InvalidStateTransition,
    MalformedPayload,
    NotFound,
    ReconciliationConflict,
    SignatureMismatch,
)
from offertory.config import get_settings
from offertory.models.monetary_record import MonetaryRecord, PaymentStatus, RecordKind
from offertory.services.audit_service import AuditService
from offertory.services.logging import get_security_logger
from offertory.services.parsers import parse_gateway_timestamp, to_minor_units
from offertory.services.signature import SignatureVerifier
from offertory.services.state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
FAILED = "FAILED"

# Gateway status vocabulary folded onto the two outcomes we act on
_STATUS_ALIASES = {
    "SUCCESS": SUCCESS,
    "SUCCESSFUL": SUCCESS,
    "PAID": SUCCESS,
    "FAILED": FAILED,
    "FAILURE": FAILED,
    "EXPIRED": FAILED,
    "REVERSED": FAILED,
}


class GatewayCallback(BaseModel):
    """Payment outcome reported by the gateway."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    payment_reference: Optional[str] = Field(default=None, alias="paymentReference")
    transaction_reference: str = Field(..., alias="transactionReference", min_length=1)
    paid_amount: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("paidAmount", "paid_amount")
    )
    transaction_status: str = Field(
        ...,
        validation_alias=AliasChoices(
            "transactionStatus", "paymentStatus", "transaction_status"
        ),
    )
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    paid_on: Optional[datetime] = Field(default=None, alias="paidOn")
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")

    @field_validator("paid_amount", mode="before")
    @classmethod
    def _amount_to_minor_units(cls, value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        return to_minor_units(value)

    @model_validator(mode="after")
    def _check_paid_amount(self) -> "GatewayCallback":
        # Failed payments may report 0.00; a success must report money received
        if self.paid_amount is None:
            return self
        if self.paid_amount < 0:
            raise ValueError(f"paid amount cannot be negative, got {self.paid_amount}")
        if self.transaction_status == SUCCESS and self.paid_amount == 0:
            raise ValueError("successful payment reports a zero paid amount")
        return self

    @field_validator("transaction_status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        status = str(value or "").strip().upper()
        if status not in _STATUS_ALIASES:
            raise ValueError(f"unknown transaction status {value!r}")
        return _STATUS_ALIASES[status]

    @field_validator("paid_on", mode="before")
    @classmethod
    def _parse_paid_on(cls, value: Any) -> Optional[datetime]:
        if isinstance(value, str):
            return parse_gateway_timestamp(value)
        return value

    @classmethod
    def from_raw(cls, raw_body: bytes | str) -> "GatewayCallback":
        """Parse a callback body, unwrapping the {"eventType", "eventData"} envelope."""
        try:
            data = json.loads(raw_body)
        except (TypeError, ValueError) as e:
            raise MalformedPayload(f"Callback body is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedPayload("Callback body must be a JSON object")
        if isinstance(data.get("eventData"), dict):
            data = data["eventData"]
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            fields = ", ".join(
                ".".join(str(p) for p in err["loc"]) or err["msg"] for err in e.errors()
            )
            raise MalformedPayload(f"Invalid callback payload: {fields}") from e


class ReconciliationOutcome(str, Enum):
    APPLIED_SUCCESS = "applied_success"
    APPLIED_FAILURE = "applied_failure"
    DUPLICATE = "duplicate"


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    record: MonetaryRecord

    @property
    def applied(self) -> bool:
        return self.outcome is not ReconciliationOutcome.DUPLICATE


# Current state -> reported outcome that is a replay of what already happened
_ALREADY_APPLIED = {
    PaymentStatus.COMPLETED.value: SUCCESS,
    PaymentStatus.REFUNDED.value: SUCCESS,
    PaymentStatus.FAILED.value: FAILED,
}

_OPEN_STATES = {PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value}


class WebhookReconciler:
    """Single entry point for gateway callbacks."""

    def __init__(
        self,
        db: Session,
        verifier: Optional[SignatureVerifier] = None,
        state_machine: Optional[TransactionStateMachine] = None,
    ):
        self.db = db
        self.verifier = verifier or SignatureVerifier(get_settings().gateway_secret_key)
        self.state_machine = state_machine or TransactionStateMachine(db)

    def reconcile(self, raw_body: bytes | str, signature: Optional[str]) -> ReconciliationResult:
        """
        Verify and apply one callback delivery.

        Args:
            raw_body: Request body exactly as received
            signature: Value of the signature header

        Returns:
            ReconciliationResult; outcome DUPLICATE means nothing changed

        Raises:
            MissingSignature: If the signature header is absent
            SignatureMismatch: If the signature does not match the body
            MalformedPayload: If the body is not a valid callback
            NotFound: If no contribution carries the reference
            ReconciliationConflict: If the outcome contradicts the current state
        """
        if not self.verifier.verify(raw_body, signature):
            get_security_logger().warning(
                "Rejected gateway callback with invalid signature (%d bytes)",
                len(raw_body),
            )
            raise SignatureMismatch()

        callback = GatewayCallback.from_raw(raw_body)
        record = self._find_record(callback)
        reported = callback.transaction_status
        current = record.status

        if _ALREADY_APPLIED.get(current) == reported:
            logger.debug(
                "Duplicate %s callback for %s (record %s already %s)",
                reported,
                callback.transaction_reference,
                record.id,
                current,
            )
            return ReconciliationResult(ReconciliationOutcome.DUPLICATE, record)

        if current not in _OPEN_STATES:
            raise self._conflict(record, reported, callback)

        # Set when the record was matched on our own payment reference
        adopted_reference = (
            callback.transaction_reference if record.external_reference is None else None
        )

        try:
            if reported == SUCCESS:
                result = self.state_machine.transition(
                    record,
                    PaymentStatus.COMPLETED,
                    None,
                    paid_amount=callback.paid_amount,
                    payment_method=callback.payment_method,
                    paid_on=callback.paid_on,
                    transaction_hash=callback.transaction_hash,
                    external_reference=adopted_reference,
                )
                outcome = ReconciliationOutcome.APPLIED_SUCCESS
            else:
                result = self.state_machine.transition(
                    record,
                    PaymentStatus.FAILED,
                    None,
                    failure_reason=f"Gateway reported {reported}",
                    payment_method=callback.payment_method,
                    paid_on=callback.paid_on,
                    transaction_hash=callback.transaction_hash,
                    external_reference=adopted_reference,
                )
                outcome = ReconciliationOutcome.APPLIED_FAILURE
        except InvalidStateTransition:
            # Lost the race to a cancellation or an opposite callback
            raise self._conflict(record, reported, callback)

        if not result.applied:
            return ReconciliationResult(ReconciliationOutcome.DUPLICATE, result.record)

        logger.info(
            "Applied %s callback for %s: record %s is now %s",
            reported,
            callback.transaction_reference,
            record.id,
            record.status,
        )
        return ReconciliationResult(outcome, result.record)

    def _find_record(self, callback: GatewayCallback) -> MonetaryRecord:
        record = self.db.execute(
            select(MonetaryRecord).where(
                MonetaryRecord.external_reference == callback.transaction_reference,
                MonetaryRecord.kind == RecordKind.CONTRIBUTION.value,
            )
        ).scalar_one_or_none()
        if record is None and callback.payment_reference:
            # Callback overtook the initialization response; our own reference still matches
            record = self.db.execute(
                select(MonetaryRecord).where(
                    MonetaryRecord.payment_reference == callback.payment_reference,
                    MonetaryRecord.external_reference.is_(None),
                    MonetaryRecord.kind == RecordKind.CONTRIBUTION.value,
                )
            ).scalar_one_or_none()
        if record is None:
            raise NotFound(f"No contribution with reference '{callback.transaction_reference}'")
        return record

    def _conflict(
        self, record: MonetaryRecord, reported: str, callback: GatewayCallback
    ) -> ReconciliationConflict:
        """Record a conflict for operator review and build the error to raise."""
        AuditService.log(
            self.db,
            "monetary_record",
            record.id,
            "reconciliation_conflict",
            changes={
                "current_status": record.status,
                "reported_status": reported,
                "transaction_reference": callback.transaction_reference,
                "paid_amount": callback.paid_amount,
            },
        )
        self.db.commit()
        logger.error(
            "Reconciliation conflict for record %s: callback reports %s, record is %s",
            record.id,
            reported,
            record.status,
        )
        return ReconciliationConflict(record.id, record.status, reported)


__all__ = [
    "GatewayCallback",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "WebhookReconciler",
    "SUCCESS",
    "FAILED",
]
