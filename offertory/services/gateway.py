"""Payment gateway client for initializing online collections."""

import base64
import json
import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field

from offertory.api.errors import GatewayError, GatewayTimeout
from offertory.config import Settings, get_settings
from offertory.services.parsers import from_minor_units
from offertory.services.signature import SignatureVerifier

logger = logging.getLogger(__name__)

INIT_TRANSACTION_PATH = "/v1/merchant/transactions/init-transaction"


class PaymentInitRequest(BaseModel):
    """Data sent to the gateway to start collecting a contribution."""

    amount: int = Field(..., gt=0, description="Amount in minor units")
    currency: str = "NGN"
    payment_reference: str
    customer_name: str
    customer_email: str
    description: str = ""
    redirect_url: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentInitResponse(BaseModel):
    """Gateway answer to a successful initialization."""

    transaction_reference: str
    payment_reference: str
    checkout_url: str


class PaymentGateway:
    """Synchronous gateway client with a bounded timeout.

    A timeout surfaces as GatewayTimeout (the record stays pending and the
    caller may retry); any other failure surfaces as GatewayError.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.Client] = None):
        self.settings = settings or get_settings()
        self._client = client or httpx.Client(
            base_url=self.settings.gateway_base_url,
            timeout=self.settings.gateway_timeout_seconds,
        )
        self._signer = SignatureVerifier(self.settings.gateway_secret_key)

    def _auth_header(self) -> str:
        credentials = f"{self.settings.gateway_api_key}:{self.settings.gateway_secret_key}"
        return "Basic " + base64.b64encode(credentials.encode("utf-8")).decode("ascii")

    def _build_body(self, request: PaymentInitRequest) -> bytes:
        body = {
            "amount": float(from_minor_units(request.amount)),
            "customerName": request.customer_name,
            "customerEmail": request.customer_email,
            "paymentReference": request.payment_reference,
            "paymentDescription": request.description,
            "currencyCode": request.currency,
            "contractCode": self.settings.gateway_contract_code,
            "redirectUrl": request.redirect_url or self.settings.gateway_redirect_url,
            "paymentMethods": ["CARD", "ACCOUNT_TRANSFER"],
            "metadata": request.metadata,
        }
        return json.dumps(body, separators=(",", ":")).encode("utf-8")

    def initialize_payment(self, request: PaymentInitRequest) -> PaymentInitResponse:
        """
        Ask the gateway to begin collection.

        Args:
            request: Amount, our payment reference and payer details

        Returns:
            PaymentInitResponse with the gateway's transaction reference

        Raises:
            GatewayTimeout: If the call exceeds gateway_timeout_seconds
            GatewayError: If the gateway rejects the request or answers garbage
        """
        body = self._build_body(request)
        headers = {
            "Content-Type": "application/json",
            "Authorization": self._auth_header(),
            "Signature": self._signer.compute(body),
        }

        try:
            response = self._client.post(INIT_TRANSACTION_PATH, content=body, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Gateway timeout initializing %s: %s", request.payment_reference, e)
            raise GatewayTimeout() from e
        except httpx.HTTPError as e:
            logger.error("Gateway transport error for %s: %s", request.payment_reference, e)
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayError(f"Gateway returned non-JSON response ({response.status_code})") from e

        if response.status_code >= 400 or not payload.get("requestSuccessful", False):
            message = payload.get("responseMessage") or f"HTTP {response.status_code}"
            logger.error("Gateway rejected %s: %s", request.payment_reference, message)
            raise GatewayError(f"Payment gateway error: {message}")

        response_body = payload.get("responseBody") or {}
        try:
            result = PaymentInitResponse(
                transaction_reference=response_body["transactionReference"],
                payment_reference=response_body.get("paymentReference", request.payment_reference),
                checkout_url=response_body["checkoutUrl"],
            )
        except KeyError as e:
            raise GatewayError(f"Gateway response missing {e}") from e

        logger.info(
            "Gateway initialized %s as %s", request.payment_reference, result.transaction_reference
        )
        return result

    def close(self) -> None:
        self._client.close()


__all__ = ["PaymentGateway", "PaymentInitRequest", "PaymentInitResponse", "INIT_TRANSACTION_PATH"]
