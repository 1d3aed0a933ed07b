"""Unit tests for the payment gateway client."""

import base64
import json

import pytest

from offertory.api.errors import GatewayError, GatewayTimeout
from offertory.services.gateway import INIT_TRANSACTION_PATH, PaymentInitRequest
from offertory.services.signature import SignatureVerifier

pytestmark = pytest.mark.unit


@pytest.fixture
def init_request():
    return PaymentInitRequest(
        amount=500_050,
        currency="NGN",
        payment_reference="CON_abc123",
        customer_name="Ada Obi",
        customer_email="ada@example.com",
        description="Sunday offering",
        metadata={"tenant_id": 1, "record_id": 7},
    )


class TestInitializePayment:
    """Tests for PaymentGateway.initialize_payment."""

    def test_successful_initialization(self, gateway, gateway_server, init_request):
        """Test the gateway reference and checkout URL are returned."""
        response = gateway.initialize_payment(init_request)

        assert response.transaction_reference == "MNFY|20250623|000001"
        assert response.payment_reference == "CON_abc123"
        assert response.checkout_url == "https://checkout.test/1"

    def test_request_shape(self, gateway, gateway_server, init_request, settings):
        """Test the outgoing request carries major units, auth and a body signature."""
        gateway.initialize_payment(init_request)

        request = gateway_server.requests[0]
        body = json.loads(request.content)
        assert request.url.path == "/api" + INIT_TRANSACTION_PATH
        assert body["amount"] == 5000.5
        assert body["paymentReference"] == "CON_abc123"
        assert body["contractCode"] == "1234567890"
        assert body["metadata"] == {"tenant_id": 1, "record_id": 7}

        expected_auth = base64.b64encode(b"MK_TEST_KEY:test-secret-key").decode()
        assert request.headers["Authorization"] == f"Basic {expected_auth}"
        assert SignatureVerifier(settings.gateway_secret_key).verify(
            request.content, request.headers["Signature"]
        )

    def test_timeout(self, gateway, gateway_server, init_request):
        """Test a transport timeout surfaces as GatewayTimeout."""
        gateway_server.mode = "timeout"

        with pytest.raises(GatewayTimeout):
            gateway.initialize_payment(init_request)

    def test_rejection(self, gateway, gateway_server, init_request):
        """Test an unsuccessful response surfaces as GatewayError with its message."""
        gateway_server.mode = "reject"

        with pytest.raises(GatewayError, match="Invalid contract code"):
            gateway.initialize_payment(init_request)

    def test_non_json_response(self, gateway, gateway_server, init_request):
        gateway_server.mode = "garbage"

        with pytest.raises(GatewayError, match="non-JSON"):
            gateway.initialize_payment(init_request)

    def test_amount_must_be_positive(self):
        with pytest.raises(ValueError):
            PaymentInitRequest(
                amount=0, payment_reference="x", customer_name="x", customer_email="x"
            )
