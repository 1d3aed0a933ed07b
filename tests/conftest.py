"""Pytest configuration for tests - per-test SQLite database and gateway fakes."""

import json
import os

# Set test environment BEFORE any imports from offertory
# so the module-level engine and settings pick them up
os.environ["DATABASE_URL"] = "sqlite:///./test_offertory.db"
os.environ["GATEWAY_SECRET_KEY"] = "test-secret-key"

import httpx  # noqa: E402
import pytest  # noqa: E402

from offertory.config import Settings, reset_settings  # noqa: E402
from offertory.models import (  # noqa: E402
    Base,
    Campaign,
    CampaignMilestone,
    MonetaryRecord,
    PaymentStatus,
    RecordKind,
    Tenant,
)
from offertory.services import build_engine, build_session_factory  # noqa: E402
from offertory.services.gateway import PaymentGateway  # noqa: E402
from offertory.services.plan_catalog import load_plan_catalog  # noqa: E402
from offertory.services.receipts import derive_prefix  # noqa: E402
from offertory.services.signature import SignatureVerifier  # noqa: E402

SECRET = "test-secret-key"
GATEWAY_BASE_URL = "https://gateway.test/api"


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Drop cached settings between tests."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings():
    """Settings pointing at the fake gateway."""
    return Settings(
        gateway_base_url=GATEWAY_BASE_URL,
        gateway_api_key="MK_TEST_KEY",
        gateway_secret_key=SECRET,
        gateway_contract_code="1234567890",
        gateway_timeout_seconds=2.0,
        verification_overdue_days=7,
        stale_pending_after_minutes=60,
    )


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine so several sessions can share it."""
    engine = build_engine(f"sqlite:///{tmp_path / 'offertory.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    """Create test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def tenant(db):
    """Tenant receiving contributions."""
    tenant = Tenant(name="Grace Chapel", receipt_prefix=derive_prefix("Grace Chapel"))
    db.add(tenant)
    db.commit()
    return tenant


@pytest.fixture
def other_tenant(db):
    tenant = Tenant(name="St. John's", receipt_prefix=derive_prefix("St. John's"))
    db.add(tenant)
    db.commit()
    return tenant


@pytest.fixture
def campaign(db, tenant):
    """Active campaign with a 10,000.00 target and two milestones."""
    campaign = Campaign(
        tenant_id=tenant.id,
        title="Building Fund",
        target_amount=1_000_000,
        currency="NGN",
        milestones=[
            CampaignMilestone(amount=250_000, title="Foundation"),
            CampaignMilestone(amount=500_000, title="Walls"),
        ],
    )
    db.add(campaign)
    db.commit()
    return campaign


@pytest.fixture
def catalog():
    return load_plan_catalog()


@pytest.fixture
def verifier():
    return SignatureVerifier(SECRET)


@pytest.fixture
def make_contribution(db, tenant):
    """Factory for contributions created directly in a given state."""

    def _make(
        amount=500_000,
        status=PaymentStatus.PROCESSING,
        external_reference="MNFY|20250623|000001",
        payment_reference=None,
        **fields,
    ):
        record = MonetaryRecord(
            tenant_id=fields.pop("tenant_id", tenant.id),
            kind=RecordKind.CONTRIBUTION.value,
            amount=amount,
            currency="NGN",
            category=fields.pop("category", "offering"),
            status=getattr(status, "value", status),
            version=1,
            external_reference=external_reference,
            payment_reference=payment_reference or f"CON_{external_reference or amount}",
            **fields,
        )
        db.add(record)
        db.commit()
        return record

    return _make


def callback_payload(
    transaction_reference,
    status="PAID",
    amount="5000.00",
    payment_reference=None,
    envelope=True,
):
    """Gateway callback body as the gateway serializes it."""
    data = {
        "transactionReference": transaction_reference,
        "paymentReference": payment_reference,
        "amountPaid": amount,
        "paidAmount": amount,
        "paymentStatus": status,
        "paymentMethod": "CARD",
        "paidOn": "2025-06-23 10:15:00.0",
        "currency": "NGN",
    }
    if envelope:
        data = {"eventType": "SUCCESSFUL_TRANSACTION", "eventData": data}
    return json.dumps(data).encode("utf-8")


@pytest.fixture
def callback_body():
    """Unsigned callback body builder."""
    return callback_payload


@pytest.fixture
def signed_callback(verifier):
    """Build (raw_body, signature) pairs signed with the shared secret."""

    def _signed(transaction_reference, **kwargs):
        body = callback_payload(transaction_reference, **kwargs)
        return body, verifier.compute(body)

    return _signed


class FakeGatewayServer:
    """Scripted gateway behind an httpx.MockTransport.

    mode is one of "ok", "timeout", "reject", "garbage".
    """

    def __init__(self):
        self.mode = "ok"
        self.requests = []
        self.counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.mode == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if self.mode == "garbage":
            return httpx.Response(200, text="<html>oops</html>")
        if self.mode == "reject":
            return httpx.Response(
                400,
                json={"requestSuccessful": False, "responseMessage": "Invalid contract code"},
            )

        body = json.loads(request.content)
        self.counter += 1
        reference = f"MNFY|20250623|{self.counter:06d}"
        return httpx.Response(
            200,
            json={
                "requestSuccessful": True,
                "responseMessage": "success",
                "responseBody": {
                    "transactionReference": reference,
                    "paymentReference": body["paymentReference"],
                    "checkoutUrl": f"https://checkout.test/{self.counter}",
                },
            },
        )


@pytest.fixture
def gateway_server():
    return FakeGatewayServer()


@pytest.fixture
def gateway(settings, gateway_server):
    """PaymentGateway wired to the fake gateway server."""
    client = httpx.Client(
        base_url=GATEWAY_BASE_URL, transport=httpx.MockTransport(gateway_server.handler)
    )
    gateway = PaymentGateway(settings, client=client)
    yield gateway
    gateway.close()

