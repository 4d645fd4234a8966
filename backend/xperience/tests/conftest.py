"""Pytest configuration for funnel integration tests

WHAT: Shared fixtures for service and HTTP endpoint tests
WHY: Consistent database isolation, a fake Whop API, and fast identity
     polling (no real sleeps, no Redis)
REFERENCES:
    - xperience/main.py: FastAPI application
    - xperience/database.py: Database configuration
    - xperience/routers/funnel.py: get_identity_service dependency
    - xperience/routers/whop.py: get_whop_client dependency
"""

import os
import sys
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment (before any xperience import reads settings)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("WHOP_API_KEY", "test-whop-key")
os.environ.setdefault("WHOP_COMPANY_ID", "biz_test")
os.environ.setdefault("APP_BASE_URL", "https://funnel.example.com")

WHOP_TEST_URL = "https://api.whop.test/api/v1"
COMPANY_ID = "biz_test"
MERCHANT_CONFIRMATION = "https://merchant.example.com/thanks"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared across threads (TestClient runs in a worker thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from xperience.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Fake Whop API
# ============================================================================

class FakeWhop:
    """httpx.MockTransport handler standing in for the Whop API.

    Tests tweak `payment_methods`, `charge_status` and `charge_body`, then
    inspect `requests`.
    """

    def __init__(self):
        self.requests = []
        self.payment_methods = [{"id": "pm_saved"}]
        self.charge_status = 200
        self.charge_body = {"id": "pay_123", "status": "paid"}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "GET" and path.endswith("/payment_methods"):
            return httpx.Response(200, json={"data": self.payment_methods})
        if request.method == "POST" and path.endswith("/payments"):
            return httpx.Response(self.charge_status, json=self.charge_body)
        if request.method == "POST" and path.endswith("/checkout_configurations"):
            return httpx.Response(200, json={
                "id": "ch_cfg_new",
                "purchase_url": "https://whop.com/checkout/ch_cfg_new",
            })
        return httpx.Response(404, json={"message": "not found"})

    @property
    def charges(self):
        return [r for r in self.requests if r.method == "POST" and r.url.path.endswith("/payments")]

    def client(self):
        from xperience.services.whop_client import WhopClient
        return WhopClient(api_key="test-whop-key", base_url=WHOP_TEST_URL, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_whop() -> FakeWhop:
    return FakeWhop()


class RecordingSleep:
    """Injectable sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, fake_whop, recording_sleep):
    """FastAPI app with database, Whop and identity polling overridden."""
    from xperience.main import create_app
    from xperience.database import get_db
    from xperience.routers.funnel import get_identity_service
    from xperience.routers.whop import get_whop_client
    from xperience.services.identity_resolution_service import (
        DatabasePendingIdentityLookup,
        IdentityResolutionService,
    )

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    def override_identity_service():
        return IdentityResolutionService(
            DatabasePendingIdentityLookup(test_db_session),
            max_attempts=3,
            initial_delay=2.0,
            retry_delay=1.0,
            sleep=recording_sleep,
            cache=None,
        )

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_whop_client] = fake_whop.client
    test_app.dependency_overrides[get_identity_service] = override_identity_service

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def funnel_flow(test_db_session):
    """Initial -> upsell A (accept -> B, decline -> confirmation) -> upsell B (no edges).

    Returns plain ids so tests never touch expired ORM instances.
    """
    from xperience.models import CompanyFlow, EdgeActionEnum, EdgeTargetEnum, FlowEdge, FlowNode, NodeTypeEnum

    base = datetime(2026, 1, 1, 12, 0, 0)
    flow = CompanyFlow(
        company_id=COMPANY_ID,
        name="Test Funnel",
        initial_product_plan_id="plan_initial",
        initial_product_name="Starter Course",
        initial_product_price=Decimal("49.00"),
        confirmation_page_url=MERCHANT_CONFIRMATION,
        created_at=base,
    )
    test_db_session.add(flow)
    test_db_session.flush()

    upsell_a = FlowNode(
        flow_id=flow.id, node_type=NodeTypeEnum.upsell, plan_id="plan_a", title="Upsell A",
        price=Decimal("19.00"), order_index=0, created_at=base,
    )
    upsell_b = FlowNode(
        flow_id=flow.id, node_type=NodeTypeEnum.upsell, plan_id="plan_b", title="Upsell B",
        price=Decimal("0"), order_index=1, created_at=base + timedelta(seconds=1),
    )
    test_db_session.add_all([upsell_a, upsell_b])
    test_db_session.flush()

    test_db_session.add_all([
        FlowEdge(
            flow_id=flow.id, from_node_id=upsell_a.id, action=EdgeActionEnum.accept,
            target_type=EdgeTargetEnum.node, to_node_id=upsell_b.id, created_at=base,
        ),
        FlowEdge(
            flow_id=flow.id, from_node_id=upsell_a.id, action=EdgeActionEnum.decline,
            target_type=EdgeTargetEnum.confirmation, created_at=base,
        ),
    ])
    test_db_session.commit()

    return SimpleNamespace(
        company_id=COMPANY_ID,
        flow_id=flow.id,
        a_id=upsell_a.id,
        b_id=upsell_b.id,
        confirmation_url=MERCHANT_CONFIRMATION,
    )


@pytest.fixture
def funnel_graph(test_db_session, funnel_flow):
    from xperience.services.flow_graph import FlowGraphStore
    return FlowGraphStore(test_db_session).get_graph(funnel_flow.company_id, funnel_flow.flow_id)


@pytest.fixture
def pending_identity(test_db_session):
    """A webhook-populated identity for checkout configuration ch_cfg_ready."""
    from xperience.models import PendingIdentity

    row = PendingIdentity(
        checkout_config_id="ch_cfg_ready",
        member_id="mber_ready",
        email="buyer@example.com",
        setup_intent_id="sint_ready",
        payment_method_id="pm_ready",
    )
    test_db_session.add(row)
    test_db_session.commit()
    return SimpleNamespace(checkout_config_id="ch_cfg_ready", member_id="mber_ready", email="buyer@example.com")
