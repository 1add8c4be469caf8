# apps/api/tests/conftest.py
"""
Shared fixtures: in-memory SQLite (aiosqlite) schema per test, a fake
Monobank gateway, a dispatcher that records outbound events, and an httpx
client bound to the FastAPI app with dependency overrides.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SENTRY_DSN"] = ""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import jwt
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from learnhub.core.config import settings
from learnhub.core.enums import Currency, GatewayStatus, NotificationKind, PlanKind
from learnhub.core.exceptions import GatewayError
from learnhub.db.models import Base
from learnhub.integrations.monobank import Invoice, InvoiceStatus, MonobankClient, RefundResult
from learnhub.services.events import EventDispatcher, NotificationEvent
from learnhub.services.payments import PaymentService
from learnhub.services.plans import PlanService
from learnhub.services.reconciler import GatewayReport, WebhookReconciler
from learnhub.services.subscriptions import SubscriptionService


# ────────────────────────────────────────────────
# Database
# ────────────────────────────────────────────────
@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ────────────────────────────────────────────────
# Collaborators
# ────────────────────────────────────────────────
class FakeGateway(MonobankClient):
    """In-memory invoices; signatures use the real HMAC with the configured secret."""

    def __init__(self):
        super().__init__(
            token="test-token",
            webhook_secret=settings.MONOBANK_WEBHOOK_SECRET.get_secret_value(),
        )
        self.invoices: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.fail_with: Optional[GatewayError] = None
        self.refund_ok = True
        self._counter = 0

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def create_invoice(self, amount, currency, description, redirect_url=None, reference=None,
                             validity_seconds=900):
        self.calls.append(("create_invoice", amount, reference))
        self._maybe_fail()
        self._counter += 1
        invoice_id = f"inv-{self._counter}"
        self.invoices[invoice_id] = {"amount": amount, "status": GatewayStatus.CREATED, "reference": reference}
        return Invoice(invoice_id=invoice_id, payment_url=f"https://pay.example.test/{invoice_id}")

    async def get_invoice_status(self, invoice_id):
        self.calls.append(("get_invoice_status", invoice_id))
        self._maybe_fail()
        invoice = self.invoices[invoice_id]
        return InvoiceStatus(
            invoice_id=invoice_id,
            status=invoice["status"],
            amount=invoice["amount"],
            rrn=invoice.get("rrn"),
        )

    async def cancel_invoice(self, invoice_id):
        self.calls.append(("cancel_invoice", invoice_id))
        self._maybe_fail()
        self.invoices[invoice_id]["status"] = GatewayStatus.EXPIRED
        return True

    async def refund(self, invoice_id, amount, comment=None):
        self.calls.append(("refund", invoice_id, amount))
        self._maybe_fail()
        return RefundResult(ok=self.refund_ok, transaction_id=f"refund-{invoice_id}")

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


class RecordingDispatcher(EventDispatcher):
    def __init__(self):
        self.events: List[Any] = []

    def dispatch(self, events) -> None:
        self.events.extend(list(events))

    def notifications(self) -> List[NotificationEvent]:
        return [e for e in self.events if isinstance(e, NotificationEvent)]

    def kinds(self) -> List[NotificationKind]:
        return [e.kind for e in self.notifications()]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


# ────────────────────────────────────────────────
# Domain helpers
# ────────────────────────────────────────────────
@pytest.fixture
def make_plan(db):
    async def _make(**overrides):
        data = {
            "name": "Standard 3 months",
            "kind": PlanKind.PERIOD,
            "price": 1000,
            "discount_percent": 10,
            "duration_months": 3,
            "currency": Currency.UAH,
            "includes_all_courses": True,
        }
        data.update(overrides)
        return await PlanService(db).create(data, actor_id="admin-1")

    return _make


@pytest.fixture
def make_subscription(db):
    async def _make(plan, user_id="user-1", email="student@example.com", **kwargs):
        return await SubscriptionService(db).create(user_id, email, plan.id, **kwargs)

    return _make


@pytest.fixture
def pay(db, gateway):
    """Checkout → payment link → gateway success. Returns the payment."""

    async def _pay(subscription, paid_at=None):
        service = PaymentService(db, gateway)
        payment = await service.create_payment(subscription.id, now=paid_at)
        reconciler = WebhookReconciler(db, gateway)
        result = await reconciler.apply(
            GatewayReport(
                invoice_id=payment.invoice_id,
                status=GatewayStatus.SUCCESS,
                amount=payment.final_amount,
                rrn=f"rrn-{payment.invoice_id}",
                approval_code="123456",
            ),
            now=paid_at,
        )
        assert result.applied
        return await service.get(payment.id)

    return _pay


# ────────────────────────────────────────────────
# HTTP
# ────────────────────────────────────────────────
def make_token(user_id: str = "user-1", email: str = "student@example.com", roles=("user",)) -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "roles": list(roles),
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=15),
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY.get_secret_value(), algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def auth_headers():
    def _headers(user_id="user-1", email="student@example.com", roles=("user",)):
        return {"Authorization": f"Bearer {make_token(user_id, email, roles)}"}

    return _headers


@pytest.fixture
def user_headers(auth_headers):
    return auth_headers()


@pytest.fixture
def admin_headers(auth_headers):
    return auth_headers("admin-1", "admin@example.com", ("user", "admin"))


@pytest.fixture
async def client(session_factory, gateway, dispatcher):
    from learnhub.db.session import get_db
    from learnhub.integrations.monobank import get_gateway
    from learnhub.main import app
    from learnhub.services.events import get_dispatcher

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http

    app.dependency_overrides.clear()
