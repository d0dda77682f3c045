import os

os.environ.setdefault("ORDERS_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["RAZORPAY_KEY_SECRET"] = "test_key_secret"
os.environ["ADMIN_API_TOKEN"] = "admin-token"

from decimal import Decimal

import httpx
import pytest
from sqlalchemy import event, select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from shopsphere import models
from shopsphere.db import get_session, init_models
from shopsphere.errors import GatewayError
from shopsphere.gateway import GatewayIntent
from shopsphere.main import app, get_gateway
from shopsphere.schemas import OrderData
from shopsphere.signature import payment_material, sign
from shopsphere.workflow import OrderWorkflow

KEY_SECRET = "test_key_secret"
ADMIN_HEADERS = {"Authorization": "Bearer admin-token"}


class FakeGateway:
    def __init__(self):
        self.calls = []
        self.error: GatewayError | None = None
        self.intent_id: str | None = None
        self.confirmed_amount: int | None = None
        self._n = 0

    async def create_intent(self, amount_minor: int, currency: str, receipt: str) -> GatewayIntent:
        self.calls.append({"amount": amount_minor, "currency": currency, "receipt": receipt})
        if self.error:
            raise self.error
        self._n += 1
        return GatewayIntent(
            intent_id=self.intent_id or f"order_Test{self._n:04d}",
            amount=self.confirmed_amount or amount_minor,
            currency=currency,
        )

    async def aclose(self):
        pass


def make_order_data(
    user_id="user_1",
    subtotal="450.00",
    delivery_fee="40.00",
    handling_fee="9.99",
    grand_total="499.99",
) -> OrderData:
    return OrderData.model_validate({
        "userId": user_id,
        "items": [
            {"title": "Linen shirt", "price": "225.00", "quantity": 2, "images": ["shirt.jpg"]},
        ],
        "shippingInfo": {
            "fullName": "Asha Rao",
            "email": "asha@example.com",
            "city": "Pune",
            "zipCode": "411001",
            "country": "IN",
        },
        "pricing": {
            "subtotal": subtotal,
            "deliveryFee": delivery_fee,
            "handlingFee": handling_fee,
            "grandTotal": grand_total,
        },
    })


def signature_for(intent_id: str, payment_ref: str, secret: str = KEY_SECRET) -> str:
    return sign(payment_material(intent_id, payment_ref), secret)


async def count_rows(session: AsyncSession, model) -> int:
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


async def _make_engine(path, immediate=False):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")

    if immediate:
        # take the write lock at BEGIN so concurrent writers queue instead of deadlocking
        @event.listens_for(engine.sync_engine, "connect")
        def do_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def do_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_models(engine)
    return engine


@pytest.fixture
async def engine(tmp_path):
    engine = await _make_engine(tmp_path / "orders.db")
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def locking_session_factory(tmp_path):
    engine = await _make_engine(tmp_path / "orders_locking.db", immediate=True)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def workflow(session, gateway):
    return OrderWorkflow(session, gateway, KEY_SECRET)


@pytest.fixture
async def user_totals(session_factory):
    async def fetch(user_id="user_1"):
        async with session_factory() as s:
            user = await s.get(models.User, user_id)
            if user is None:
                return None
            return user.total_orders, Decimal(str(user.total_spent)).quantize(Decimal("0.01"))
    return fetch


@pytest.fixture
async def client(session_factory, gateway):
    async def override_session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
