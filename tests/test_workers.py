import json
from decimal import Decimal
from types import SimpleNamespace

from aio_pika import ExchangeType
from sqlalchemy import select

from shopsphere import messaging
from shopsphere.models import OrdersOutbox
from shopsphere.workers import publish_pending

from conftest import make_order_data, signature_for


class FakeExchange:
    def __init__(self):
        self.published = []

    async def publish(self, message, routing_key):
        self.published.append((routing_key, json.loads(message.body)))


async def test_publish_pending_sends_each_event_once(workflow, session):
    intent, order = await workflow.create_gateway_order(Decimal("499.99"), "INR", None, make_order_data())
    order_id = str(order.id)
    await workflow.verify_payment(intent.intent_id, "pay_001", signature_for(intent.intent_id, "pay_001"))

    exchange = FakeExchange()
    assert await publish_pending(session, exchange) == 2

    routing_keys = sorted(key for key, _ in exchange.published)
    assert routing_keys == ["order_created", "order_paid"]
    paid = next(body for key, body in exchange.published if key == "order_paid")
    assert paid["order_id"] == order_id
    assert paid["reference"] == intent.intent_id
    assert paid["payment_status"] == "paid"
    assert paid["grand_total"] == 499.99

    unpublished = (await session.execute(
        select(OrdersOutbox).where(OrdersOutbox.published_at.is_(None))
    )).scalars().all()
    assert unpublished == []

    assert await publish_pending(session, FakeExchange()) == 0


class FakeQueue:
    def __init__(self, name):
        self.name = name
        self.bindings = []

    async def bind(self, exchange, routing_key):
        self.bindings.append((exchange.name, routing_key))


class FakeChannel:
    def __init__(self):
        self.exchanges = {}
        self.queues = {}

    async def declare_exchange(self, name, type, durable):
        exchange = SimpleNamespace(name=name, type=type, durable=durable)
        self.exchanges[name] = exchange
        return exchange

    async def declare_queue(self, name, durable):
        self.queues[name] = FakeQueue(name)
        return self.queues[name]


class FakeConnection:
    def __init__(self):
        self.chan = FakeChannel()
        self.closed = False

    async def channel(self):
        return self.chan

    async def close(self):
        self.closed = True


async def test_init_rabbit_binds_every_order_event(monkeypatch):
    connection = FakeConnection()

    async def fake_connect(url):
        return connection

    monkeypatch.setattr(messaging, "connect_robust", fake_connect)
    await messaging.init_rabbit(retry_attempts=1)

    channel = connection.chan
    assert channel.exchanges[messaging.ORDER_EVENTS_EXCHANGE].type == ExchangeType.DIRECT
    assert set(channel.queues) == {messaging.QUEUE_ORDER_PAYMENTS, messaging.QUEUE_ORDER_LIFECYCLE}
    assert channel.queues[messaging.QUEUE_ORDER_PAYMENTS].bindings == [
        (messaging.ORDER_EVENTS_EXCHANGE, "order_paid"),
        (messaging.ORDER_EVENTS_EXCHANGE, "order_payment_failed"),
    ]
    bound = {key for q in channel.queues.values() for _, key in q.bindings}
    assert bound == {
        "order_created", "order_paid", "order_payment_failed", "order_status_changed", "order_deleted",
    }

    await messaging.close_rabbit()
    assert connection.closed
    assert messaging.rabbit_channel is None
