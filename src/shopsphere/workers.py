import asyncio
import json
import logging

from aio_pika import Message, ExchangeType
from aio_pika.abc import AbstractExchange
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from shopsphere.messaging import get_channel, ORDER_EVENTS_EXCHANGE
from shopsphere.db import get_session
from shopsphere.models import OrdersOutbox
from shopsphere.config import settings

logger = logging.getLogger("orders.workers")

async def publish_pending(session: AsyncSession, exchange: AbstractExchange) -> int:
    """
    Publishes unsent outbox events and stamps their published_at.
    """
    stmt = (
        select(OrdersOutbox)
        .where(OrdersOutbox.published_at.is_(None))
        .order_by(OrdersOutbox.created_at)
    )
    result = await session.execute(stmt)
    events = result.scalars().all()
    logger.info("[Orders] Pending outbox events: %d", len(events))

    for ev in events:
        body = {"event_id": str(ev.id), "event_type": ev.event_type, **ev.payload}
        logger.info("[Orders] Publishing %s for order %s", ev.event_type, ev.aggregate_id)
        await exchange.publish(
            Message(body=json.dumps(body).encode(), content_type="application/json"),
            routing_key=ev.event_type
        )
        ev.published_at = func.now()
        session.add(ev)

    if events:
        await session.commit()
        logger.info("[Orders] Outbox publish commit complete")
    return len(events)

async def outbox_publisher():
    INTERVAL = settings.OUTBOX_POLL_INTERVAL

    while True:
        try:
            channel = await get_channel()
            exchange = await channel.declare_exchange(
                ORDER_EVENTS_EXCHANGE, ExchangeType.DIRECT, durable=True
            )
            async for session in get_session():
                await publish_pending(session, exchange)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[Orders] Outbox publish failed: %s", e)

        await asyncio.sleep(INTERVAL)
