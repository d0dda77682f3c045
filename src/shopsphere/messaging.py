import asyncio
import logging
from aio_pika import connect_robust, ExchangeType
from aio_pika.abc import AbstractRobustConnection, AbstractRobustChannel
from shopsphere.config import settings

logger = logging.getLogger("orders.messaging")

ORDER_EVENTS_EXCHANGE = "order_events"
QUEUE_ORDER_PAYMENTS  = "order_payments"
QUEUE_ORDER_LIFECYCLE = "order_lifecycle"

# routing key (outbox event_type) -> queue it is bound to
ORDER_EVENT_ROUTES = {
    "order_created":        QUEUE_ORDER_LIFECYCLE,
    "order_status_changed": QUEUE_ORDER_LIFECYCLE,
    "order_deleted":        QUEUE_ORDER_LIFECYCLE,
    "order_paid":           QUEUE_ORDER_PAYMENTS,
    "order_payment_failed": QUEUE_ORDER_PAYMENTS,
}

rabbit_connection: AbstractRobustConnection | None = None
rabbit_channel:    AbstractRobustChannel     | None = None

async def init_rabbit(retry_attempts: int = 5, retry_delay: int = 2) -> None:
    global rabbit_connection, rabbit_channel
    url = f"amqp://{settings.RABBIT_USER}:{settings.RABBIT_PASSWORD}@{settings.RABBIT_HOST}:{settings.RABBIT_PORT}/"

    for attempt in range(1, retry_attempts + 1):
        try:
            logger.info(f"[Orders] Connecting to RabbitMQ (attempt {attempt}/{retry_attempts})")
            rabbit_connection = await connect_robust(url)
            rabbit_channel    = await rabbit_connection.channel()

            exchange = await rabbit_channel.declare_exchange(
                ORDER_EVENTS_EXCHANGE, ExchangeType.DIRECT, durable=True
            )
            queues = {}
            for routing_key, queue_name in ORDER_EVENT_ROUTES.items():
                if queue_name not in queues:
                    queues[queue_name] = await rabbit_channel.declare_queue(queue_name, durable=True)
                await queues[queue_name].bind(exchange, routing_key)

            logger.info("[Orders] RabbitMQ setup complete")
            return
        except Exception as e:
            logger.error(f"[Orders] RabbitMQ init failed: {e}")
            if attempt < retry_attempts:
                await asyncio.sleep(retry_delay)
            else:
                logger.critical("[Orders] Could not connect to RabbitMQ, giving up")
                raise

async def get_channel() -> AbstractRobustChannel:
    if rabbit_channel is None:
        await init_rabbit()
    return rabbit_channel

async def close_rabbit() -> None:
    global rabbit_connection, rabbit_channel
    if rabbit_connection:
        await rabbit_connection.close()
        rabbit_connection = None
        rabbit_channel = None
        logger.info("[Orders] RabbitMQ connection closed")
