from datetime import datetime
from decimal import Decimal
from typing import List
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete

from shopsphere.models import Order, OrdersOutbox, OrderStatus, PaymentStatus


async def insert_order(
    values: dict,
    session: AsyncSession
) -> Order:
    """
    Adds the order to the session. The caller commits.
    """
    order = Order(**values)
    session.add(order)
    await session.flush()  # populates order.id
    return order

async def get_order(
    id: UUID,
    session: AsyncSession
) -> Order | None:
    result = await session.execute(
        select(Order).where(Order.id == id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()

async def get_order_by_reference(
    order_id: str,
    session: AsyncSession
) -> Order | None:
    """
    Looks an order up by its external reference (gateway intent id or COD_...).
    """
    result = await session.execute(
        select(Order).where(Order.order_id == order_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()

async def get_orders_by_user(
    user_id: str,
    session: AsyncSession
) -> List[Order]:
    result = await session.execute(
        select(Order).where(Order.user_id == user_id).order_by(Order.order_date.desc())
    )
    return result.scalars().all()

async def mark_paid(
    order_id: str,
    payment_ref: str,
    paid_at: datetime,
    session: AsyncSession
) -> bool:
    """
    Moves the order to Processing/paid and sets credited in one conditional UPDATE.
    Only matches from payment_status == pending; True if the row was updated.
    """
    result = await session.execute(
        update(Order)
        .where(Order.order_id == order_id, Order.payment_status == PaymentStatus.PENDING.value)
        .values(
            status=OrderStatus.PROCESSING.value,
            payment_status=PaymentStatus.PAID.value,
            payment_id=payment_ref,
            paid_at=paid_at,
            credited=True,
            version=Order.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

async def mark_failed(
    order_id: str,
    session: AsyncSession
) -> bool:
    result = await session.execute(
        update(Order)
        .where(Order.order_id == order_id, Order.payment_status == PaymentStatus.PENDING.value)
        .values(
            status=OrderStatus.CANCELLED.value,
            payment_status=PaymentStatus.FAILED.value,
            version=Order.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

async def update_order_versioned(
    id: UUID,
    expected_version: int,
    values: dict,
    session: AsyncSession
) -> bool:
    """
    Optimistic update: applies only while the version is unchanged.
    """
    result = await session.execute(
        update(Order)
        .where(Order.id == id, Order.version == expected_version)
        .values(version=Order.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

async def delete_order(
    id: UUID,
    session: AsyncSession
) -> bool:
    result = await session.execute(
        delete(Order).where(Order.id == id).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

def order_event_payload(order: Order) -> dict:
    return {
        "order_id": str(order.id),
        "reference": order.order_id,
        "user_id": order.user_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "grand_total": float(Decimal(str(order.grand_total))),
    }

async def add_outbox_event(
    order: Order,
    event_type: str,
    session: AsyncSession
) -> OrdersOutbox:
    outbox_rec = OrdersOutbox(
        aggregate_id=order.id,
        event_type=event_type,
        payload=order_event_payload(order)
    )
    session.add(outbox_rec)
    await session.flush()
    return outbox_rec
