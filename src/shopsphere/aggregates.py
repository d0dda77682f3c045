"""
Denormalized per-user order statistics.

``total_orders`` and ``total_spent`` are only ever moved by atomic SQL
increments.  Idempotency per order is owned by the caller: it must win the
``Order.credited`` compare-and-swap in the same transaction before calling
:func:`apply_order_completion`.
"""
import logging
from decimal import Decimal
from typing import Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shopsphere.errors import NotFoundError, UserExistsError
from shopsphere.models import Order, User

logger = logging.getLogger("orders.aggregates")

CENTS = Decimal("0.01")


def _dialect_insert(session: AsyncSession):
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"ON CONFLICT insert is not supported for dialect {dialect!r}")
    return insert


async def create_user(user_id: str, session: AsyncSession) -> User:
    user = User(id=user_id, total_orders=0, total_spent=Decimal("0"))
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise UserExistsError("User already exists")
    await session.refresh(user)
    return user


async def get_user(user_id: str, session: AsyncSession) -> User | None:
    result = await session.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def ensure_user(user_id: str, session: AsyncSession) -> None:
    """Create the aggregate row if it is missing; safe against a concurrent insert."""
    insert = _dialect_insert(session)
    await session.execute(
        insert(User)
        .values(id=user_id, total_orders=0, total_spent=Decimal("0"))
        .on_conflict_do_nothing(index_elements=[User.id])
    )


async def apply_order_completion(
    user_id: str,
    grand_total: Decimal,
    order_id: str,
    session: AsyncSession,
) -> None:
    result = await session.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            total_orders=User.total_orders + 1,
            total_spent=User.total_spent + Decimal(str(grand_total)),
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFoundError(f"User {user_id} not found")
    logger.info("[Orders] Credited order %s (%s) to user %s", order_id, grand_total, user_id)


async def recompute_user_totals(user_id: str, session: AsyncSession) -> Tuple[int, Decimal]:
    result = await session.execute(
        select(func.count(Order.id), func.coalesce(func.sum(Order.grand_total), 0))
        .where(Order.user_id == user_id, Order.credited.is_(True))
    )
    count, spent = result.one()
    return int(count), Decimal(str(spent)).quantize(CENTS)


async def audit_user(user_id: str, session: AsyncSession) -> dict:
    user = await get_user(user_id, session)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    count, spent = await recompute_user_totals(user_id, session)
    stored = (user.total_orders, Decimal(str(user.total_spent)).quantize(CENTS))
    return {
        "user_id": user_id,
        "stored": {"total_orders": stored[0], "total_spent": stored[1]},
        "computed": {"total_orders": count, "total_spent": spent},
        "in_sync": stored == (count, spent),
    }


async def reconcile_user(user_id: str, session: AsyncSession) -> dict:
    """Overwrite the running totals with a full recomputation over credited orders."""
    user = await get_user(user_id, session)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    before = {"total_orders": user.total_orders, "total_spent": Decimal(str(user.total_spent)).quantize(CENTS)}
    count, spent = await recompute_user_totals(user_id, session)
    try:
        await session.execute(
            update(User)
            .where(User.id == user_id)
            .values(total_orders=count, total_spent=spent, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    if before != {"total_orders": count, "total_spent": spent}:
        logger.warning("[Orders] Reconciled user %s: %s -> %s/%s", user_id, before, count, spent)
    return {
        "user_id": user_id,
        "before": before,
        "after": {"total_orders": count, "total_spent": spent},
    }
