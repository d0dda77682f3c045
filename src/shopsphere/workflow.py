"""
Order/payment workflow.

Gateway orders move ``Pending/pending -> Processing/paid`` on a valid
signature or ``Pending/pending -> Cancelled/failed`` on a bad one; both
transitions are conditional UPDATEs on ``payment_status == pending`` so a
duplicate or concurrent verification can never credit the user twice.
Cash-on-delivery orders never touch the gateway and are credited when an
admin marks them Delivered.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shopsphere import aggregates, crud
from shopsphere.errors import (
    ConcurrencyConflict,
    InvalidTransition,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from shopsphere.gateway import GatewayIntent, RazorpayClient, from_minor_units, to_minor_units
from shopsphere.models import Order, OrderStatus, PaymentMethod, PaymentStatus
from shopsphere.schemas import OrderData
from shopsphere.signature import payment_material, verify

logger = logging.getLogger("orders.workflow")

CENTS = Decimal("0.01")
# largest value a NUMERIC(18, 2) money column holds
MAX_AMOUNT = Decimal("9999999999999999.99")

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


@dataclass
class VerificationResult:
    verified: bool
    order: Order


def _now_ms() -> int:
    return int(time.time() * 1000)


def _order_values(order_data: OrderData) -> dict:
    return {
        "user_id": order_data.user_id,
        "items": [item.model_dump(mode="json", by_alias=True) for item in order_data.items],
        "shipping_info": (
            order_data.shipping_info.model_dump(mode="json", by_alias=True)
            if order_data.shipping_info else None
        ),
        "subtotal": order_data.pricing.subtotal,
        "delivery_fee": order_data.pricing.delivery_fee,
        "handling_fee": order_data.pricing.handling_fee,
    }


def _components_total(order_data: OrderData) -> Decimal:
    pricing = order_data.pricing
    return pricing.subtotal + pricing.delivery_fee + pricing.handling_fee


class OrderWorkflow:

    def __init__(
        self,
        session: AsyncSession,
        gateway: RazorpayClient,
        key_secret: str,
        max_conflict_retries: int = 3,
        default_currency: str = "INR",
    ):
        self.session = session
        self.gateway = gateway
        self._key_secret = key_secret
        self.max_conflict_retries = max_conflict_retries
        self.default_currency = default_currency

    async def create_gateway_order(
        self,
        amount: Optional[Decimal],
        currency: Optional[str],
        receipt: Optional[str],
        order_data: OrderData,
    ) -> Tuple[GatewayIntent, Order]:
        if amount is None:
            raise ValidationError("Amount is required")
        try:
            amount = Decimal(str(amount))
            if amount <= 0:
                raise ValidationError("Amount must be positive")
            if amount > MAX_AMOUNT:
                raise ValidationError("Amount is too large")
            if amount != amount.quantize(CENTS):
                raise ValidationError("Amount has more than two decimal places")
        except InvalidOperation as e:
            raise ValidationError("Amount is not a valid number") from e

        currency = (currency or self.default_currency).upper()
        receipt = receipt or f"receipt_{_now_ms()}"

        # GatewayError propagates; nothing has been written yet
        intent = await self.gateway.create_intent(to_minor_units(amount), currency, receipt)

        grand_total = from_minor_units(intent.amount)
        claimed = order_data.pricing.grand_total
        if claimed is None:
            claimed = _components_total(order_data)
        if claimed != grand_total:
            logger.warning(
                "[Orders] Client pricing %s differs from gateway amount %s for %s; using gateway amount",
                claimed, grand_total, intent.intent_id,
            )

        values = _order_values(order_data)
        values.update(
            order_id=intent.intent_id,
            status=OrderStatus.PENDING.value,
            payment_method=PaymentMethod.RAZORPAY.value,
            payment_status=PaymentStatus.PENDING.value,
            grand_total=grand_total,
            credited=False,
        )
        try:
            await aggregates.ensure_user(order_data.user_id, self.session)
            order = await crud.insert_order(values, self.session)
            await crud.add_outbox_event(order, "order_created", self.session)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("[Orders] Could not persist order for gateway intent %s: %s", intent.intent_id, e)
            raise PersistenceError("Gateway order created but local order was not saved", intent.intent_id) from e

        logger.info("[Orders] Pending order %s created for intent %s", order.id, intent.intent_id)
        return intent, order

    async def verify_payment(
        self,
        intent_id: str,
        payment_ref: str,
        signature: str,
        local_order_id: Optional[UUID] = None,
    ) -> VerificationResult:
        if not intent_id or not payment_ref or not signature:
            raise ValidationError("intentId, paymentRef and signature are required")

        order = await crud.get_order_by_reference(intent_id, self.session)
        if order is None:
            raise NotFoundError("Order not found")
        if local_order_id is not None and order.id != local_order_id:
            raise ValidationError("localOrderId does not match the gateway order")

        if not verify(payment_material(intent_id, payment_ref), signature, self._key_secret):
            return await self._fail_payment(order)

        try:
            matched = await crud.mark_paid(intent_id, payment_ref, datetime.now(timezone.utc), self.session)
            if matched:
                await aggregates.apply_order_completion(
                    order.user_id, order.grand_total, order.order_id, self.session
                )
                order = await crud.get_order_by_reference(intent_id, self.session)
                await crud.add_outbox_event(order, "order_paid", self.session)
                await self.session.commit()
                logger.info("[Orders] Payment %s verified for order %s", payment_ref, order.id)
                return VerificationResult(verified=True, order=order)
            await self.session.rollback()
        except Exception:
            await self.session.rollback()
            raise

        order = await crud.get_order_by_reference(intent_id, self.session)
        if order is None:
            raise NotFoundError("Order not found")
        if order.payment_status == PaymentStatus.PAID.value:
            if order.payment_id != payment_ref:
                logger.warning(
                    "[Orders] Order %s already paid by %s, ignoring payment %s",
                    order.id, order.payment_id, payment_ref,
                )
            else:
                logger.info("[Orders] Duplicate verification for order %s ignored", order.id)
            return VerificationResult(verified=True, order=order)
        raise InvalidTransition(f"Order payment is already {order.payment_status}")

    async def _fail_payment(self, order: Order) -> VerificationResult:
        reference = order.order_id
        logger.warning("[Orders] Signature mismatch for gateway order %s", reference)
        try:
            matched = await crud.mark_failed(reference, self.session)
            if matched:
                order = await crud.get_order_by_reference(reference, self.session)
                await crud.add_outbox_event(order, "order_payment_failed", self.session)
                await self.session.commit()
                logger.info("[Orders] Order %s cancelled after failed verification", order.id)
                return VerificationResult(verified=False, order=order)
            await self.session.rollback()
        except Exception:
            await self.session.rollback()
            raise

        # already paid or failed: a bad signature changes nothing
        order = await crud.get_order_by_reference(reference, self.session)
        if order is None:
            raise NotFoundError("Order not found")
        return VerificationResult(verified=False, order=order)

    async def create_cod_order(self, order_data: OrderData) -> Order:
        grand_total = order_data.pricing.grand_total
        if grand_total is None:
            raise ValidationError("grandTotal is required")
        if _components_total(order_data) != grand_total:
            raise ValidationError("grandTotal must equal subtotal + deliveryFee + handlingFee")
        if grand_total <= 0:
            raise ValidationError("grandTotal must be positive")

        values = _order_values(order_data)
        values.update(
            order_id=f"COD_{_now_ms()}_{secrets.token_hex(3)}",
            status=OrderStatus.PENDING.value,
            payment_method=PaymentMethod.COD.value,
            payment_status=PaymentStatus.PENDING.value,
            grand_total=grand_total,
            credited=False,
        )
        try:
            await aggregates.ensure_user(order_data.user_id, self.session)
            order = await crud.insert_order(values, self.session)
            await crud.add_outbox_event(order, "order_created", self.session)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info("[Orders] COD order %s created (%s)", order.id, order.order_id)
        return order

    async def update_status(self, id: UUID, new_status: OrderStatus) -> Order:
        for attempt in range(1, self.max_conflict_retries + 1):
            order = await crud.get_order(id, self.session)
            if order is None:
                raise NotFoundError("Order not found")

            current = OrderStatus(order.status)
            if new_status == current:
                return order
            if new_status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(f"Cannot move order from {current.value} to {new_status.value}")

            is_cod = order.payment_method == PaymentMethod.COD.value
            is_paid = order.payment_status == PaymentStatus.PAID.value
            if not is_cod and not is_paid and new_status != OrderStatus.CANCELLED:
                raise InvalidTransition("Order has not been paid")

            values = {"status": new_status.value}
            credit = False
            if new_status == OrderStatus.CANCELLED and not is_paid:
                values["payment_status"] = PaymentStatus.FAILED.value
            elif is_cod and new_status == OrderStatus.DELIVERED and not is_paid:
                # cash collected on delivery
                values.update(
                    payment_status=PaymentStatus.PAID.value,
                    payment_id=order.order_id,
                    paid_at=datetime.now(timezone.utc),
                    credited=True,
                )
                credit = not order.credited

            try:
                matched = await crud.update_order_versioned(order.id, order.version, values, self.session)
                if matched:
                    if credit:
                        await aggregates.apply_order_completion(
                            order.user_id, order.grand_total, order.order_id, self.session
                        )
                    order = await crud.get_order(id, self.session)
                    await crud.add_outbox_event(order, "order_status_changed", self.session)
                    await self.session.commit()
                    if new_status == OrderStatus.CANCELLED and is_paid and order.credited:
                        logger.warning(
                            "[Orders] Paid order %s cancelled; user %s totals still include %s",
                            order.id, order.user_id, order.grand_total,
                        )
                    logger.info("[Orders] Order %s status %s -> %s", order.id, current.value, new_status.value)
                    return order
                await self.session.rollback()
            except Exception:
                await self.session.rollback()
                raise

            logger.warning("[Orders] Version conflict on order %s (attempt %d/%d)", id, attempt, self.max_conflict_retries)

        raise ConcurrencyConflict("Order was modified concurrently, try again")

    async def delete_order(self, id: UUID) -> Order:
        order = await crud.get_order(id, self.session)
        if order is None:
            raise NotFoundError("Order not found")
        try:
            await crud.add_outbox_event(order, "order_deleted", self.session)
            await crud.delete_order(order.id, self.session)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        if order.credited:
            # totals are left as they are; /admin/users/{id}/reconcile recomputes them
            logger.warning(
                "[Orders] Deleted credited order %s; user %s totals still include %s",
                order.id, order.user_id, order.grand_total,
            )
        logger.info("[Orders] Order %s deleted", order.id)
        return order
