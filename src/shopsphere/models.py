import uuid
from enum import Enum
from sqlalchemy import Boolean, Column, Integer, JSON, String, DECIMAL, TIMESTAMP, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from shopsphere.db import Base

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    RAZORPAY = "razorpay"
    COD = "cod"
    STRIPE = "stripe"
    PAYPAL = "paypal"


class Order(Base):
    __tablename__ = "orders"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # gateway intent id, or a COD_ reference for cash orders
    order_id = Column(String(64), nullable=False, unique=True, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    order_date = Column(TIMESTAMP(timezone=True), server_default=func.now())
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)

    items = Column(JSONDocument, nullable=False, default=list)
    shipping_info = Column(JSONDocument, nullable=True)

    subtotal = Column(DECIMAL(18, 2), nullable=False, default=0)
    delivery_fee = Column(DECIMAL(18, 2), nullable=False, default=0)
    handling_fee = Column(DECIMAL(18, 2), nullable=False, default=0)
    grand_total = Column(DECIMAL(18, 2), nullable=False)

    payment_method = Column(String(20), nullable=False)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_id = Column(String(128), nullable=True)
    paid_at = Column(TIMESTAMP(timezone=True), nullable=True)
    credited = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())


class User(Base):
    __tablename__ = "users"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String(128), primary_key=True)
    total_orders = Column(Integer, nullable=False, default=0)
    total_spent = Column(DECIMAL(18, 2), nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())


class OrdersOutbox(Base):
    __tablename__ = "orders_outbox"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    aggregate_id = Column(Uuid(as_uuid=True), nullable=False)
    event_type = Column(String(50), nullable=False)
    payload = Column(JSONDocument, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    published_at = Column(TIMESTAMP(timezone=True), nullable=True)
