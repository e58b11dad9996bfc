"""
ChatShop - Order and transaction models

[TRANSACTIONAL DATA] orders are immutable after creation except for `status`
and `used_ingredients`; transactions change only on payment confirmation or rejection.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from sqlalchemy import String, DateTime, Text, Enum, JSON
from sqlalchemy.orm import Mapped, mapped_column
from chatshop.db.database import Base, DecimalText, utcnow


class OrderStatus(str, PyEnum):
    PENDING = "PENDING"
    WAITING_DELIVERY = "WAITING_DELIVERY"
    IN_DELIVERY = "IN_DELIVERY"
    FINISHED = "FINISHED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, PyEnum):
    CASH = "CASH"
    TRANSFER = "TRANSFER"
    REJECTED = "REJECTED"


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    customer_line_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    customer_adds: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # [{"product_id", "name", "quantity", "price", "customization"}]
    product_info: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    product_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # Serialized chatshop.schemas.ledger.ConsumedIngredient list
    used_ingredients: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    ingredient_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, name="order_status"), default=OrderStatus.PENDING, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(String(36), unique=True, index=True, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    payment_method: Mapped[PaymentMethod | None] = mapped_column(
        Enum(PaymentMethod, name="payment_method"), nullable=True
    )
    is_confirmed: Mapped[bool] = mapped_column(default=False, nullable=False)
    slip: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    slip_ref: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
