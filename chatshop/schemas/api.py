"""
ChatShop - HTTP request/response shapes
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from pydantic import BaseModel, Field

from chatshop.models.order import Order, OrderStatus, Transaction


class PlaceOrderRequest(BaseModel):
    store_id: str
    user_id: str


class StatusUpdateRequest(BaseModel):
    status: OrderStatus


class ReceiveStockRequest(BaseModel):
    receipt_id: str
    quantity: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., ge=0)


class ProductStat(BaseModel):
    name: str
    total_orders: int = 0
    quantity: int = 0
    revenue: Decimal = Decimal("0")


class DailySales(BaseModel):
    date: str
    orders: int = 0
    sales: Decimal = Decimal("0")


class SalesStats(BaseModel):
    total_orders: int
    total_sales: Decimal
    average_order_value: Decimal
    product_stats: list[ProductStat]
    daily_sales: list[DailySales]


def envelope(data: Any = None, message: str = "") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def error_envelope(error_type: str, message: str) -> dict[str, Any]:
    return {
        "success": False,
        "error": {"type": error_type, "message": message},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def transaction_out(transaction: Transaction | None) -> dict[str, Any] | None:
    if transaction is None:
        return None
    return {
        "transaction_id": transaction.id,
        "order_id": transaction.order_id,
        "total_amount": str(transaction.total_amount),
        "payment_method": transaction.payment_method.value if transaction.payment_method else None,
        "is_confirmed": transaction.is_confirmed,
    }


def order_out(order: Order, transaction: Transaction | None = None) -> dict[str, Any]:
    return {
        "order_id": order.id,
        "store_id": order.store_id,
        "customer_line_id": order.customer_line_id,
        "customer_name": order.customer_name,
        "customer_adds": order.customer_adds,
        "product_info": order.product_info,
        "used_ingredients": order.used_ingredients,
        "status": OrderStatus(order.status).value,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "transaction": transaction_out(transaction),
    }
