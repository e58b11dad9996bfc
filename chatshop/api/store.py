"""
ChatShop - Store admin API (fulfillment, payments, stock, reporting)
"""
import logging
from fastapi import APIRouter, Depends, Query, status

from chatshop.api.deps import get_shop
from chatshop.models.order import OrderStatus
from chatshop.schemas.api import (
    ReceiveStockRequest, StatusUpdateRequest, envelope, order_out, transaction_out,
)
from chatshop.services import reports
from chatshop.services.container import Shop
from chatshop.services.fulfillment import load_order, transaction_for

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/stores/{store_id}", tags=["store"])


@router.get("/orders")
async def list_orders(
    store_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: OrderStatus | None = Query(None, alias="status"),
    shop: Shop = Depends(get_shop),
):
    """Store order board, newest first."""
    rows, total = await reports.list_orders(shop.session_factory, store_id, page, limit, status_filter)
    return envelope({
        "orders": [order_out(order, transaction) for order, transaction in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    })


@router.get("/orders/{order_id}")
async def get_order(store_id: str, order_id: str, shop: Shop = Depends(get_shop)):
    async with shop.session_factory() as db:
        order = await load_order(db, order_id, store_id)
        transaction = await transaction_for(db, order_id)
    return envelope(order_out(order, transaction))


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    store_id: str, order_id: str, payload: StatusUpdateRequest, shop: Shop = Depends(get_shop),
):
    order = await shop.fulfillment.update_status(order_id, payload.status, store_id)
    return envelope(order_out(order), f"Order is now {payload.status.value}")


@router.post("/orders/{order_id}/cancel")
async def cancel_order(store_id: str, order_id: str, shop: Shop = Depends(get_shop)):
    order = await shop.fulfillment.cancel_order(order_id, store_id)
    return envelope(order_out(order), "Order cancelled")


@router.post("/transactions/{transaction_id}/confirm")
async def confirm_transaction(store_id: str, transaction_id: str, shop: Shop = Depends(get_shop)):
    transaction = await shop.payments.confirm_payment(transaction_id, store_id)
    return envelope(transaction_out(transaction), "Payment confirmed")


@router.post("/transactions/{transaction_id}/reject")
async def reject_transaction(store_id: str, transaction_id: str, shop: Shop = Depends(get_shop)):
    order = await shop.payments.reject_payment(transaction_id, store_id)
    return envelope(order_out(order), "Payment rejected")


@router.post("/ingredients/{ingredient_id}/receipts", status_code=status.HTTP_201_CREATED)
async def receive_stock(
    store_id: str, ingredient_id: str, payload: ReceiveStockRequest, shop: Shop = Depends(get_shop),
):
    async with shop.ledger.locked([ingredient_id]):
        async with shop.session_factory() as db:
            async with db.begin():
                ingredient = await shop.ledger.receive(
                    db, ingredient_id, payload.receipt_id, payload.quantity, payload.price, store_id,
                )
    return envelope({
        "ingredient_id": ingredient.id,
        "quantity": str(ingredient.quantity),
        "receipt_info": ingredient.receipt_info,
    }, "Stock received")


@router.get("/stats")
async def stats(store_id: str, shop: Shop = Depends(get_shop)):
    result = await reports.sales_stats(shop.session_factory, store_id)
    return envelope(result.model_dump(mode="json"))
