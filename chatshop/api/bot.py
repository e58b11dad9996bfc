"""
ChatShop - Bot API (order placement and customer-side order actions)
"""
import logging
from fastapi import APIRouter, Depends, status

from chatshop.api.deps import get_shop
from chatshop.schemas.api import PlaceOrderRequest, envelope, order_out, transaction_out
from chatshop.services.container import Shop

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bot", tags=["bot"])


@router.post("/orders", status_code=status.HTTP_201_CREATED)
async def place_order(payload: PlaceOrderRequest, shop: Shop = Depends(get_shop)):
    """
    Confirm the customer's open cart into an order.
    Idempotency enforced by IdempotencyMiddleware when an Idempotency-Key is sent.
    """
    placed = await shop.placement.place_order(payload.store_id, payload.user_id)
    return envelope(order_out(placed.order, placed.transaction), "Order created")


@router.delete("/orders/{order_id}")
async def delete_order(order_id: str, shop: Shop = Depends(get_shop)):
    await shop.fulfillment.delete_order(order_id)
    return envelope({"order_id": order_id}, "Order deleted")


@router.post("/transactions/{transaction_id}/cash")
async def cash_payment(transaction_id: str, shop: Shop = Depends(get_shop)):
    transaction = await shop.payments.choose_cash(transaction_id)
    return envelope(transaction_out(transaction), "Cash on delivery selected")
