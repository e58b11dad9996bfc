"""
ChatShop - Conversation state shapes
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, Field


class OrderType(str, Enum):
    NEW = "new"
    EDIT = "edit"
    CART = "cart"


class CartItem(BaseModel):
    name: str
    quantity: int = Field(..., gt=0)
    customization: str = ""
    price: Decimal

    @property
    def key(self) -> tuple[str, str]:
        return self.name, self.customization or ""

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


class CurrentOrder(BaseModel):
    items: list[CartItem] = Field(default_factory=list)
    delivery_address: str = ""
    customer_name: str = ""
    order_id: str | None = None


class ConversationState(BaseModel):
    """
    One per (user_id, store_id). `version` is the compare-and-swap stamp:
    it is bumped by the session store on every successful write.
    """
    user_id: str
    store_id: str
    is_bot_enabled: bool = True
    order_type: OrderType = OrderType.NEW
    current_order: CurrentOrder | None = None
    last_interaction: datetime
    expires_at: datetime
    version: int = 0


class CartView(BaseModel):
    items: list[CartItem]
    total: Decimal
    item_count: int
    delivery_address: str = ""
    customer_name: str = ""
