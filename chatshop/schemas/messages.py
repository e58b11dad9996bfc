"""
ChatShop - Outbound message builders

The conversation handler only ever returns these shapes; the messaging client
renders them for the platform.
"""
from decimal import Decimal
from typing import Annotated, Literal, Union
from pydantic import BaseModel, Field

from chatshop.schemas.conversation import CartItem
from chatshop.schemas.store import BankAccount, MenuProduct


class QuickReply(BaseModel):
    label: str
    data: str  # postback payload, e.g. "confirm" or "cash&<transaction_id>"


class TextReply(BaseModel):
    kind: Literal["text"] = "text"
    text: str
    quick_replies: list[QuickReply] = Field(default_factory=list)


class MenuReply(BaseModel):
    kind: Literal["menu"] = "menu"
    store_name: str
    products: list[MenuProduct]


class CartReply(BaseModel):
    kind: Literal["cart"] = "cart"
    items: list[CartItem]
    total: Decimal
    delivery_address: str = ""
    customer_name: str = ""


class OrderPlacedReply(BaseModel):
    kind: Literal["order_placed"] = "order_placed"
    order_id: str
    transaction_id: str
    items: list[CartItem]
    total: Decimal
    delivery_address: str
    accounts: list[BankAccount] = Field(default_factory=list)
    cash_enabled: bool = True


OutboundMessage = Annotated[
    Union[TextReply, MenuReply, CartReply, OrderPlacedReply],
    Field(discriminator="kind"),
]


def render_text(message: OutboundMessage) -> str:
    """Plain-text rendering used for platforms without rich layouts."""
    match message:
        case TextReply():
            return message.text
        case MenuReply():
            lines = [f"{message.store_name} menu"]
            lines += [f"{i + 1}. {p.name} - {p.price}" for i, p in enumerate(message.products)]
            return "\n".join(lines)
        case CartReply():
            lines = [f"{item.name} x{item.quantity} = {item.subtotal}" for item in message.items]
            lines.append(f"Total: {message.total}")
            if message.delivery_address:
                lines.append(f"Deliver to: {message.delivery_address}")
            return "\n".join(lines)
        case OrderPlacedReply():
            lines = [f"Order {message.order_id} placed"]
            lines += [f"{item.name} x{item.quantity}" for item in message.items]
            lines.append(f"Total: {message.total}")
            lines.append(f"Deliver to: {message.delivery_address}")
            for account in message.accounts:
                lines.append(f"{account.bank} {account.account_number} {account.account_name_en}".strip())
            return "\n".join(lines)
