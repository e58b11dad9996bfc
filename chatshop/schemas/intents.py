"""
ChatShop - Intent classification results

A closed set of intents. Each classifier returns exactly one of the
`Classification` variants; the conversation handler matches on the variant type.
"""
from enum import Enum
from typing import Annotated, Literal, Union
from pydantic import BaseModel, Field


class Intent(str, Enum):
    GET_PRODUCT = "get_product"
    SHOW_CART = "show_cart"
    PLACE_ORDER = "place_order"
    EDIT_ITEMS = "edit_items"
    EDIT_ADDRESS = "edit_address"
    CANCEL_ORDER = "cancel_order"
    REPORT_ISSUE = "report_issue"
    ENABLE_BOT = "enable_bot"
    GREETING = "greeting"
    NOT_UNDERSTOOD = "not_understood"


class RequestedItem(BaseModel):
    name: str
    quantity: int = 1
    customization: str = ""


class ItemModification(BaseModel):
    action: Literal["add", "remove", "replace"]
    name: str
    quantity: int = 1
    customization: str = ""
    replacement_name: str | None = None
    replacement_quantity: int = 1


class PlaceOrder(BaseModel):
    intent: Literal[Intent.PLACE_ORDER] = Intent.PLACE_ORDER
    items: list[RequestedItem] = Field(default_factory=list)
    delivery_address: str = ""


class EditItems(BaseModel):
    intent: Literal[Intent.EDIT_ITEMS] = Intent.EDIT_ITEMS
    modifications: list[ItemModification] = Field(default_factory=list)


class EditAddress(BaseModel):
    intent: Literal[Intent.EDIT_ADDRESS] = Intent.EDIT_ADDRESS
    new_address: str


class NotUnderstood(BaseModel):
    intent: Literal[Intent.NOT_UNDERSTOOD] = Intent.NOT_UNDERSTOOD
    text: str = ""


class Command(BaseModel):
    """Argument-free intents."""
    intent: Literal[
        Intent.GET_PRODUCT,
        Intent.SHOW_CART,
        Intent.CANCEL_ORDER,
        Intent.REPORT_ISSUE,
        Intent.ENABLE_BOT,
        Intent.GREETING,
    ]


Classification = Annotated[
    Union[PlaceOrder, EditItems, EditAddress, NotUnderstood, Command],
    Field(discriminator="intent"),
]


class CartSnapshot(BaseModel):
    """What the classifier is allowed to see of the cart."""
    items: list[RequestedItem] = Field(default_factory=list)
    delivery_address: str = ""
