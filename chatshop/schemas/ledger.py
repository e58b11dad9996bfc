"""
ChatShop - Ledger document shapes

These are the durable JSON shapes stored inside Ingredient.receipt_info and
Order.used_ingredients; reporting and the admin UI read them as-is.
"""
from decimal import Decimal
from pydantic import BaseModel, Field


class RecipeLine(BaseModel):
    ingredient_id: str
    ingredient_name: str = ""
    qty_per_unit: Decimal = Field(..., ge=0)


class ReceiptUsage(BaseModel):
    """One order's draw on one stock lot."""
    order_id: str
    quantity: Decimal
    price: Decimal  # lot unit cost * quantity


class ReceiptBatch(BaseModel):
    receipt_id: str
    quantity: Decimal = Field(..., ge=0)
    price: Decimal = Field(..., ge=0)  # unit cost
    quantity_used: Decimal = Decimal("0")
    is_active: bool = True
    receipt_used_order: list[ReceiptUsage] = Field(default_factory=list)

    @property
    def available(self) -> Decimal:
        return self.quantity - self.quantity_used


class ConsumedIngredient(BaseModel):
    ingredient_id: str
    name: str
    quantity: Decimal
    price: Decimal  # total lot cost of the consumed quantity


class ProductLine(BaseModel):
    """A cart line re-priced against the live menu at confirm time."""
    product_id: str
    name: str
    quantity: int = Field(..., gt=0)
    price: Decimal
    customization: str = ""
