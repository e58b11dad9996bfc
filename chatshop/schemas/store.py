"""
ChatShop - Store profile and menu views
"""
from decimal import Decimal
from pydantic import BaseModel, Field

from chatshop.schemas.ledger import RecipeLine


class BankAccount(BaseModel):
    bank: str = ""
    account_number: str = ""
    account_name_th: str = ""
    account_name_en: str = ""
    promptpay_id: str = ""


class MenuProduct(BaseModel):
    id: str
    name: str
    price: Decimal
    description: str | None = None
    recipe: list[RecipeLine] = Field(default_factory=list)


def _normalize(name: str) -> str:
    return " ".join(name.split()).casefold()


class Menu(BaseModel):
    products: list[MenuProduct] = Field(default_factory=list)

    def find(self, name: str) -> MenuProduct | None:
        wanted = _normalize(name)
        for product in self.products:
            if _normalize(product.name) == wanted:
                return product
        return None

    def at(self, index: int) -> MenuProduct | None:
        if 0 <= index < len(self.products):
            return self.products[index]
        return None

    def names(self) -> list[str]:
        return [p.name for p in self.products]


class StoreProfile(BaseModel):
    id: str
    name: str
    phone: str | None = None
    address: str | None = None
    is_cash: bool = True
    accounts: list[BankAccount] = Field(default_factory=list)
    line_channel_secret: str = ""
    line_channel_token: str = ""
    menu: Menu = Field(default_factory=Menu)
