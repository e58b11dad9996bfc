"""
ChatShop - Store profile and menu lookup
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatshop.core.errors import NotFound
from chatshop.models.store import Product, Store
from chatshop.schemas.ledger import RecipeLine
from chatshop.schemas.store import BankAccount, Menu, MenuProduct, StoreProfile


def _to_menu_product(product: Product) -> MenuProduct:
    return MenuProduct(
        id=product.id,
        name=product.name,
        price=product.price,
        description=product.description,
        recipe=[RecipeLine.model_validate(r) for r in product.recipe or []],
    )


class MenuRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def load_profile(self, store_id: str) -> StoreProfile:
        async with self.session_factory() as db:
            store = await db.get(Store, store_id)
            if store is None:
                raise NotFound("Store", store_id)
            result = await db.execute(
                select(Product)
                .where(Product.store_id == store_id, Product.is_active.is_(True))
                .order_by(Product.position, Product.created_at)
            )
            products = result.scalars().all()

        return StoreProfile(
            id=store.id,
            name=store.name,
            phone=store.phone,
            address=store.address,
            is_cash=store.is_cash,
            accounts=[BankAccount.model_validate(a) for a in store.accounts or []],
            line_channel_secret=store.line_channel_secret,
            line_channel_token=store.line_channel_token,
            menu=Menu(products=[_to_menu_product(p) for p in products]),
        )
