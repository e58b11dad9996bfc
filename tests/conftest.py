"""
Shared fixtures: fakeredis for sessions, a throwaway aiosqlite database per test,
and a seeded store whose menu matches the order scenarios:

  Pad Krapow  60  -> 100 g Pork per plate
  Egg         15  -> 1 Egg per portion
  Pork: one lot of 500 g at 0.2/g      Egg: one lot of 50 at 3/ea
"""
from dataclasses import dataclass, field
from decimal import Decimal

import fakeredis
import pytest
import pytest_asyncio

import chatshop.models  # noqa: F401  (registers tables on Base.metadata)
from chatshop.db.database import Base, build_engine, build_session_factory
from chatshop.models import Ingredient, Product, Store
from chatshop.schemas.intents import RequestedItem
from chatshop.schemas.ledger import ReceiptBatch
from chatshop.services import cart
from chatshop.services.classifier import KeywordClassifier
from chatshop.services.container import build_shop
from chatshop.services.session_store import PendingPayments, SessionStore

STORE_ID = "store-1"
USER_ID = "U-customer-1"
PORK_ID = "ing-pork"
EGG_ID = "ing-egg"
KRAPOW_ID = "prod-krapow"
EGG_PRODUCT_ID = "prod-egg"


@dataclass
class RecordingNotifier:
    sent: list[tuple[str, str, str]] = field(default_factory=list)

    async def notify(self, store_id: str, user_id: str, message: str) -> None:
        self.sent.append((store_id, user_id, message))


class FailingNotifier:
    async def notify(self, store_id: str, user_id: str, message: str) -> None:
        raise ConnectionError("push endpoint down")


def batch(receipt_id: str, quantity: str, price: str, used: str = "0") -> dict:
    q, u = Decimal(quantity), Decimal(used)
    return ReceiptBatch(
        receipt_id=receipt_id, quantity=q, price=Decimal(price), quantity_used=u, is_active=u < q,
    ).model_dump(mode="json")


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def db_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def seeded(db_factory):
    async with db_factory() as db:
        async with db.begin():
            db.add(Store(
                id=STORE_ID, name="Krapow House", phone="021234567", is_cash=True,
                accounts=[{"bank": "KBank", "account_number": "123-4-56789-0",
                           "account_name_th": "สมชาย ใจดี", "account_name_en": "Somchai Jaidee"}],
                line_channel_secret="channel-secret", line_channel_token="channel-token",
            ))
            db.add(Product(
                id=KRAPOW_ID, store_id=STORE_ID, name="Pad Krapow", price=Decimal("60"), position=0,
                recipe=[{"ingredient_id": PORK_ID, "ingredient_name": "Pork", "qty_per_unit": "100"}],
            ))
            db.add(Product(
                id=EGG_PRODUCT_ID, store_id=STORE_ID, name="Egg", price=Decimal("15"), position=1,
                recipe=[{"ingredient_id": EGG_ID, "ingredient_name": "Egg", "qty_per_unit": "1"}],
            ))
            db.add(Ingredient(
                id=PORK_ID, store_id=STORE_ID, name="Pork", unit="g", quantity=Decimal("500"),
                receipt_info=[batch("r-pork-1", "500", "0.2")], receipt_ids=["r-pork-1"],
                product_ids=[KRAPOW_ID],
            ))
            db.add(Ingredient(
                id=EGG_ID, store_id=STORE_ID, name="Egg", unit="pcs", quantity=Decimal("50"),
                receipt_info=[batch("r-egg-1", "50", "3")], receipt_ids=["r-egg-1"],
                product_ids=[EGG_PRODUCT_ID],
            ))
    return db_factory


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def shop(seeded, redis_client, notifier):
    return build_shop(seeded, redis=redis_client, classifier=KeywordClassifier(), notifier=notifier)


@pytest.fixture
def sessions(redis_client):
    return SessionStore(redis_client)


@pytest.fixture
def pending(redis_client):
    return PendingPayments(redis_client)


async def load_ingredient(factory, ingredient_id: str) -> Ingredient:
    async with factory() as db:
        return await db.get(Ingredient, ingredient_id)


async def fill_cart(shop, *items, user_id=USER_ID, address="12 Main St"):
    """Put (name, quantity) lines into the customer's cart through the session store."""
    profile = await shop.menus.load_profile(STORE_ID)
    requested = [RequestedItem(name=name, quantity=qty) for name, qty in items]
    return await shop.sessions.mutate(user_id, STORE_ID, lambda s: cart.place_order(
        s, user_id=user_id, store_id=STORE_ID, items=requested,
        delivery_address=address, customer_name="Somchai", menu=profile.menu,
    ))
