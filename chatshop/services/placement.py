"""
ChatShop - Order placement

Turns the customer's open cart into an Order + Transaction:
  1. claim the pending-payment slot (a second confirm while unpaid is a duplicate)
  2. validate the cart, re-price every line from the live menu
  3. one DB transaction: insert order, FIFO-consume ingredients, insert transaction
  4. take the confirmed lines out of the session cart
Any failure in 2-3 leaves no order, no transaction and no stock movement, and
releases the pending-payment slot. Once 3 commits the slot holds the new
transaction id; a failed cart clear is only logged.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatshop.core.errors import (
    ChatShopError, DuplicateConfirmation, MissingDeliveryAddress, NoActiveOrder,
)
from chatshop.core.optimistic_lock import with_optimistic_retry
from chatshop.models.order import Order, OrderStatus, Transaction
from chatshop.schemas.conversation import CartItem, CurrentOrder
from chatshop.schemas.ledger import ProductLine
from chatshop.schemas.store import Menu, StoreProfile
from chatshop.services import cart
from chatshop.services.ledger import LedgerEngine, Requirement, required_quantities
from chatshop.services.menu import MenuRepository
from chatshop.services.session_store import PendingPayments, SessionStore

logger = logging.getLogger(__name__)


@dataclass
class PlacedOrder:
    order: Order
    transaction: Transaction
    lines: list[ProductLine]

    @property
    def items(self) -> list[CartItem]:
        return [
            CartItem(name=l.name, quantity=l.quantity, customization=l.customization, price=l.price)
            for l in self.lines
        ]


def price_lines(items: list[CartItem], menu: Menu) -> list[ProductLine]:
    """Cart prices are not trusted at confirm time; lines no longer on the menu drop out."""
    lines = []
    for item in items:
        product = menu.find(item.name)
        if product is None:
            logger.info("Dropping '%s' at confirm: no longer on the menu", item.name)
            continue
        lines.append(ProductLine(
            product_id=product.id,
            name=product.name,
            quantity=item.quantity,
            price=product.price,
            customization=item.customization,
        ))
    return lines


def order_total(lines: list[ProductLine]) -> Decimal:
    return sum((line.price * line.quantity for line in lines), Decimal("0"))


class OrderPlacementService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sessions: SessionStore,
        pending: PendingPayments,
        ledger: LedgerEngine,
        menus: MenuRepository,
    ):
        self.session_factory = session_factory
        self.sessions = sessions
        self.pending = pending
        self.ledger = ledger
        self.menus = menus

    async def place_order(
        self, store_id: str, user_id: str, profile: StoreProfile | None = None,
    ) -> PlacedOrder:
        holder = await self.pending.reserve(user_id, store_id)
        if holder is not None:
            raise DuplicateConfirmation(holder)
        try:
            placed = await self._confirm(store_id, user_id, profile)
        except BaseException:
            await self.pending.clear(user_id, store_id)
            raise
        # committed: the slot now guards this transaction whatever happens to the cart
        await self.pending.set(user_id, store_id, placed.transaction.id)
        await self._clear_confirmed(user_id, store_id, placed)
        return placed

    async def _clear_confirmed(self, user_id: str, store_id: str, placed: PlacedOrder) -> None:
        confirmed = placed.items
        try:
            await self.sessions.mutate(user_id, store_id, lambda s: cart.remove_items(s, confirmed))
        except (ChatShopError, RedisError) as exc:
            logger.warning(
                "Order %s placed but the cart of %s could not be cleared: %s", placed.order.id, user_id, exc,
            )

    async def _confirm(self, store_id: str, user_id: str, profile: StoreProfile | None) -> PlacedOrder:
        state = await self.sessions.get(user_id, store_id)
        current = state.current_order if state else None
        if current is None or not current.items:
            raise NoActiveOrder()
        if not current.delivery_address.strip():
            raise MissingDeliveryAddress()

        profile = profile or await self.menus.load_profile(store_id)
        lines = price_lines(current.items, profile.menu)
        if not lines:
            raise NoActiveOrder("None of the items in the cart are on the menu any more.")

        recipes = {p.id: p.recipe for p in profile.menu.products}
        requirements = required_quantities(lines, recipes)

        async with self.ledger.locked(r.ingredient_id for r in requirements):
            order, transaction = await self._write_order(store_id, user_id, current, lines, requirements)

        logger.info(
            "Order %s placed for %s at store %s, total=%s",
            order.id, user_id, store_id, transaction.total_amount,
        )
        return PlacedOrder(order=order, transaction=transaction, lines=lines)

    @with_optimistic_retry()
    async def _write_order(
        self,
        store_id: str,
        user_id: str,
        current: CurrentOrder,
        lines: list[ProductLine],
        requirements: list[Requirement],
    ) -> tuple[Order, Transaction]:
        order_id = str(uuid.uuid4())
        async with self.session_factory() as db:
            async with db.begin():
                order = Order(
                    id=order_id,
                    store_id=store_id,
                    customer_line_id=user_id,
                    customer_name=current.customer_name,
                    customer_adds=current.delivery_address,
                    product_info=[line.model_dump(mode="json") for line in lines],
                    product_ids=list(dict.fromkeys(line.product_id for line in lines)),
                    used_ingredients=[],
                    ingredient_ids=[],
                    status=OrderStatus.PENDING,
                )
                db.add(order)

                consumed = await self.ledger.consume(db, order_id, requirements)
                order.used_ingredients = [c.model_dump(mode="json") for c in consumed]
                order.ingredient_ids = [c.ingredient_id for c in consumed]

                transaction = Transaction(
                    id=str(uuid.uuid4()),
                    order_id=order_id,
                    total_amount=order_total(lines),
                )
                db.add(transaction)
        return order, transaction
