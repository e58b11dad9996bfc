"""
ChatShop - Order fulfillment state machine

  PENDING -> WAITING_DELIVERY -> IN_DELIVERY -> FINISHED
  PENDING | WAITING_DELIVERY -> CANCELLED

Cancellation returns the order's stock and rejects its transaction in the same
DB transaction that writes CANCELLED, so nobody can observe a cancelled order
whose ingredients have not been restored.
"""
import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatshop.core.errors import InvalidStatusTransition, NotFound
from chatshop.core.optimistic_lock import with_optimistic_retry
from chatshop.models.order import Order, OrderStatus, PaymentMethod, Transaction
from chatshop.schemas.ledger import ConsumedIngredient
from chatshop.services.ledger import LedgerEngine
from chatshop.services.notifier import Notifier, notify_safely
from chatshop.services.session_store import PendingPayments

logger = logging.getLogger(__name__)

# ── Status transition map ─────────────────────────────────────────────────────
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING:          frozenset({OrderStatus.WAITING_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.WAITING_DELIVERY: frozenset({OrderStatus.IN_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.IN_DELIVERY:      frozenset({OrderStatus.FINISHED}),
    OrderStatus.FINISHED:         frozenset(),
    OrderStatus.CANCELLED:        frozenset(),
}

STATUS_MESSAGES: dict[OrderStatus, str] = {
    OrderStatus.WAITING_DELIVERY: "Payment received. Your order {order_id} is being prepared.",
    OrderStatus.IN_DELIVERY:      "Your order {order_id} is on its way.",
    OrderStatus.FINISHED:         "Your order {order_id} has been delivered. Thank you!",
    OrderStatus.CANCELLED:        "Your order {order_id} has been cancelled.",
}


def check_transition(current: OrderStatus, target: OrderStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[OrderStatus(current)]:
        raise InvalidStatusTransition(OrderStatus(current).value, target.value)


def used_ingredients(order: Order) -> list[ConsumedIngredient]:
    return [ConsumedIngredient.model_validate(u) for u in order.used_ingredients or []]


async def load_order(db: AsyncSession, order_id: str, store_id: str | None = None) -> Order:
    order = await db.get(Order, order_id, populate_existing=True)
    if order is None or (store_id is not None and order.store_id != store_id):
        raise NotFound("Order", order_id)
    return order


async def transaction_for(db: AsyncSession, order_id: str) -> Transaction | None:
    result = await db.execute(select(Transaction).where(Transaction.order_id == order_id))
    return result.scalar_one_or_none()


class FulfillmentService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerEngine,
        notifier: Notifier | None = None,
        pending: PendingPayments | None = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.notifier = notifier
        self.pending = pending

    async def get_order(self, order_id: str, store_id: str | None = None) -> Order:
        async with self.session_factory() as db:
            return await load_order(db, order_id, store_id)

    async def update_status(
        self, order_id: str, target: OrderStatus | str, store_id: str | None = None,
    ) -> Order:
        target = OrderStatus(target)
        if target == OrderStatus.CANCELLED:
            return await self.cancel_order(order_id, store_id)

        async with self.session_factory() as db:
            async with db.begin():
                order = await load_order(db, order_id, store_id)
                check_transition(order.status, target)
                previous = order.status
                order.status = target

        logger.info("Order %s: %s -> %s", order_id, previous.value, target.value)
        await self._notify(order, target)
        return order

    async def cancel_order(self, order_id: str, store_id: str | None = None) -> Order:
        order = await self.get_order(order_id, store_id)
        check_transition(order.status, OrderStatus.CANCELLED)

        async with self.ledger.locked(order.ingredient_ids or []):
            order, transaction = await self._cancel(order_id, store_id)

        if self.pending is not None and transaction is not None:
            holder = await self.pending.get(order.customer_line_id, order.store_id)
            if holder == transaction.id:
                await self.pending.clear(order.customer_line_id, order.store_id)

        logger.info("Order %s cancelled, stock restored", order_id)
        await self._notify(order, OrderStatus.CANCELLED)
        return order

    @with_optimistic_retry()
    async def _cancel(self, order_id: str, store_id: str | None) -> tuple[Order, Transaction | None]:
        async with self.session_factory() as db:
            async with db.begin():
                order = await load_order(db, order_id, store_id)
                check_transition(order.status, OrderStatus.CANCELLED)
                await self.ledger.reverse(db, order.id, used_ingredients(order))
                transaction = await transaction_for(db, order.id)
                if transaction is not None:
                    transaction.is_confirmed = False
                    transaction.payment_method = PaymentMethod.REJECTED
                order.status = OrderStatus.CANCELLED
        return order, transaction

    async def delete_order(self, order_id: str, store_id: str | None = None) -> None:
        """Admin delete: stock is restored before the order and its transaction go."""
        order = await self.get_order(order_id, store_id)
        async with self.ledger.locked(order.ingredient_ids or []):
            await self._delete(order_id, store_id)
        logger.info("Order %s deleted", order_id)

    @with_optimistic_retry()
    async def _delete(self, order_id: str, store_id: str | None) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                order = await load_order(db, order_id, store_id)
                await self.ledger.reverse(db, order.id, used_ingredients(order))
                await db.execute(delete(Transaction).where(Transaction.order_id == order.id))
                await db.delete(order)

    async def _notify(self, order: Order, status: OrderStatus) -> None:
        template = STATUS_MESSAGES.get(status)
        if template is None:
            return
        await notify_safely(
            self.notifier, order.store_id, order.customer_line_id,
            template.format(order_id=order.id),
        )
