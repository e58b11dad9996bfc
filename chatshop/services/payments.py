"""
ChatShop - Payment handling

Cash selection, admin confirm/reject, and application of a slip verification
result. Payment verification itself happens elsewhere; only its outcome is used.
"""
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatshop.core.errors import NotFound, PaymentRejected
from chatshop.models.order import Order, OrderStatus, PaymentMethod, Transaction
from chatshop.schemas.store import BankAccount
from chatshop.services.fulfillment import FulfillmentService, check_transition
from chatshop.services.session_store import PendingPayments
from chatshop.services.slip import SlipVerification, best_account_match

logger = logging.getLogger(__name__)


class PaymentService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fulfillment: FulfillmentService,
        pending: PendingPayments,
    ):
        self.session_factory = session_factory
        self.fulfillment = fulfillment
        self.pending = pending

    async def _load(self, db: AsyncSession, transaction_id: str, store_id: str | None) -> tuple[Transaction, Order]:
        transaction = await db.get(Transaction, transaction_id, populate_existing=True)
        order = await db.get(Order, transaction.order_id) if transaction else None
        if transaction is None or order is None or (store_id and order.store_id != store_id):
            raise NotFound("Transaction", transaction_id)
        return transaction, order

    async def get_transaction(self, transaction_id: str, store_id: str | None = None) -> Transaction:
        async with self.session_factory() as db:
            transaction, _ = await self._load(db, transaction_id, store_id)
        return transaction

    async def choose_cash(self, transaction_id: str, store_id: str | None = None) -> Transaction:
        """Customer pays on delivery; the store confirms once the cash is in hand."""
        async with self.session_factory() as db:
            async with db.begin():
                transaction, order = await self._load(db, transaction_id, store_id)
                check_transition(order.status, OrderStatus.WAITING_DELIVERY)
                transaction.payment_method = PaymentMethod.CASH
                transaction.is_confirmed = False
        await self.pending.clear(order.customer_line_id, order.store_id)
        logger.info("Transaction %s: cash on delivery", transaction_id)
        return transaction

    async def confirm_payment(self, transaction_id: str, store_id: str | None = None) -> Transaction:
        async with self.session_factory() as db:
            async with db.begin():
                transaction, order = await self._load(db, transaction_id, store_id)
                check_transition(order.status, OrderStatus.WAITING_DELIVERY)
                transaction.is_confirmed = True
                if transaction.payment_method is None:
                    transaction.payment_method = PaymentMethod.TRANSFER
        await self.pending.clear(order.customer_line_id, order.store_id)
        await self.fulfillment.update_status(order.id, OrderStatus.WAITING_DELIVERY)
        return transaction

    async def reject_payment(self, transaction_id: str, store_id: str | None = None) -> Order:
        """Rejecting a payment cancels the order, which also restores its stock."""
        async with self.session_factory() as db:
            _, order = await self._load(db, transaction_id, store_id)
        return await self.fulfillment.cancel_order(order.id)

    async def apply_slip(
        self,
        transaction_id: str,
        verification: SlipVerification,
        accounts: list[BankAccount],
        store_id: str | None = None,
    ) -> Transaction:
        if not verification.success:
            raise PaymentRejected(verification.message or "The slip could not be verified.")
        if accounts and best_account_match(verification.receiver_name, accounts) is None:
            raise PaymentRejected(f"Receiver '{verification.receiver_name}' is not one of this store's accounts.")

        async with self.session_factory() as db:
            async with db.begin():
                transaction, order = await self._load(db, transaction_id, store_id)
                check_transition(order.status, OrderStatus.WAITING_DELIVERY)
                if verification.amount is not None and verification.amount != transaction.total_amount:
                    raise PaymentRejected(
                        f"Slip amount {verification.amount} does not match {transaction.total_amount}."
                    )
                if verification.trans_ref:
                    reused = await db.execute(
                        select(Transaction.id).where(
                            Transaction.slip_ref == verification.trans_ref,
                            Transaction.id != transaction.id,
                        )
                    )
                    if reused.first() is not None:
                        raise PaymentRejected("This slip has already been used.")
                transaction.slip = verification.model_dump(mode="json")
                transaction.slip_ref = verification.trans_ref or None
                transaction.payment_method = PaymentMethod.TRANSFER
                transaction.is_confirmed = True

        await self.pending.clear(order.customer_line_id, order.store_id)
        await self.fulfillment.update_status(order.id, OrderStatus.WAITING_DELIVERY)
        logger.info("Transaction %s confirmed by slip %s", transaction_id, verification.trans_ref)
        return transaction
