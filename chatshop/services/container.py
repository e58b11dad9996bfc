"""
ChatShop - Service wiring

One Shop per process, built in the application lifespan (or by tests with
fakes) and torn down with it.
"""
from dataclasses import dataclass

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatshop.services.classifier import IntentClassifier, build_classifier
from chatshop.services.conversation import ConversationHandler
from chatshop.services.fulfillment import FulfillmentService
from chatshop.services.ledger import LedgerEngine
from chatshop.services.menu import MenuRepository
from chatshop.services.notifier import LineMessenger, MessagingClientCache, Notifier
from chatshop.services.payments import PaymentService
from chatshop.services.placement import OrderPlacementService
from chatshop.services.session_store import PendingPayments, SessionStore
from chatshop.services.slip import SlipVerifier


@dataclass
class Shop:
    session_factory: async_sessionmaker[AsyncSession]
    menus: MenuRepository
    sessions: SessionStore
    pending: PendingPayments
    ledger: LedgerEngine
    placement: OrderPlacementService
    fulfillment: FulfillmentService
    payments: PaymentService
    conversation: ConversationHandler
    clients: MessagingClientCache
    messenger: LineMessenger

    async def aclose(self) -> None:
        await self.clients.aclose()


def build_shop(
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis | None = None,
    classifier: IntentClassifier | None = None,
    notifier: Notifier | None = None,
    slip_verifier: SlipVerifier | None = None,
    clients: MessagingClientCache | None = None,
) -> Shop:
    menus = MenuRepository(session_factory)
    sessions = SessionStore(redis)
    pending = PendingPayments(redis)
    ledger = LedgerEngine()
    clients = clients if clients is not None else MessagingClientCache()

    async def token_for_store(store_id: str) -> str:
        return (await menus.load_profile(store_id)).line_channel_token

    messenger = LineMessenger(clients, token_for_store)
    placement = OrderPlacementService(session_factory, sessions, pending, ledger, menus)
    fulfillment = FulfillmentService(
        session_factory, ledger, notifier if notifier is not None else messenger, pending,
    )
    payments = PaymentService(session_factory, fulfillment, pending)
    conversation = ConversationHandler(
        sessions, pending, classifier if classifier is not None else build_classifier(),
        placement, fulfillment, payments, slip_verifier,
    )
    return Shop(
        session_factory=session_factory,
        menus=menus,
        sessions=sessions,
        pending=pending,
        ledger=ledger,
        placement=placement,
        fulfillment=fulfillment,
        payments=payments,
        conversation=conversation,
        clients=clients,
        messenger=messenger,
    )
