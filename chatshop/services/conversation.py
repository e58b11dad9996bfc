"""
ChatShop - Conversation handler

handle_inbound_event is the webhook's single entry point: text goes through the
intent classifier, postbacks through the typed action set, images through slip
verification. Every domain error becomes its own reply; none reach the platform.
"""
import asyncio
import logging
from typing import assert_never

from chatshop.core.config import get_settings
from chatshop.core.errors import (
    ConcurrencyConflict, DuplicateConfirmation, InsufficientIngredient, InvalidStatusTransition,
    MissingDeliveryAddress, NoActiveOrder, NotFound, PaymentRejected,
)
from chatshop.schemas.conversation import ConversationState
from chatshop.schemas.events import (
    ImageMessageEvent, InboundEvent, PostbackAction, PostbackEvent, TextMessageEvent, parse_postback,
)
from chatshop.schemas.intents import (
    CartSnapshot, Classification, Command, EditAddress, EditItems, Intent, NotUnderstood,
    PlaceOrder, RequestedItem,
)
from chatshop.schemas.messages import (
    CartReply, MenuReply, OrderPlacedReply, OutboundMessage, QuickReply, TextReply,
)
from chatshop.schemas.store import StoreProfile
from chatshop.services import cart
from chatshop.services.classifier import IntentClassifier, classify_with_timeout
from chatshop.services.fulfillment import FulfillmentService
from chatshop.services.payments import PaymentService
from chatshop.services.placement import OrderPlacementService
from chatshop.services.session_store import RESERVED, PendingPayments, SessionStore
from chatshop.services.slip import SlipVerifier

settings = get_settings()
logger = logging.getLogger(__name__)

CART_ACTIONS = [
    QuickReply(label="Confirm order", data=PostbackAction.CONFIRM.value),
    QuickReply(label="Add more", data=PostbackAction.ADD.value),
    QuickReply(label="Menu", data=PostbackAction.PRODUCT_LIST.value),
]
HELP_ACTIONS = [
    QuickReply(label="Menu", data=PostbackAction.PRODUCT_LIST.value),
    QuickReply(label="How to order", data=PostbackAction.GUIDE.value),
    QuickReply(label="Contact the shop", data=PostbackAction.CONTACT_ADMIN.value),
]
GUIDE_TEXT = (
    "Send the items you want, e.g. \"Pad Krapow x2 deliver to 12 Main St\".\n"
    "Type \"cart\" to see your cart, \"remove <item>\" or \"change address to <address>\" "
    "to edit it, then tap Confirm order."
)


def _text(text: str, quick_replies: list[QuickReply] | None = None) -> TextReply:
    return TextReply(text=text, quick_replies=quick_replies or [])


def _snapshot(state: ConversationState | None) -> CartSnapshot:
    current = state.current_order if state else None
    if current is None:
        return CartSnapshot()
    return CartSnapshot(
        items=[RequestedItem(name=i.name, quantity=i.quantity, customization=i.customization)
               for i in current.items],
        delivery_address=current.delivery_address,
    )


def _cart_reply(state: ConversationState | None) -> list[OutboundMessage]:
    view = cart.show_cart(state)
    if not view.items:
        return [_text("Your cart is empty.", HELP_ACTIONS)]
    messages: list[OutboundMessage] = [CartReply(
        items=view.items, total=view.total,
        delivery_address=view.delivery_address, customer_name=view.customer_name,
    )]
    if not view.delivery_address:
        messages.append(_text("Where should we deliver? Send \"deliver to <address>\"."))
    else:
        messages.append(_text("Anything else?", CART_ACTIONS))
    return messages


class ConversationHandler:
    def __init__(
        self,
        sessions: SessionStore,
        pending: PendingPayments,
        classifier: IntentClassifier,
        placement: OrderPlacementService,
        fulfillment: FulfillmentService,
        payments: PaymentService,
        slip_verifier: SlipVerifier | None = None,
    ):
        self.sessions = sessions
        self.pending = pending
        self.classifier = classifier
        self.placement = placement
        self.fulfillment = fulfillment
        self.payments = payments
        self.slip_verifier = slip_verifier

    async def handle_inbound_event(self, event: InboundEvent, profile: StoreProfile) -> list[OutboundMessage]:
        try:
            match event:
                case TextMessageEvent():
                    return await self._on_text(event, profile)
                case PostbackEvent():
                    return await self._on_postback(event, profile)
                case ImageMessageEvent():
                    return await self._on_image(event, profile)
                case _:
                    assert_never(event)
        except ConcurrencyConflict:
            logger.warning("Session %s:%s too busy, asking user to retry", event.source.user_id, profile.id)
            return [_text("We're a little busy, please send that again.")]

    # ── Text ─────────────────────────────────────────────────────────────────
    async def _on_text(self, event: TextMessageEvent, profile: StoreProfile) -> list[OutboundMessage]:
        user_id = event.source.user_id
        # re-enabling never depends on the classifier backend
        if event.text.strip().casefold() == Intent.ENABLE_BOT.value:
            return await self._command(Intent.ENABLE_BOT, user_id, profile)

        state = await self.sessions.get(user_id, profile.id)
        if state is not None and not state.is_bot_enabled:
            return []

        result = await classify_with_timeout(
            self.classifier, event.text, profile.menu.names(), _snapshot(state),
        )
        return await self._dispatch(result, event, profile)

    async def _dispatch(
        self, result: Classification, event: TextMessageEvent, profile: StoreProfile,
    ) -> list[OutboundMessage]:
        user_id = event.source.user_id
        store_id = profile.id

        match result:
            case PlaceOrder():
                state = await self.sessions.mutate(user_id, store_id, lambda s: cart.place_order(
                    s, user_id=user_id, store_id=store_id, items=result.items,
                    delivery_address=result.delivery_address,
                    customer_name=event.source.display_name, menu=profile.menu,
                ))
                messages: list[OutboundMessage] = []
                missing = cart.unresolved_names(result.items, profile.menu)
                if missing:
                    messages.append(_text(f"Not on the menu: {', '.join(missing)}"))
                return messages + _cart_reply(state)

            case EditItems():
                try:
                    state = await self.sessions.mutate(
                        user_id, store_id, lambda s: cart.edit_items(s, result.modifications, profile.menu),
                    )
                except NoActiveOrder:
                    return [_text("You don't have an open order yet. What would you like?", HELP_ACTIONS)]
                return _cart_reply(state)

            case EditAddress():
                try:
                    state = await self.sessions.mutate(
                        user_id, store_id, lambda s: cart.edit_address(s, result.new_address),
                    )
                except NoActiveOrder:
                    return [_text("You don't have an open order yet. What would you like?", HELP_ACTIONS)]
                return _cart_reply(state)

            case NotUnderstood():
                return [_text("Sorry, I didn't get that. Try one of these:", HELP_ACTIONS)]

            case Command():
                return await self._command(result.intent, user_id, profile)

            case _:
                assert_never(result)

    async def _command(self, intent: Intent, user_id: str, profile: StoreProfile) -> list[OutboundMessage]:
        store_id = profile.id
        match intent:
            case Intent.GET_PRODUCT:
                return [MenuReply(store_name=profile.name, products=profile.menu.products)]
            case Intent.SHOW_CART:
                return _cart_reply(await self.sessions.get(user_id, store_id))
            case Intent.CANCEL_ORDER:
                return await self._cancel_current(user_id, profile)
            case Intent.REPORT_ISSUE:
                await self._set_bot(user_id, store_id, False)
                return [_text("Sorry about that. The shop will reply to you here shortly.")]
            case Intent.ENABLE_BOT:
                await self._set_bot(user_id, store_id, True)
                return [_text("Bot is back on. What would you like to order?", HELP_ACTIONS)]
            case Intent.GREETING:
                return [_text(f"Hi! Welcome to {profile.name}.", HELP_ACTIONS)]
            case Intent.PLACE_ORDER | Intent.EDIT_ITEMS | Intent.EDIT_ADDRESS | Intent.NOT_UNDERSTOOD:
                # argument-carrying intents never arrive as bare commands
                return [_text("Sorry, I didn't get that. Try one of these:", HELP_ACTIONS)]
            case _:
                assert_never(intent)

    # ── Postback ─────────────────────────────────────────────────────────────
    async def _on_postback(self, event: PostbackEvent, profile: StoreProfile) -> list[OutboundMessage]:
        postback = parse_postback(event.data)
        if postback is None:
            logger.warning("Unknown postback %r from %s", event.data, event.source.user_id)
            return [_text("Sorry, that button is no longer available.", HELP_ACTIONS)]

        user_id = event.source.user_id
        store_id = profile.id
        match postback.action:
            case PostbackAction.SELECT_PRODUCT:
                product = profile.menu.at(int(postback.argument)) if postback.argument.isdigit() else None
                if product is None:
                    return [_text("That product is no longer available.", HELP_ACTIONS)]

                def add_one(state: ConversationState | None) -> ConversationState:
                    opened = cart.start_cart(state, user_id=user_id, store_id=store_id)
                    current = opened.current_order
                    return cart.place_order(
                        opened, user_id=user_id, store_id=store_id,
                        items=[RequestedItem(name=product.name, quantity=1)],
                        delivery_address=current.delivery_address if current else "",
                        customer_name=event.source.display_name, menu=profile.menu,
                    )

                return _cart_reply(await self.sessions.mutate(user_id, store_id, add_one))
            case PostbackAction.PRODUCT_LIST:
                return [MenuReply(store_name=profile.name, products=profile.menu.products)]
            case PostbackAction.ADD:
                await self.sessions.mutate(
                    user_id, store_id, lambda s: cart.start_cart(s, user_id=user_id, store_id=store_id),
                )
                return [
                    MenuReply(store_name=profile.name, products=profile.menu.products),
                    _text("Pick anything else you'd like to add."),
                ]
            case PostbackAction.CONFIRM:
                return await self._confirm(user_id, profile)
            case PostbackAction.CANCEL:
                if postback.argument:
                    return await self._cancel_order(user_id, profile, postback.argument)
                return await self._cancel_current(user_id, profile)
            case PostbackAction.CASH:
                return await self._choose_cash(user_id, profile, postback.argument)
            case PostbackAction.GUIDE:
                return [_text(GUIDE_TEXT, HELP_ACTIONS)]
            case PostbackAction.ENABLE_BOT:
                await self._set_bot(user_id, store_id, True)
                return [_text("Bot is back on. What would you like to order?", HELP_ACTIONS)]
            case PostbackAction.CLOSE_BOT:
                await self._set_bot(user_id, store_id, False)
                return [_text("Bot paused. Tap \"enable_bot\" or type enable_bot to turn it back on.")]
            case PostbackAction.CONTACT_ADMIN:
                await self._set_bot(user_id, store_id, False)
                phone = f" or call {profile.phone}" if profile.phone else ""
                return [_text(f"The shop will reply to you here{phone}.")]
            case _:
                assert_never(postback.action)

    async def _confirm(self, user_id: str, profile: StoreProfile) -> list[OutboundMessage]:
        try:
            placed = await self.placement.place_order(profile.id, user_id, profile)
        except DuplicateConfirmation as exc:
            if exc.transaction_id == RESERVED:
                return [_text("Your order is still being placed, one moment please.")]
            actions = [QuickReply(label="Pay cash", data=f"{PostbackAction.CASH.value}&{exc.transaction_id}")]
            return [_text("You already have an order waiting for payment. Please send the slip first.", actions)]
        except MissingDeliveryAddress:
            return [_text("Where should we deliver? Send \"deliver to <address>\".")]
        except NoActiveOrder:
            return [_text("Your cart is empty.", HELP_ACTIONS)]
        except InsufficientIngredient as exc:
            return [_text(
                f"Sorry, we don't have enough {exc.name} right now "
                f"(need {exc.required}, have {exc.available}). Please change your order."
            )]

        messages: list[OutboundMessage] = [OrderPlacedReply(
            order_id=placed.order.id,
            transaction_id=placed.transaction.id,
            items=placed.items,
            total=placed.transaction.total_amount,
            delivery_address=placed.order.customer_adds,
            accounts=profile.accounts,
            cash_enabled=profile.is_cash,
        )]
        actions = [QuickReply(label="Cancel order", data=f"{PostbackAction.CANCEL.value}&{placed.order.id}")]
        if profile.is_cash:
            actions.insert(0, QuickReply(
                label="Pay cash on delivery", data=f"{PostbackAction.CASH.value}&{placed.transaction.id}",
            ))
        messages.append(_text("Transfer and send the slip here, or choose:", actions))
        return messages

    async def _cancel_order(self, user_id: str, profile: StoreProfile, order_id: str) -> list[OutboundMessage]:
        try:
            order = await self.fulfillment.get_order(order_id, profile.id)
            if order.customer_line_id != user_id:
                raise NotFound("Order", order_id)
            await self.fulfillment.cancel_order(order_id, profile.id)
        except NotFound:
            return [_text("We couldn't find that order.")]
        except InvalidStatusTransition:
            return [_text("This order can no longer be cancelled. Please contact the shop.")]
        await self.sessions.mutate(user_id, profile.id, cart.cancel)
        return [_text("Your order has been cancelled.", HELP_ACTIONS)]

    async def _cancel_current(self, user_id: str, profile: StoreProfile) -> list[OutboundMessage]:
        transaction_id = await self.pending.get(user_id, profile.id)
        if transaction_id and transaction_id != RESERVED:
            try:
                transaction = await self.payments.get_transaction(transaction_id, profile.id)
            except NotFound:
                await self.pending.clear(user_id, profile.id)
            else:
                return await self._cancel_order(user_id, profile, transaction.order_id)
        await self.sessions.mutate(user_id, profile.id, cart.cancel)
        return [_text("Your cart has been cleared.", HELP_ACTIONS)]

    async def _choose_cash(self, user_id: str, profile: StoreProfile, transaction_id: str) -> list[OutboundMessage]:
        if not profile.is_cash:
            return [_text("This shop only accepts bank transfer.")]
        try:
            await self.payments.choose_cash(transaction_id, profile.id)
        except NotFound:
            return [_text("We couldn't find that order.")]
        except InvalidStatusTransition:
            return [_text("This order has already been paid or closed.")]
        return [_text("Got it, please pay cash on delivery.")]

    async def _set_bot(self, user_id: str, store_id: str, enabled: bool) -> None:
        await self.sessions.mutate(
            user_id, store_id,
            lambda s: cart.set_bot_enabled(s, enabled, user_id=user_id, store_id=store_id),
        )

    # ── Image (payment slip) ─────────────────────────────────────────────────
    async def _on_image(self, event: ImageMessageEvent, profile: StoreProfile) -> list[OutboundMessage]:
        user_id = event.source.user_id
        state = await self.sessions.get(user_id, profile.id)
        if state is not None and not state.is_bot_enabled:
            return []

        transaction_id = await self.pending.get(user_id, profile.id)
        if not transaction_id or transaction_id == RESERVED:
            return [_text("There's no order waiting for payment.")]
        if self.slip_verifier is None:
            return [_text("Thanks! The shop will check your slip shortly.")]

        try:
            transaction = await self.payments.get_transaction(transaction_id, profile.id)
            verification = await asyncio.wait_for(
                self.slip_verifier.verify(profile.id, event.message_id, transaction.total_amount),
                timeout=settings.SLIP_VERIFY_TIMEOUT_SECONDS,
            )
            await self.payments.apply_slip(transaction_id, verification, profile.accounts, profile.id)
        except asyncio.TimeoutError:
            logger.warning("Slip verification timed out for transaction %s", transaction_id)
            return [_text("We couldn't check your slip right now. The shop will verify it shortly.")]
        except PaymentRejected as exc:
            return [_text(f"Slip not accepted: {exc.reason}")]
        except NotFound:
            await self.pending.clear(user_id, profile.id)
            return [_text("There's no order waiting for payment.")]
        except InvalidStatusTransition:
            return [_text("This order has already been paid or closed.")]
        return [_text("Payment received, thank you! We'll start preparing your order.")]
