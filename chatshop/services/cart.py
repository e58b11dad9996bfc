"""
ChatShop - Cart engine

Pure transitions over ConversationState. Callers persist the returned state
through SessionStore.mutate so each transition is applied atomically.

Unknown product names are dropped without error: the cart is built leniently
from free text and a menu mismatch is not the customer's fault.
"""
from datetime import datetime
from decimal import Decimal

from chatshop.core.errors import NoActiveOrder
from chatshop.schemas.conversation import (
    CartItem, CartView, ConversationState, CurrentOrder, OrderType,
)
from chatshop.schemas.intents import ItemModification, RequestedItem
from chatshop.schemas.store import Menu
from chatshop.services.session_store import new_state, touch


def _same_name(a: str, b: str) -> bool:
    return " ".join(a.split()).casefold() == " ".join(b.split()).casefold()


def _resolve(requested: list[RequestedItem], menu: Menu) -> list[CartItem]:
    resolved = []
    for item in requested:
        product = menu.find(item.name)
        if product is None or item.quantity <= 0:
            continue
        resolved.append(CartItem(
            name=product.name,
            quantity=item.quantity,
            customization=item.customization or "",
            price=product.price,
        ))
    return resolved


def merge_items(existing: list[CartItem], incoming: list[CartItem]) -> list[CartItem]:
    """Merge by (name, customization); matching lines sum their quantities."""
    merged = [item.model_copy() for item in existing]
    for item in incoming:
        for i, line in enumerate(merged):
            if line.key == item.key:
                merged[i] = line.model_copy(update={"quantity": line.quantity + item.quantity})
                break
        else:
            merged.append(item)
    return merged


def unresolved_names(requested: list[RequestedItem], menu: Menu) -> list[str]:
    return [item.name for item in requested if menu.find(item.name) is None]


def place_order(
    state: ConversationState | None,
    *,
    user_id: str,
    store_id: str,
    items: list[RequestedItem],
    delivery_address: str,
    customer_name: str,
    menu: Menu,
    now: datetime | None = None,
) -> ConversationState:
    state = state or new_state(user_id, store_id, now)
    incoming = _resolve(items, menu)

    existing: list[CartItem] = []
    if state.order_type == OrderType.CART and state.current_order and state.current_order.items:
        existing = state.current_order.items

    current = CurrentOrder(
        items=merge_items(existing, incoming),
        delivery_address=delivery_address,
        customer_name=customer_name,
    )
    return touch(state.model_copy(update={
        "order_type": OrderType.CART,
        "current_order": current,
    }), now)


def _require_cart(state: ConversationState | None) -> CurrentOrder:
    if state is None or state.current_order is None:
        raise NoActiveOrder()
    return state.current_order


def _apply_modification(items: list[CartItem], mod: ItemModification, menu: Menu) -> list[CartItem]:
    index = next((i for i, line in enumerate(items) if _same_name(line.name, mod.name)), None)

    if mod.action == "remove":
        if index is not None:
            del items[index]
        return items

    if mod.action == "add":
        if index is not None:
            quantity = items[index].quantity + mod.quantity
            if quantity <= 0:
                del items[index]
            else:
                items[index] = items[index].model_copy(
                    update={"quantity": quantity, "customization": mod.customization}
                )
            return items
        product = menu.find(mod.name)
        if product is not None and mod.quantity > 0:
            items.append(CartItem(
                name=product.name, quantity=mod.quantity,
                customization=mod.customization, price=product.price,
            ))
        return items

    # replace
    if index is None or not mod.replacement_name:
        return items
    replacement = menu.find(mod.replacement_name)
    if replacement is None:
        return items
    quantity = mod.replacement_quantity or 1
    if quantity <= 0:
        del items[index]
        return items
    items[index] = CartItem(
        name=replacement.name, quantity=quantity,
        customization=mod.customization, price=replacement.price,
    )
    return items


def edit_items(
    state: ConversationState | None,
    modifications: list[ItemModification],
    menu: Menu,
    now: datetime | None = None,
) -> ConversationState:
    current = _require_cart(state)
    items = [item.model_copy() for item in current.items]
    for mod in modifications:
        items = _apply_modification(items, mod, menu)
    return touch(state.model_copy(update={
        "current_order": current.model_copy(update={"items": items}),
    }), now)


def edit_address(
    state: ConversationState | None, new_address: str, now: datetime | None = None,
) -> ConversationState:
    current = _require_cart(state)
    return touch(state.model_copy(update={
        "current_order": current.model_copy(update={"delivery_address": new_address}),
    }), now)


def cancel(state: ConversationState | None, now: datetime | None = None) -> ConversationState | None:
    """Abandon the open cart; the session itself (bot flag) survives."""
    if state is None:
        return None
    return touch(state.model_copy(update={
        "order_type": OrderType.NEW,
        "current_order": None,
    }), now)


def remove_items(
    state: ConversationState | None, confirmed: list[CartItem], now: datetime | None = None,
) -> ConversationState | None:
    """
    Take confirmed lines out of the cart, leaving anything added since the
    confirmation was read. An emptied cart is cancelled.
    """
    if state is None or state.current_order is None:
        return state
    taken: dict[tuple[str, str], int] = {}
    for item in confirmed:
        taken[item.key] = taken.get(item.key, 0) + item.quantity

    left: list[CartItem] = []
    for item in state.current_order.items:
        quantity = item.quantity - taken.get(item.key, 0)
        taken[item.key] = max(0, taken.get(item.key, 0) - item.quantity)
        if quantity > 0:
            left.append(item.model_copy(update={"quantity": quantity}))

    if not left:
        return cancel(state, now)
    return touch(state.model_copy(update={
        "current_order": state.current_order.model_copy(update={"items": left}),
    }), now)


def set_bot_enabled(
    state: ConversationState | None,
    enabled: bool,
    *,
    user_id: str,
    store_id: str,
    now: datetime | None = None,
) -> ConversationState:
    state = state or new_state(user_id, store_id, now)
    return touch(state.model_copy(update={"is_bot_enabled": enabled}), now)


def start_cart(
    state: ConversationState | None, *, user_id: str, store_id: str, now: datetime | None = None,
) -> ConversationState:
    """Switch into cart mode so the next place_order merges instead of replacing."""
    state = state or new_state(user_id, store_id, now)
    return touch(state.model_copy(update={"order_type": OrderType.CART}), now)


def cart_total(items: list[CartItem]) -> Decimal:
    return sum((item.subtotal for item in items), Decimal("0"))


def show_cart(state: ConversationState | None) -> CartView:
    current = state.current_order if state else None
    items = current.items if current else []
    return CartView(
        items=items,
        total=cart_total(items),
        item_count=sum(item.quantity for item in items),
        delivery_address=current.delivery_address if current else "",
        customer_name=current.customer_name if current else "",
    )
