"""
ChatShop - Intent classification

Two interchangeable backends behind one async interface:
  KeywordClassifier  rule-based matching against the store's menu (default)
  LLMClassifier      OpenAI-compatible chat completions with tool calling,
                     trying each configured model in order
Callers go through `classify_with_timeout`, which turns timeouts and backend
outages into NotUnderstood so a slow model never stalls a conversation.
"""
import asyncio
import json
import logging
import re
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from chatshop.core.config import get_settings
from chatshop.core.errors import ClassifierTimeout, ClassifierUnavailable
from chatshop.schemas.intents import (
    CartSnapshot, Classification, Command, EditAddress, EditItems, Intent,
    ItemModification, NotUnderstood, PlaceOrder, RequestedItem,
)

settings = get_settings()
logger = logging.getLogger(__name__)


class IntentClassifier(Protocol):
    async def classify(self, text: str, menu: list[str], cart: CartSnapshot) -> Classification: ...


async def classify_with_timeout(
    classifier: IntentClassifier,
    text: str,
    menu: list[str],
    cart: CartSnapshot,
    timeout: float | None = None,
) -> Classification:
    try:
        return await asyncio.wait_for(
            classifier.classify(text, menu, cart),
            timeout=timeout or settings.CLASSIFIER_TIMEOUT_SECONDS,
        )
    except (asyncio.TimeoutError, ClassifierTimeout):
        logger.warning("Intent classifier timed out for %r", text[:80])
        return NotUnderstood(text=text)
    except ClassifierUnavailable as exc:
        logger.warning("Intent classifier unavailable: %s", exc)
        return NotUnderstood(text=text)


# ── Rule-based backend ────────────────────────────────────────────────────────
SHOW_CART_WORDS = {"show_cart", "cart", "show cart", "my cart", "view cart", "ตะกร้า", "ดูตะกร้า"}
MENU_WORDS = {"get_product", "product_list", "menu", "show menu", "products", "เมนู", "ดูเมนู", "สินค้า"}
GREETING_WORDS = {"hi", "hello", "hey", "สวัสดี", "สวัสดีครับ", "สวัสดีค่ะ"}
CANCEL_PREFIXES = ("cancel", "ยกเลิก")
ISSUE_WORDS = ("problem", "complaint", "report", "talk to admin", "refund", "แจ้งปัญหา", "ติดต่อแอดมิน")

ADDRESS_CHANGE = re.compile(
    r"^(?:change|update|edit|new)\s+(?:my\s+)?(?:delivery\s+)?address(?:\s+to)?\s*[:\-]?\s*(?P<addr>.+)$",
    re.IGNORECASE,
)
ADDRESS_TAIL = re.compile(
    r"(?:deliver(?:y)?\s+to|ship\s+to|address\s*(?:is|:)|ส่งที่)\s*[:\-]?\s*(?P<addr>.+)$",
    re.IGNORECASE,
)
REMOVE = re.compile(r"^(?:remove|delete|ลบ)\s+(?P<rest>.+)$", re.IGNORECASE)
REPLACE = re.compile(
    r"^(?:replace|swap|change)\s+(?P<old>.+?)\s+(?:with|to|for|เป็น)\s+(?P<new>.+)$", re.IGNORECASE
)
ADD = re.compile(r"^(?:add|เพิ่ม)\s+(?P<rest>.+)$", re.IGNORECASE)


def _normalize(text: str) -> str:
    return " ".join(text.split()).casefold()


def find_menu_items(text: str, menu: list[str]) -> list[RequestedItem]:
    """
    Every menu name mentioned in `text`, with a quantity taken from a number
    right before ("2 egg", "2x egg") or after ("egg x2", "egg 2") the name and
    an optional "(note)" as customization. Longer names win over names they contain.
    """
    haystack = _normalize(text)
    found: list[tuple[int, RequestedItem]] = []
    for name in sorted(menu, key=len, reverse=True):
        pattern = re.compile(
            r"(?:(?P<pre>\d+)\s*(?:x|×)?\s*)?"
            + re.escape(_normalize(name))
            + r"(?:\s*\((?P<note>[^)]*)\))?(?:\s*(?:x|×)?\s*(?P<post>\d+)(?!\d))?"
        )
        for match in pattern.finditer(haystack):
            quantity = int(match.group("pre") or match.group("post") or 1)
            found.append((match.start(), RequestedItem(
                name=name, quantity=quantity, customization=(match.group("note") or "").strip(),
            )))
            haystack = haystack[:match.start()] + " " * (match.end() - match.start()) + haystack[match.end():]
    return [item for _, item in sorted(found, key=lambda pair: pair[0])]


def split_address(text: str) -> tuple[str, str]:
    match = ADDRESS_TAIL.search(text)
    if match is None:
        return text, ""
    return text[:match.start()], match.group("addr").strip()


class KeywordClassifier:
    async def classify(self, text: str, menu: list[str], cart: CartSnapshot) -> Classification:
        return self.classify_sync(text, menu, cart)

    def classify_sync(self, text: str, menu: list[str], cart: CartSnapshot) -> Classification:
        raw = text.strip()
        low = _normalize(raw)

        if low == "enable_bot":
            return Command(intent=Intent.ENABLE_BOT)
        if low in SHOW_CART_WORDS:
            return Command(intent=Intent.SHOW_CART)
        if low in MENU_WORDS:
            return Command(intent=Intent.GET_PRODUCT)
        if low in GREETING_WORDS:
            return Command(intent=Intent.GREETING)
        if low.startswith(CANCEL_PREFIXES):
            return Command(intent=Intent.CANCEL_ORDER)
        if any(word in low for word in ISSUE_WORDS):
            return Command(intent=Intent.REPORT_ISSUE)

        if match := ADDRESS_CHANGE.match(raw):
            return EditAddress(new_address=match.group("addr").strip())

        if match := REPLACE.match(raw):
            old = find_menu_items(match.group("old"), menu)
            new = find_menu_items(match.group("new"), menu)
            if old and new:
                return EditItems(modifications=[ItemModification(
                    action="replace",
                    name=old[0].name,
                    replacement_name=new[0].name,
                    replacement_quantity=new[0].quantity,
                    customization=new[0].customization,
                )])

        if match := REMOVE.match(raw):
            names = find_menu_items(match.group("rest"), menu)
            if names:
                return EditItems(modifications=[
                    ItemModification(action="remove", name=item.name) for item in names
                ])

        if (match := ADD.match(raw)) and cart.items:
            items = find_menu_items(match.group("rest"), menu)
            if items:
                return EditItems(modifications=[
                    ItemModification(
                        action="add", name=i.name, quantity=i.quantity, customization=i.customization,
                    )
                    for i in items
                ])

        order_text, address = split_address(raw)
        items = find_menu_items(order_text, menu)
        if items:
            return PlaceOrder(items=items, delivery_address=address or cart.delivery_address)
        if address and cart.items:
            return EditAddress(new_address=address)

        return NotUnderstood(text=text)


# ── LLM backend ───────────────────────────────────────────────────────────────
_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "quantity": {"type": "integer", "minimum": 1},
        "customization": {"type": "string"},
    },
    "required": ["name", "quantity"],
}

TOOLS: list[dict[str, Any]] = [
    {"type": "function", "function": {
        "name": "get_product", "description": "Customer wants to see the menu.",
        "parameters": {"type": "object", "properties": {}},
    }},
    {"type": "function", "function": {
        "name": "show_cart", "description": "Customer wants to see their cart.",
        "parameters": {"type": "object", "properties": {}},
    }},
    {"type": "function", "function": {
        "name": "place_order", "description": "Customer orders menu items, optionally with an address.",
        "parameters": {"type": "object", "properties": {
            "items": {"type": "array", "items": _ITEM_SCHEMA},
            "delivery_address": {"type": "string"},
        }, "required": ["items"]},
    }},
    {"type": "function", "function": {
        "name": "edit_order", "description": "Customer changes cart items or the delivery address.",
        "parameters": {"type": "object", "properties": {
            "type": {"type": "string", "enum": ["items", "address"]},
            "modifications": {"type": "array", "items": {
                "type": "object",
                "properties": {
                    "action": {"type": "string", "enum": ["add", "remove", "replace"]},
                    "name": {"type": "string"},
                    "quantity": {"type": "integer"},
                    "customization": {"type": "string"},
                    "replacement_name": {"type": "string"},
                    "replacement_quantity": {"type": "integer"},
                },
                "required": ["action", "name"],
            }},
            "new_address": {"type": "string"},
        }, "required": ["type"]},
    }},
    {"type": "function", "function": {
        "name": "cancel_order", "description": "Customer wants to cancel the current order.",
        "parameters": {"type": "object", "properties": {}},
    }},
    {"type": "function", "function": {
        "name": "report_issue", "description": "Customer reports a problem or wants a human.",
        "parameters": {"type": "object", "properties": {}},
    }},
    {"type": "function", "function": {
        "name": "greeting", "description": "Small talk or greeting, nothing to do.",
        "parameters": {"type": "object", "properties": {}},
    }},
    {"type": "function", "function": {
        "name": "not_understood", "description": "The message matches none of the other tools.",
        "parameters": {"type": "object", "properties": {}},
    }},
]

_COMMAND_TOOLS = {
    "get_product": Intent.GET_PRODUCT,
    "show_cart": Intent.SHOW_CART,
    "cancel_order": Intent.CANCEL_ORDER,
    "report_issue": Intent.REPORT_ISSUE,
    "greeting": Intent.GREETING,
}


def tool_call_to_classification(name: str, args: dict[str, Any], text: str) -> Classification:
    try:
        if name in _COMMAND_TOOLS:
            return Command(intent=_COMMAND_TOOLS[name])
        if name == "place_order":
            return PlaceOrder(
                items=[RequestedItem.model_validate(i) for i in args.get("items", [])],
                delivery_address=args.get("delivery_address") or "",
            )
        if name == "edit_order" and args.get("type") == "address":
            return EditAddress(new_address=args.get("new_address") or "")
        if name == "edit_order":
            return EditItems(modifications=[
                ItemModification.model_validate(m) for m in args.get("modifications", [])
            ])
    except ValidationError as exc:
        logger.warning("Classifier returned malformed %s arguments: %s", name, exc)
    return NotUnderstood(text=text)


def _system_prompt(menu: list[str], cart: CartSnapshot) -> str:
    return (
        "You take orders for a shop over chat. Pick exactly one tool for the customer's message.\n"
        f"Menu: {json.dumps(menu, ensure_ascii=False)}\n"
        f"Current cart: {cart.model_dump_json()}\n"
        "Use menu names exactly as written. Never invent products."
    )


class LLMClassifier:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        models: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.LLM_BASE_URL
        self.api_key = api_key if api_key is not None else settings.LLM_API_KEY
        self.models = list(models or settings.LLM_MODELS)
        self._transport = transport

    async def classify(self, text: str, menu: list[str], cart: CartSnapshot) -> Classification:
        for model in self.models:
            try:
                return await self._ask(model, text, menu, cart)
            except httpx.TimeoutException as exc:
                raise ClassifierTimeout(f"{model} timed out") from exc
            except (httpx.HTTPError, KeyError, IndexError, ValueError) as exc:
                logger.warning("Classifier model %s failed: %s", model, exc)
        raise ClassifierUnavailable(f"All {len(self.models)} classifier models failed")

    async def _ask(self, model: str, text: str, menu: list[str], cart: CartSnapshot) -> Classification:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.CLASSIFIER_TIMEOUT_SECONDS,
            transport=self._transport,
        ) as client:
            response = await client.post("/chat/completions", headers=headers, json={
                "model": model,
                "messages": [
                    {"role": "system", "content": _system_prompt(menu, cart)},
                    {"role": "user", "content": text},
                ],
                "tools": TOOLS,
                "tool_choice": "required",
            })
        response.raise_for_status()

        message = response.json()["choices"][0]["message"]
        calls = message.get("tool_calls") or []
        if not calls:
            return NotUnderstood(text=text)
        function = calls[0]["function"]
        arguments = function.get("arguments") or "{}"
        args = json.loads(arguments) if isinstance(arguments, str) else arguments
        return tool_call_to_classification(function["name"], args, text)


def build_classifier() -> IntentClassifier:
    if settings.CLASSIFIER_BACKEND == "llm":
        return LLMClassifier()
    return KeywordClassifier()
