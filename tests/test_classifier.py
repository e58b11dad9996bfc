"""
Intent classification: the rule-based backend, the LLM backend against a mocked
chat-completions endpoint, and the timeout/outage fallback.
"""
import asyncio
import json

import httpx
import pytest

from chatshop.core.errors import ClassifierTimeout, ClassifierUnavailable
from chatshop.schemas.intents import (
    CartSnapshot, Command, EditAddress, EditItems, Intent, NotUnderstood, PlaceOrder, RequestedItem,
)
from chatshop.services.classifier import (
    KeywordClassifier, LLMClassifier, classify_with_timeout, find_menu_items,
)

MENU = ["Pad Krapow", "Egg", "Fried Rice", "Fried Rice Special"]
EMPTY = CartSnapshot()
WITH_ITEMS = CartSnapshot(items=[RequestedItem(name="Egg")], delivery_address="12 Main St")

keyword = KeywordClassifier()


def classify(text, cart=EMPTY):
    return keyword.classify_sync(text, MENU, cart)


# ─── Rule-based backend ───────────────────────────────────────────────

@pytest.mark.parametrize("text,intent", [
    ("menu", Intent.GET_PRODUCT),
    ("  Show   Cart ", Intent.SHOW_CART),
    ("hello", Intent.GREETING),
    ("cancel my order please", Intent.CANCEL_ORDER),
    ("I have a problem with my food", Intent.REPORT_ISSUE),
    ("enable_bot", Intent.ENABLE_BOT),
])
def test_commands(text, intent):
    assert classify(text) == Command(intent=intent)


def test_order_with_quantities_and_address():
    result = classify("2 Pad Krapow and egg x2 deliver to 12 Main St")
    assert result == PlaceOrder(
        items=[RequestedItem(name="Pad Krapow", quantity=2), RequestedItem(name="Egg", quantity=2)],
        delivery_address="12 Main St",
    )


def test_order_falls_back_to_cart_address():
    result = classify("fried rice (no onion)", WITH_ITEMS)
    assert result == PlaceOrder(
        items=[RequestedItem(name="Fried Rice", customization="no onion")],
        delivery_address="12 Main St",
    )


def test_longest_menu_name_wins():
    assert find_menu_items("fried rice special 3", MENU) == [
        RequestedItem(name="Fried Rice Special", quantity=3),
    ]


def test_address_change():
    assert classify("change my address to 99 Side Rd") == EditAddress(new_address="99 Side Rd")
    assert classify("deliver to 5 Soi Ari", WITH_ITEMS) == EditAddress(new_address="5 Soi Ari")


def test_item_edits():
    [replace] = classify("replace egg with 2 pad krapow").modifications
    assert (replace.action, replace.name, replace.replacement_name, replace.replacement_quantity) == (
        "replace", "Egg", "Pad Krapow", 2,
    )

    [remove] = classify("remove egg").modifications
    assert (remove.action, remove.name) == ("remove", "Egg")

    result = classify("add egg 2", WITH_ITEMS)
    assert isinstance(result, EditItems)
    assert [(m.action, m.name, m.quantity) for m in result.modifications] == [("add", "Egg", 2)]


def test_add_without_cart_is_a_new_order():
    assert classify("add egg 2") == PlaceOrder(items=[RequestedItem(name="Egg", quantity=2)])


def test_not_understood_keeps_text():
    assert classify("what's the weather") == NotUnderstood(text="what's the weather")
    assert classify("deliver to 5 Soi Ari") == NotUnderstood(text="deliver to 5 Soi Ari")


# ─── Fallbacks ────────────────────────────────────────────────────────

class SlowClassifier:
    async def classify(self, text, menu, cart):
        await asyncio.sleep(5)


class DownClassifier:
    async def classify(self, text, menu, cart):
        raise ClassifierUnavailable("no models")


@pytest.mark.asyncio
async def test_timeout_becomes_not_understood():
    result = await classify_with_timeout(SlowClassifier(), "2 egg", MENU, EMPTY, timeout=0.05)
    assert result == NotUnderstood(text="2 egg")


@pytest.mark.asyncio
async def test_outage_becomes_not_understood():
    result = await classify_with_timeout(DownClassifier(), "2 egg", MENU, EMPTY)
    assert result == NotUnderstood(text="2 egg")


# ─── LLM backend ──────────────────────────────────────────────────────

def tool_response(name, arguments):
    return httpx.Response(200, json={"choices": [{"message": {
        "role": "assistant",
        "tool_calls": [{"id": "call-1", "type": "function", "function": {
            "name": name, "arguments": json.dumps(arguments),
        }}],
    }}]})


def llm(handler, models=("model-a", "model-b")):
    return LLMClassifier(
        base_url="http://llm.test/v1", api_key="sk-test", models=list(models),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_llm_place_order():
    seen = []

    def handler(request):
        body = json.loads(request.content)
        seen.append((request.url.path, request.headers["authorization"], body["model"]))
        assert "Pad Krapow" in body["messages"][0]["content"]
        return tool_response("place_order", {
            "items": [{"name": "Pad Krapow", "quantity": 2}], "delivery_address": "12 Main St",
        })

    result = await llm(handler).classify("two krapow to 12 main st", MENU, EMPTY)

    assert result == PlaceOrder(
        items=[RequestedItem(name="Pad Krapow", quantity=2)], delivery_address="12 Main St",
    )
    assert seen == [("/v1/chat/completions", "Bearer sk-test", "model-a")]


@pytest.mark.asyncio
async def test_llm_fails_over_to_next_model():
    models = []

    def handler(request):
        model = json.loads(request.content)["model"]
        models.append(model)
        if model == "model-a":
            return httpx.Response(503, json={"error": "overloaded"})
        return tool_response("edit_order", {"type": "address", "new_address": "5 Soi Ari"})

    result = await llm(handler).classify("new address 5 soi ari", MENU, WITH_ITEMS)

    assert result == EditAddress(new_address="5 Soi Ari")
    assert models == ["model-a", "model-b"]


@pytest.mark.asyncio
async def test_llm_all_models_down():
    with pytest.raises(ClassifierUnavailable):
        await llm(lambda request: httpx.Response(500)).classify("hi", MENU, EMPTY)


@pytest.mark.asyncio
async def test_llm_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ClassifierTimeout):
        await llm(handler).classify("hi", MENU, EMPTY)


@pytest.mark.asyncio
async def test_llm_malformed_arguments_are_not_understood():
    def handler(request):
        return tool_response("place_order", {"items": [{"quantity": 2}]})

    assert await llm(handler).classify("2 of those", MENU, EMPTY) == NotUnderstood(text="2 of those")


@pytest.mark.asyncio
async def test_llm_command_tools():
    result = await llm(lambda request: tool_response("show_cart", {})).classify("cart?", MENU, EMPTY)
    assert result == Command(intent=Intent.SHOW_CART)
