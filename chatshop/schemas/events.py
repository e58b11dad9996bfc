"""
ChatShop - Inbound messaging events

Typed variants for the three event kinds the bot reacts to, plus the parser
that turns a raw LINE webhook body into them. Unsupported event kinds are
skipped by the parser rather than passed through untyped.
"""
import logging
from enum import Enum
from typing import Annotated, Any, Literal, Union
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class EventSource(BaseModel):
    user_id: str
    display_name: str = ""


class TextMessageEvent(BaseModel):
    kind: Literal["text"] = "text"
    reply_token: str = ""
    source: EventSource
    text: str


class ImageMessageEvent(BaseModel):
    kind: Literal["image"] = "image"
    reply_token: str = ""
    source: EventSource
    message_id: str


class PostbackEvent(BaseModel):
    kind: Literal["postback"] = "postback"
    reply_token: str = ""
    source: EventSource
    data: str


InboundEvent = Annotated[
    Union[TextMessageEvent, ImageMessageEvent, PostbackEvent],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)


class PostbackAction(str, Enum):
    SELECT_PRODUCT = "select_product"
    PRODUCT_LIST = "product_list"
    ADD = "add"
    CONFIRM = "confirm"
    CANCEL = "cancel"
    CASH = "cash"
    GUIDE = "guide"
    ENABLE_BOT = "enable_bot"
    CLOSE_BOT = "close_bot"
    CONTACT_ADMIN = "contact_admin"


class Postback(BaseModel):
    action: PostbackAction
    argument: str = ""


def parse_postback(data: str) -> Postback | None:
    """`action&argument` -> Postback; None for unknown actions."""
    action, _, argument = data.partition("&")
    try:
        return Postback(action=PostbackAction(action), argument=argument)
    except ValueError:
        return None


def _convert(raw: dict[str, Any]) -> dict[str, Any] | None:
    source = {"user_id": (raw.get("source") or {}).get("userId", "")}
    base = {"reply_token": raw.get("replyToken", ""), "source": source}
    if raw.get("type") == "postback":
        return {**base, "kind": "postback", "data": (raw.get("postback") or {}).get("data", "")}
    if raw.get("type") == "message":
        message = raw.get("message") or {}
        if message.get("type") == "text":
            return {**base, "kind": "text", "text": message.get("text", "")}
        if message.get("type") == "image":
            return {**base, "kind": "image", "message_id": message.get("id", "")}
    return None


def parse_webhook_events(body: dict[str, Any]) -> list[InboundEvent]:
    events: list[InboundEvent] = []
    for raw in body.get("events", []):
        converted = _convert(raw)
        if converted is None:
            logger.debug("Skipping unsupported event type %s", raw.get("type"))
            continue
        try:
            events.append(_event_adapter.validate_python(converted))
        except ValidationError as exc:
            logger.warning("Dropping malformed %s event: %s", converted["kind"], exc)
    return events
