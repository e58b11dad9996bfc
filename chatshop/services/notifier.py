"""
ChatShop - Messaging platform client and customer notifications

One httpx client per channel access token, held in a bounded LRU cache. The
least recently used client is closed when the cache is full, and `aclose()`
closes the rest from the application lifespan teardown.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Protocol

import httpx

from chatshop.core.config import get_settings
from chatshop.schemas.messages import OutboundMessage, TextReply, render_text

settings = get_settings()
logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, store_id: str, user_id: str, message: str) -> None: ...


class MessagingClientCache:
    def __init__(self, max_size: int | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.max_size = max_size or settings.MESSAGING_CLIENT_CACHE_SIZE
        self._transport = transport
        self._clients: "OrderedDict[str, httpx.AsyncClient]" = OrderedDict()
        # eviction awaits aclose(); concurrent misses must not overfill the cache
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, token: str) -> bool:
        return token in self._clients

    async def get(self, channel_token: str) -> httpx.AsyncClient:
        async with self._lock:
            client = self._clients.get(channel_token)
            if client is not None:
                self._clients.move_to_end(channel_token)
                return client

            while len(self._clients) >= self.max_size:
                _, evicted = self._clients.popitem(last=False)
                await evicted.aclose()

            client = httpx.AsyncClient(
                base_url=settings.LINE_API_URL,
                headers={"Authorization": f"Bearer {channel_token}"},
                timeout=settings.NOTIFY_TIMEOUT_SECONDS,
                transport=self._transport,
            )
            self._clients[channel_token] = client
            return client

    async def aclose(self) -> None:
        async with self._lock:
            while self._clients:
                _, client = self._clients.popitem(last=False)
                await client.aclose()


def to_line_message(message: OutboundMessage) -> dict:
    payload: dict = {"type": "text", "text": render_text(message)}
    quick = getattr(message, "quick_replies", None)
    if quick:
        payload["quickReply"] = {"items": [
            {"type": "action", "action": {"type": "postback", "label": q.label, "data": q.data}}
            for q in quick
        ]}
    return payload


class LineMessenger:
    """Reply/push over the LINE Messaging API."""

    def __init__(self, clients: MessagingClientCache, token_for_store):
        self.clients = clients
        # async callable: store_id -> channel access token
        self.token_for_store = token_for_store

    async def reply(self, channel_token: str, reply_token: str, messages: list[OutboundMessage]) -> None:
        if not messages or not reply_token:
            return
        client = await self.clients.get(channel_token)
        response = await client.post("/message/reply", json={
            "replyToken": reply_token,
            "messages": [to_line_message(m) for m in messages[:5]],
        })
        response.raise_for_status()

    async def push(self, channel_token: str, user_id: str, messages: list[OutboundMessage]) -> None:
        client = await self.clients.get(channel_token)
        response = await client.post("/message/push", json={
            "to": user_id,
            "messages": [to_line_message(m) for m in messages[:5]],
        })
        response.raise_for_status()

    async def display_name(self, channel_token: str, user_id: str) -> str:
        """Best effort; an unreachable profile API just yields an empty name."""
        try:
            client = await self.clients.get(channel_token)
            response = await client.get(f"/profile/{user_id}")
            response.raise_for_status()
            return response.json().get("displayName", "")
        except httpx.HTTPError as exc:
            logger.warning("Profile lookup failed for %s: %s", user_id, exc)
            return ""

    async def notify(self, store_id: str, user_id: str, message: str) -> None:
        token = await self.token_for_store(store_id)
        await self.push(token, user_id, [TextReply(text=message)])


async def notify_safely(notifier: Notifier | None, store_id: str, user_id: str, message: str) -> None:
    """Fire-and-forget: bounded by NOTIFY_TIMEOUT_SECONDS, failures only logged."""
    if notifier is None:
        return
    try:
        await asyncio.wait_for(
            notifier.notify(store_id, user_id, message),
            timeout=settings.NOTIFY_TIMEOUT_SECONDS,
        )
    except Exception as exc:
        # Notification failures MUST NOT affect order processing
        logger.warning("Notification to %s failed: %s", user_id, exc)
