"""
ChatShop - Messaging webhook

Flow:
  1. resolve the store from the path, verify X-Line-Signature with its channel secret
  2. parse the body into typed events (unsupported kinds are skipped)
  3. run each event through the conversation handler and reply
"""
import base64
import hashlib
import hmac
import json
import logging

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from chatshop.api.deps import get_shop
from chatshop.core.errors import NotFound
from chatshop.schemas.events import ImageMessageEvent, parse_webhook_events
from chatshop.services.container import Shop

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhook"])


def verify_signature(channel_secret: str, body: bytes, signature: str) -> bool:
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("utf-8")
    return hmac.compare_digest(expected, signature)


@router.post("/callback/{store_id}")
async def callback(
    store_id: str,
    request: Request,
    x_line_signature: str = Header(default=""),
    shop: Shop = Depends(get_shop),
):
    body = await request.body()
    try:
        profile = await shop.menus.load_profile(store_id)
    except NotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found.")

    if not verify_signature(profile.line_channel_secret, body, x_line_signature):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature.")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not JSON.")

    handled = 0
    for event in parse_webhook_events(payload):
        if not isinstance(event, ImageMessageEvent) and not event.source.display_name:
            name = await shop.messenger.display_name(profile.line_channel_token, event.source.user_id)
            event = event.model_copy(update={"source": event.source.model_copy(update={"display_name": name})})

        replies = await shop.conversation.handle_inbound_event(event, profile)
        handled += 1
        try:
            await shop.messenger.reply(profile.line_channel_token, event.reply_token, replies)
        except httpx.HTTPError as exc:
            logger.warning("Reply to %s failed: %s", event.source.user_id, exc)

    return {"status": "ok", "handled": handled}
