"""
ChatShop - Conversation session store (Redis, TTL-backed, compare-and-swap)

Layout:
  conversation:{user_id}:{store_id}  -> ConversationState JSON, TTL = expires_at - now
  pending:{user_id}:{store_id}       -> transaction id awaiting payment, 1h TTL

Every write is conditional on the `version` stamp read beforehand (WATCH/MULTI),
so two workers racing on the same session cannot clobber each other. Inside one
worker, mutations for a session are additionally serialized by a keyed lock.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

import redis.asyncio as aioredis

from chatshop.core.config import get_settings
from chatshop.core.locks import KeyedLocks
from chatshop.core.optimistic_lock import StaleWrite, with_optimistic_retry
from chatshop.core.redis_client import get_redis
from chatshop.schemas.conversation import ConversationState

settings = get_settings()
logger = logging.getLogger(__name__)

SESSION_PREFIX = "conversation:"
PENDING_PREFIX = "pending:"
RESERVED = "__reserving__"

Mutation = Callable[[ConversationState | None], ConversationState | None]


def session_key(user_id: str, store_id: str) -> str:
    return f"{SESSION_PREFIX}{user_id}:{store_id}"


def new_state(user_id: str, store_id: str, now: datetime | None = None) -> ConversationState:
    now = now or datetime.now(timezone.utc)
    return ConversationState(
        user_id=user_id,
        store_id=store_id,
        last_interaction=now,
        expires_at=now + timedelta(seconds=settings.SESSION_TTL_SECONDS),
    )


def touch(state: ConversationState, now: datetime | None = None) -> ConversationState:
    """Refresh last_interaction and push expiry out by the session TTL."""
    now = now or datetime.now(timezone.utc)
    return state.model_copy(update={
        "last_interaction": now,
        "expires_at": now + timedelta(seconds=settings.SESSION_TTL_SECONDS),
    })


def _ttl_seconds(state: ConversationState) -> int:
    remaining = (state.expires_at - datetime.now(timezone.utc)).total_seconds()
    return max(1, int(remaining))


class SessionStore:
    def __init__(self, redis: aioredis.Redis | None = None, locks: KeyedLocks | None = None):
        self._redis = redis
        self.locks = locks if locks is not None else KeyedLocks()

    @property
    def redis(self) -> aioredis.Redis:
        return self._redis if self._redis is not None else get_redis()

    async def get(self, user_id: str, store_id: str) -> ConversationState | None:
        raw = await self.redis.get(session_key(user_id, store_id))
        if raw is None:
            return None
        return ConversationState.model_validate_json(raw)

    async def set_with_ttl(self, state: ConversationState, ttl_seconds: int | None = None) -> None:
        """Unconditional write. Prefer `mutate` for read-modify-write."""
        await self.redis.set(
            session_key(state.user_id, state.store_id),
            state.model_dump_json(),
            ex=ttl_seconds or _ttl_seconds(state),
        )

    async def delete(self, user_id: str, store_id: str) -> None:
        await self.redis.delete(session_key(user_id, store_id))

    async def compare_and_set(
        self,
        user_id: str,
        store_id: str,
        state: ConversationState | None,
        expected_version: int | None,
    ) -> ConversationState | None:
        """
        Write `state` (or delete when None) only if the stored version still equals
        `expected_version` (None = key absent). Raises StaleWrite on mismatch and
        redis WatchError if the key changes between the check and EXEC.
        """
        key = session_key(user_id, store_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            raw = await pipe.get(key)
            current = ConversationState.model_validate_json(raw).version if raw else None
            if current != expected_version:
                raise StaleWrite(f"{key}: expected version {expected_version}, found {current}")

            pipe.multi()
            if state is None:
                pipe.delete(key)
                saved = None
            else:
                saved = state.model_copy(update={"version": (expected_version or 0) + 1})
                pipe.set(key, saved.model_dump_json(), ex=_ttl_seconds(saved))
            await pipe.execute()
        return saved

    async def mutate(self, user_id: str, store_id: str, fn: Mutation) -> ConversationState | None:
        """
        Apply `fn` to the current state and persist the result atomically.
        `fn` may raise a domain error to abort without writing; returning None
        deletes the session.
        """
        async with self.locks.hold(session_key(user_id, store_id)):
            return await self._mutate(user_id, store_id, fn)

    @with_optimistic_retry()
    async def _mutate(self, user_id: str, store_id: str, fn: Mutation) -> ConversationState | None:
        current = await self.get(user_id, store_id)
        updated = fn(current)
        if updated is None and current is None:
            return None
        expected = current.version if current is not None else None
        return await self.compare_and_set(user_id, store_id, updated, expected)


class PendingPayments:
    """
    Marks a customer's transaction as awaiting payment. While the marker exists
    a new confirmation for the same (user, store) is a duplicate.
    """

    def __init__(self, redis: aioredis.Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> aioredis.Redis:
        return self._redis if self._redis is not None else get_redis()

    @staticmethod
    def key(user_id: str, store_id: str) -> str:
        return f"{PENDING_PREFIX}{user_id}:{store_id}"

    async def get(self, user_id: str, store_id: str) -> str | None:
        return await self.redis.get(self.key(user_id, store_id))

    async def reserve(self, user_id: str, store_id: str) -> str | None:
        """
        Atomically claim the slot (SET NX). Returns None when claimed, otherwise
        the value already holding it.
        """
        key = self.key(user_id, store_id)
        claimed = await self.redis.set(key, RESERVED, nx=True, ex=settings.PENDING_PAYMENT_TTL_SECONDS)
        if claimed:
            return None
        return await self.redis.get(key) or RESERVED

    async def set(self, user_id: str, store_id: str, transaction_id: str) -> None:
        await self.redis.set(
            self.key(user_id, store_id), transaction_id, ex=settings.PENDING_PAYMENT_TTL_SECONDS
        )

    async def clear(self, user_id: str, store_id: str) -> None:
        await self.redis.delete(self.key(user_id, store_id))
