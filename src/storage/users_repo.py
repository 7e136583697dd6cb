# src/storage/users_repo.py
from __future__ import annotations

from typing import Optional

import structlog
from redis.asyncio import Redis

from pricewatch.alerts.models import User
from pricewatch.utils.time import utc_now_s
from storage import keys

log = structlog.get_logger("users_repo")


class RedisUserRepository:
    """Users keyed by sequence id, with a telegram_id -> id lookup key."""

    def __init__(self, redis: Redis):
        self.redis = redis

    async def create(self, telegram_id: int, username: Optional[str] = None) -> User:
        user_id = int(await self.redis.incr(keys.USER_SEQ))
        now = utc_now_s()
        user = User(
            id=user_id,
            telegram_id=int(telegram_id),
            username=username,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        # hash first, then SETNX the lookup: whoever wins the lookup owns the
        # telegram id and its hash is already readable
        await self.redis.hset(keys.user(user_id), mapping=user.to_hash())
        claimed = await self.redis.set(keys.user_by_telegram(telegram_id), user_id, nx=True)
        if not claimed:
            await self.redis.delete(keys.user(user_id))
            existing = await self.get_by_telegram_id(telegram_id)
            if existing is None:
                raise RuntimeError(f"user lookup for telegram id {telegram_id} points to a missing record")
            return existing

        log.info("user_created", user_id=user_id, telegram_id=telegram_id, username=username)
        return user

    async def get(self, user_id: int) -> Optional[User]:
        h = await self.redis.hgetall(keys.user(user_id))
        return User.from_hash(h) if h else None

    async def get_by_telegram_id(self, telegram_id: int) -> Optional[User]:
        user_id = await self.redis.get(keys.user_by_telegram(telegram_id))
        if user_id is None:
            return None
        return await self.get(int(user_id))

    async def get_or_create(self, telegram_id: int, username: Optional[str] = None) -> User:
        user = await self.get_by_telegram_id(telegram_id)
        if user is not None:
            return user
        return await self.create(telegram_id, username)
