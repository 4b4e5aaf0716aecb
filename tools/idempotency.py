import os
import time
from typing import Dict, Optional

import redis
from loguru import logger

DEFAULT_TTL = 86400


class Idem:
    """
    Publish-once guard for inbound email.

    A message id is claimed with Redis SET NX before the message enters the
    pipeline and released again when publishing fails, so the next poll (or
    webhook retry) can pick it up. Without Redis, claims live in process
    memory and expire after the same TTL.
    """

    def __init__(self, client: Optional[redis.Redis] = None, prefix: str = "idem"):
        self.prefix = prefix
        self._claims: Dict[str, float] = {}
        self.r = client if client is not None else self._connect()

    @staticmethod
    def _connect() -> Optional[redis.Redis]:
        redis_url = os.getenv("REDIS_URL", "redis://localhost:6379")
        try:
            client = redis.from_url(redis_url)
            client.ping()
        except redis.RedisError as e:
            logger.error(f"Redis unavailable for idempotency keys, keeping them in memory: {e}")
            return None
        logger.info("Redis connection established successfully")
        return client

    def _prune(self, now: float) -> None:
        expired = [key for key, expires in self._claims.items() if expires <= now]
        for key in expired:
            del self._claims[key]

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def check_and_set(self, key: str, ttl: int = DEFAULT_TTL) -> bool:
        """
        Claim a message id.

        Args:
            key: Mailbox message id (or customer:message id)
            ttl: Seconds before the claim expires

        Returns:
            True if the claim is new, False if the message was already taken
        """
        if not key:
            logger.warning("Empty key provided to idempotency check")
            return False

        if self.r is None:
            now = time.time()
            self._prune(now)
            if key in self._claims:
                return False
            self._claims[key] = now + ttl
            return True

        try:
            return self.r.set(name=self._key(key), value=int(time.time()), ex=ttl, nx=True) is True
        except redis.RedisError as e:
            # A broken guard must not stall ingestion
            logger.error(f"Idempotency check failed for {key}, letting it through: {e}")
            return True

    def clear_key(self, key: str) -> bool:
        """Release a claim so the message is picked up again."""
        if self.r is None:
            return self._claims.pop(key, None) is not None

        try:
            return bool(self.r.delete(self._key(key)))
        except redis.RedisError as e:
            logger.error(f"Failed to release idempotency key {key}: {e}")
            return False
