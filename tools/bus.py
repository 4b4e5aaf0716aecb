import json
import os
from typing import Any, Callable, Dict, Optional

import redis
from loguru import logger

EMAIL_CHANNEL = "email_channel"
LEAD_CHANNEL = "lead_channel"
PARSED_EMAIL_CHANNEL = "parsed_email_channel"
INVENTORY_CHANNEL = "inventory_channel"
PRICING_CHANNEL = "pricing_channel"
DECISION_CHANNEL = "decision_channel"
LEAD_SCORING_CHANNEL = "lead_scoring_channel"
QUALIFIED_LEADS_CHANNEL = "qualified_leads_channel"

ALL_CHANNELS = (
    EMAIL_CHANNEL,
    LEAD_CHANNEL,
    PARSED_EMAIL_CHANNEL,
    INVENTORY_CHANNEL,
    PRICING_CHANNEL,
    DECISION_CHANNEL,
    LEAD_SCORING_CHANNEL,
    QUALIFIED_LEADS_CHANNEL,
)


def channel_name(base: str, customer_id: str) -> str:
    """Per-customer channel name, e.g. pricing_channel_ACME01."""
    if not customer_id:
        raise ValueError("customer_id is required to address a channel")
    return f"{base}_{customer_id}"


def customer_channels(customer_id: str) -> Dict[str, str]:
    """All channel names used by one customer's pipeline."""
    return {base: channel_name(base, customer_id) for base in ALL_CHANNELS}


class ChannelBus:
    """
    Redis pub/sub message bus.

    Delivery is fire-and-forget: Redis pub/sub keeps no backlog and has no
    acknowledgements, so a message published while nobody listens is gone.
    Within one subscription messages arrive in publish order.
    """

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379")
        self.r = client if client is not None else redis.from_url(self.redis_url)
        self._pubsub = None
        self._running = False

    def ping(self) -> bool:
        try:
            return bool(self.r.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    def publish(self, channel: str, message: Dict[str, Any]) -> int:
        """
        Publish one JSON message.

        Returns:
            Number of subscribers that received it
        """
        payload = json.dumps(message, default=str)
        receivers = self.r.publish(channel, payload)
        logger.info(f"Published message to {channel} ({receivers} subscriber(s))")
        return receivers

    def subscribe(
        self,
        channel: str,
        handler: Callable[[Any], Any],
        poll_timeout: float = 1.0,
    ) -> None:
        """
        Deliver every message on `channel` to `handler`, one at a time.

        Blocks until stop() is called. The handler runs synchronously, so a
        slow handler delays the next message on this channel.
        """
        self._pubsub = self.r.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(channel)
        self._running = True
        logger.info(f"Subscribed to {channel}")

        try:
            while self._running:
                item = self._pubsub.get_message(timeout=poll_timeout)
                if not item or item.get("type") != "message":
                    continue
                handler(item["data"])
        finally:
            self._pubsub.close()
            self._pubsub = None
            logger.info(f"Unsubscribed from {channel}")

    def stop(self) -> None:
        self._running = False

    def close(self) -> None:
        self.stop()
        try:
            self.r.close()
        except redis.RedisError as e:
            logger.warning(f"Error closing Redis connection: {e}")

    def __enter__(self) -> "ChannelBus":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
