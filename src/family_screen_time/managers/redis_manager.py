"""
Redis manager for the live notification channels.

This module provides the RedisManager class, which owns the asynchronous Redis
connection used to publish family events and to subscribe to a family's
channels from the WebSocket endpoint.

Logging:
    - Uses the centralized logging manager.
    - Logs connection attempts, successes, and failures.
    - Connection failures are raised as ``StoreUnavailable``.
"""

from contextlib import asynccontextmanager
import json
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from family_screen_time.config import settings
from family_screen_time.managers.errors import StoreUnavailable
from family_screen_time.managers.logging_manager import get_logger

logger = get_logger(prefix="[RedisManager]")


class RedisManager:
    """
    Manages a single Redis connection for the application.

    The connection is created lazily on first use, so importing the module never
    touches the network.

    Attributes:
        redis_url: The Redis connection URL.
        channel_prefix: Prefix applied to every pub/sub channel name.
    """

    def __init__(self, redis_url: Optional[str] = None, channel_prefix: Optional[str] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self.channel_prefix = channel_prefix if channel_prefix is not None else settings.REDIS_CHANNEL_PREFIX
        self._redis: Optional[redis_async.Redis] = None
        self.logger = logger

    async def get_redis(self) -> redis_async.Redis:
        """
        Get or create the Redis connection.

        Raises:
            StoreUnavailable: If Redis cannot be reached.
        """
        if self._redis is None:
            try:
                self.logger.info("Attempting async connection to Redis at %s", self.redis_url)
                client = redis_async.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
                )
                await client.ping()
                self._redis = client
                self.logger.info("Successfully connected (async) to Redis at %s", self.redis_url)
            except (RedisError, OSError) as conn_exc:
                self.logger.error("Failed to create async Redis connection: %s", conn_exc, exc_info=True)
                raise StoreUnavailable(
                    "Notification channel is unavailable", operation="connect", backend="redis"
                ) from conn_exc
        return self._redis

    def channel(self, family_id: str, audience: str) -> str:
        """Channel name for one audience of a family, e.g. ``fst:fam1:guardians``."""
        name = f"{family_id}:{audience}"
        return f"{self.channel_prefix}:{name}" if self.channel_prefix else name

    async def publish_json(self, channel: str, payload: Any) -> int:
        """
        Publish a JSON payload on a channel.

        Returns:
            int: Number of subscribers that received the message
        """
        redis_client = await self.get_redis()
        try:
            receivers = await redis_client.publish(channel, json.dumps(payload, default=str))
        except RedisError as e:
            raise StoreUnavailable("Failed to publish event", operation="publish", backend="redis") from e
        self.logger.debug("Published to %s (%d receivers)", channel, receivers)
        return receivers

    async def _messages(self, pubsub) -> AsyncIterator[dict]:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except (json.JSONDecodeError, TypeError):
                    self.logger.warning("Dropping malformed message on %s", message.get("channel"))
        except RedisError as e:
            raise StoreUnavailable("Subscription failed", operation="subscribe", backend="redis") from e

    @asynccontextmanager
    async def subscribe(self, *channels: str) -> AsyncIterator[AsyncIterator[dict]]:
        """
        Subscribe to the given channels and yield an iterator of decoded JSON messages.

        The subscription is confirmed before the context is entered; messages
        published from then on are buffered on the connection until read.

        Raises:
            StoreUnavailable: If the subscription cannot be established.
        """
        redis_client = await self.get_redis()
        pubsub = redis_client.pubsub()
        try:
            await pubsub.subscribe(*channels)
            pending = set(channels)
            while pending:
                reply = await pubsub.get_message(timeout=settings.REDIS_CONNECT_TIMEOUT)
                if reply is None:
                    raise StoreUnavailable(
                        "Subscription was not confirmed", operation="subscribe", backend="redis"
                    )
                if reply.get("type") == "subscribe":
                    pending.discard(reply.get("channel"))
        except RedisError as e:
            await pubsub.aclose()
            raise StoreUnavailable("Subscription failed", operation="subscribe", backend="redis") from e
        except StoreUnavailable:
            await pubsub.aclose()
            raise
        self.logger.info("Subscribed to %s", ", ".join(channels))
        try:
            yield self._messages(pubsub)
        finally:
            try:
                await pubsub.unsubscribe(*channels)
            except RedisError as e:
                self.logger.warning("Unsubscribe from %s failed: %s", ", ".join(channels), e)
            await pubsub.aclose()

    async def health_check(self) -> bool:
        try:
            redis_client = await self.get_redis()
            return bool(await redis_client.ping())
        except (StoreUnavailable, RedisError) as e:
            self.logger.warning("Redis health check failed: %s", e)
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis connection closed")


redis_manager = RedisManager()
