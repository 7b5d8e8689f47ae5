"""
Redis pub/sub utilities for live chat fan-out across worker processes.
"""
import asyncio
import json
import logging
from typing import AsyncIterator, Optional

import redis.asyncio as redis

from config import REALTIME_FANOUT_CHANNEL, REDIS_RETRY_INTERVAL_SECONDS, REDIS_URL

logger = logging.getLogger(__name__)

_redis: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Get or create Redis connection singleton."""
    global _redis
    if _redis is None:
        _redis = redis.from_url(REDIS_URL, decode_responses=True)
        logger.info(f"Redis connection initialized: {REDIS_URL}")
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def publish_envelope(envelope: dict, channel: str = REALTIME_FANOUT_CHANNEL) -> int:
    """
    Publish a fan-out envelope (JSON-encoded) and return the number of
    subscribed workers that received it.
    """
    r = get_redis()
    receivers = await r.publish(channel, json.dumps(envelope, default=str))
    logger.debug(
        f"Published {envelope.get('event', {}).get('event', 'unknown')} to {channel} "
        f"(receivers={receivers})"
    )
    return receivers


async def subscribe_envelopes(channel: str = REALTIME_FANOUT_CHANNEL) -> AsyncIterator[dict]:
    """
    Subscribe to the fan-out channel and yield decoded envelopes.
    Reconnects with a fixed backoff when the connection drops; returns on
    cancellation.
    """
    while True:
        psub = None
        try:
            psub = get_redis().pubsub()
            await psub.subscribe(channel)
            logger.info(f"Subscribed to Redis channel: {channel}")

            async for msg in psub.listen():
                if not msg or msg.get("type") != "message":
                    continue
                try:
                    yield json.loads(msg["data"])
                except (TypeError, ValueError):
                    logger.warning(f"Dropping malformed fan-out payload on {channel}")
        except asyncio.CancelledError:
            raise
        except redis.RedisError as e:
            logger.error(f"Redis subscription error on {channel}: {e}")
            await asyncio.sleep(REDIS_RETRY_INTERVAL_SECONDS)
        finally:
            if psub is not None:
                try:
                    await psub.unsubscribe(channel)
                    await psub.aclose()
                except redis.RedisError as e:
                    logger.debug(f"Error closing Redis subscription on {channel}: {e}")
