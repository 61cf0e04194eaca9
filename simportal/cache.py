"""
cache.py — Redis layer for simportal.

Namespace conventions:
  lti_nonce:{consumer_key}:{nonce}:{timestamp}   → "1"    TTL settings.lti_nonce_ttl_seconds

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x — do NOT use aioredis separately)
  - Pool created once in lifespan, stored on app.state.redis
  - Helper functions take the client as a param — no module-level global state
  - Nonces are claimed with SET NX EX so two launches racing on the same nonce
    cannot both succeed
  - Logs only the consumer key — never the nonce or signature
"""
import logging

import redis.asyncio as aioredis

from simportal.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
NONCE_PREFIX = "lti_nonce"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_nonce_key(consumer_key: str, nonce: str, timestamp: str) -> str:
    """Build Redis key for an LTI launch nonce: lti_nonce:{consumer}:{nonce}:{timestamp}"""
    return f"{NONCE_PREFIX}:{consumer_key}:{nonce}:{timestamp}"


# ---------------------------------------------------------------------------
# Pool factory: called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool(redis_url: str = None) -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup — stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    url = redis_url or settings.redis_url
    client = aioredis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", url)
    return client


# ---------------------------------------------------------------------------
# Nonce helpers
# ---------------------------------------------------------------------------

async def claim_nonce(
    client: aioredis.Redis,
    consumer_key: str,
    nonce: str,
    timestamp: str,
    ttl_seconds: int,
) -> bool:
    """
    Record a launch nonce. Returns False if it was already used inside the TTL window.
    """
    key = make_nonce_key(consumer_key, nonce, timestamp)
    created = await client.set(key, "1", nx=True, ex=ttl_seconds)
    if not created:
        logger.warning("LTI nonce replay rejected consumer=%s", consumer_key)
        return False
    return True
