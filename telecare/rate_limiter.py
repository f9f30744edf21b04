"""
Redis fixed-window rate limiting for public-facing endpoints
(referral code validation and gateway callbacks)
"""

import logging
import os
import time

import redis
from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"


def create_redis_client() -> redis.Redis:
    """
    Build the Redis client for this process. The app lifespan owns it and
    closes it on shutdown.
    """
    redis_url = os.getenv("REDIS_URL")

    if redis_url:
        if "@" in redis_url:
            url_parts = redis_url.split("@")
            protocol = url_parts[0].split(":")[0]
            masked_url = f"{protocol}:****@{url_parts[1]}"
        else:
            masked_url = "****"
        logger.info(f"📡 Using Redis URL connection: {masked_url}")
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=15,
            socket_timeout=30,
            retry_on_timeout=True,
            health_check_interval=30,
            max_connections=20,
        )
    else:
        redis_host = os.getenv("REDIS_HOST", "localhost")
        redis_port = int(os.getenv("REDIS_PORT", "6379"))
        redis_ssl = os.getenv("REDIS_SSL", "false").lower() == "true"
        logger.info(f"📡 Using Redis at {redis_host}:{redis_port} (SSL: {'Enabled' if redis_ssl else 'Disabled'})")
        client = redis.Redis(
            host=redis_host,
            port=redis_port,
            password=os.getenv("REDIS_PASSWORD"),
            db=int(os.getenv("REDIS_DB", "0")),
            ssl=redis_ssl,
            decode_responses=True,
            socket_connect_timeout=15,
            socket_timeout=30,
            retry_on_timeout=True,
            health_check_interval=30,
            max_connections=20,
        )

    client.ping()
    logger.info("✅ Redis connected successfully")
    return client


def check_rate_limit(
    key: str, limit: int, window_seconds: int, redis_client: redis.Redis
) -> tuple[bool, int, int]:
    """
    Count one request against a fixed window

    Returns:
        Tuple of (is_allowed, current_count, ttl_seconds)
    """
    window_key = f"{key}:{int(time.time()) // window_seconds}"
    pipe = redis_client.pipeline()
    pipe.incr(window_key)
    pipe.expire(window_key, window_seconds)
    count, _ = pipe.execute()

    ttl = window_seconds - int(time.time()) % window_seconds
    return int(count) <= limit, int(count), ttl


async def rate_limit_dependency(
    request: Request,
    limit: int,
    window_seconds: int,
    key_prefix: str = "rate_limit",
):
    """FastAPI dependency for per-IP rate limiting. Fails closed when Redis is unavailable."""
    if not RATE_LIMIT_ENABLED:
        return

    client = getattr(request.app.state, "redis", None)
    if client is None:
        logger.warning("🔒 Denying request - rate limiting enabled but Redis is not connected")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate limiting service temporarily unavailable",
        )

    client_ip = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    key = f"{key_prefix}:{client_ip}"

    try:
        is_allowed, current_count, ttl = check_rate_limit(key, limit, window_seconds, client)
    except redis.RedisError as e:
        logger.error(f"❌ Rate limiting error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate limiting service temporarily unavailable",
        ) from e

    if not is_allowed:
        logger.warning(f"🚫 Rate limit EXCEEDED for {key} - {current_count}/{limit} requests used")
        raise HTTPException(
            status_code=429,
            detail={
                "message": f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds.",
                "retry_after": ttl,
            },
            headers={"Retry-After": str(ttl)},
        )


def create_rate_limiter(limit: int, window_seconds: int, key_prefix: str = "rate_limit"):
    """
    Create a rate limiter dependency with specific parameters

    Example usage:
        validate_limit = create_rate_limiter(limit=30, window_seconds=60, key_prefix="referral_validate")

        @router.post("/validate")
        async def validate(body: ReferralValidateRequest, _: None = Depends(validate_limit)):
            ...
    """

    async def rate_limiter(request: Request):
        return await rate_limit_dependency(request, limit, window_seconds, key_prefix)

    return rate_limiter
