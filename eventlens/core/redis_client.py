import redis
from redis.exceptions import RedisError
import structlog

logger = structlog.get_logger()


def connect_redis(url: str | None) -> redis.Redis | None:
    """
    Connect and ping, or return None.

    Callers treat None as "no Redis" and use their in-process fallback.
    """
    if not url:
        return None

    try:
        client = redis.from_url(url, decode_responses=False, socket_connect_timeout=2)
        client.ping()
    except RedisError as e:
        logger.warning("redis_unavailable_using_memory", error=str(e))
        return None

    logger.info("redis_connected")
    return client
