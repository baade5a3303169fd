import logging
import time

import redis

import config

# ---------------------------------------------------------
# LOGGING
# ---------------------------------------------------------
logger = logging.getLogger("api.redis")

# ---------------------------------------------------------
# LAZY CLIENT
# ---------------------------------------------------------
_client = None


def get_redis():
    global _client
    if _client is not None:
        return _client

    logger.info("[REDIS] Initializing Redis client REDIS_URL=%s", config.REDIS_URL)
    _client = redis.Redis.from_url(
        config.REDIS_URL,
        decode_responses=True,
        socket_keepalive=True,
        socket_connect_timeout=2,
        retry_on_timeout=True,
    )
    _log_connection_diagnostics(_client)
    return _client


# ---------------------------------------------------------
# CONNECTION DIAGNOSTICS
# ---------------------------------------------------------
def _log_connection_diagnostics(client) -> None:
    try:
        t0 = time.time()
        pong = client.ping()
        ms = int((time.time() - t0) * 1000)
        logger.info("[REDIS] Connected OK ping=%s latency=%sms", pong, ms)
    except redis.RedisError as e:
        # Commands retry on their own; the first real call surfaces the error.
        logger.error("[REDIS] Initial ping failed: %s", e)
