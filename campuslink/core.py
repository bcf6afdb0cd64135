import asyncio
import functools
import logging

from botocore.exceptions import ConnectionClosedError, EndpointConnectionError
from prometheus_client import Counter, Gauge, start_http_server
from sqlalchemy.exc import InterfaceError, OperationalError

from . import config
from .exceptions import BackendUnavailable

logger = logging.getLogger(__name__)

REDIS = None

MESSAGES_SENT = Counter('campuslink_messages_sent_total', 'Direct messages sent')
FRIEND_REQUESTS_SENT = Counter('campuslink_friend_requests_sent_total', 'Friend requests sent')
LIVE_SESSIONS = Gauge('campuslink_live_sessions', 'Open live websocket sessions')

TRANSIENT_ERRORS = (
    OperationalError,
    InterfaceError,
    ConnectionError,
    TimeoutError,
    EndpointConnectionError,
    ConnectionClosedError,
)


def retry_transient(func):
    """Retry an async backend call on transient failures.

    Attempts and delay come from BACKEND_RETRY_ATTEMPTS / BACKEND_RETRY_DELAY;
    the delay grows linearly with the attempt number. When every attempt
    fails, BackendUnavailable is raised from the last error.
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        attempts = max(1, config.BACKEND_RETRY_ATTEMPTS)
        for attempt in range(attempts):
            try:
                return await func(*args, **kwargs)
            except TRANSIENT_ERRORS as e:
                logger.warning(f'{func.__name__} attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt < attempts - 1:
                    await asyncio.sleep(config.BACKEND_RETRY_DELAY * (attempt + 1))
                else:
                    logger.error(f'{func.__name__} failed after all retries')
                    raise BackendUnavailable() from e
    return wrapper


def init_metrics(port: int = config.METRICS_PORT):
    """Initialize Prometheus metrics server"""
    try:
        start_http_server(port)
        logger.info(f"Prometheus metrics server started on port {port}")
    except OSError as e:
        logger.warning(f'Prometheus start failed: {e}')


async def redis_startup():
    """Connect to Redis with retries; leaves REDIS unset when not configured"""
    global REDIS

    if not config.REDIS_URL:
        logger.info("REDIS_URL not set, running with in-process change hub")
        return

    import redis.asyncio as aioredis
    from redis.exceptions import RedisError

    max_retries = 3
    retry_delay = 3  # seconds

    for attempt in range(max_retries):
        try:
            logger.info(f"Attempting to connect to Redis: {config.REDIS_URL} (attempt {attempt + 1}/{max_retries})")

            REDIS = aioredis.from_url(
                config.REDIS_URL,
                decode_responses=False,
                max_connections=20,
                retry_on_timeout=True,
                health_check_interval=30,
                socket_connect_timeout=5,
            )

            # Test the connection
            await REDIS.ping()

            logger.info("Redis connected successfully")
            break

        except (RedisError, OSError) as e:
            logger.warning(f'Redis startup attempt {attempt + 1} failed: {e}')
            if REDIS:
                await REDIS.aclose()
                REDIS = None

            if attempt < max_retries - 1:
                logger.info(f"Retrying Redis connection in {retry_delay} seconds...")
                await asyncio.sleep(retry_delay)
            else:
                logger.error("Failed to connect to Redis after all retries")


async def shutdown_connections():
    """Gracefully shutdown all connections"""
    global REDIS
    logger.info("Shutting down connections...")

    if REDIS:
        try:
            await REDIS.aclose()
            logger.info("Redis connection closed")
        except OSError as e:
            logger.error(f"Error closing Redis connection: {e}")
        REDIS = None


async def commit_once(session):
    """Commit a write that must not be replayed by retry_transient.
    A transient failure here leaves the outcome unknown, so it surfaces as BackendUnavailable."""
    try:
        await session.commit()
    except TRANSIENT_ERRORS as e:
        logger.error(f'commit failed, not retrying: {e}')
        raise BackendUnavailable() from e
