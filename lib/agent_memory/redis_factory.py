"""Connect the Redis backend at startup, backing off while the server comes up."""

import random
import time
from typing import Callable, Iterator, Optional

import redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from .constants import Defaults, RedisKeys
from .errors import MemoryEngineError
from .security import get_logger, sanitize
from .telemetry import MemoryMetrics, get_metrics

logger = get_logger(__name__)

JITTER = 0.25


class RedisStartupError(MemoryEngineError):
    """The memory store's Redis server stayed unreachable."""

    def __init__(self, redis_url: str, attempts: int, last_error: Optional[Exception]):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Memory store at {sanitize(redis_url)} unreachable after {attempts} attempt(s): {last_error}"
        )


def backoff_delays(
    attempts: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    rand: Callable[[], float] = random.random
) -> Iterator[float]:
    """Pauses between ``attempts`` connection attempts: doubling, capped, +/-25% jitter."""
    for retry in range(attempts - 1):
        delay = min(base_delay * (2 ** retry), max_delay)
        yield delay * (1 + JITTER * (2 * rand() - 1))


def create_redis_client(
    redis_url: str,
    max_retries: int = Defaults.MAX_RETRIES,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    metrics: Optional[MemoryMetrics] = None
) -> redis.Redis:
    """Return a client whose server answers and lets us read the transaction clock.

    Reading the clock key up front surfaces a server that accepts the
    connection but refuses commands at startup instead of on the first append.

    Raises:
        RedisStartupError: the server did not answer within ``max_retries`` attempts
    """
    metrics = metrics or get_metrics()
    pauses = backoff_delays(max_retries, base_delay, max_delay)
    last_error: Optional[Exception] = None

    for attempt in range(1, max_retries + 1):
        try:
            client = redis.from_url(redis_url, decode_responses=True)
            client.ping()
            client.get(RedisKeys.TXN_CLOCK)
            if attempt > 1:
                logger.info("Memory store reachable after %d attempts", attempt)
            return client
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            last_error = e
            metrics.record_backend_error('connect')
            pause = next(pauses, None)
            if pause is None:
                break
            logger.warning(
                "Memory store unreachable (attempt %d/%d), retrying in %.1fs: %s",
                attempt, max_retries, pause, e,
            )
            sleep(pause)

    logger.error("Giving up on memory store at %s: %s", redis_url, last_error)
    raise RedisStartupError(redis_url, max_retries, last_error)
