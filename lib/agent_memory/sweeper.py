"""Background service for anti-pattern sweeps.

Runs AntiPatternInverter.sweep() on a configurable interval so rules whose
feedback has turned net-harmful become warnings without anyone asking.

Usage:
    python -m agent_memory.sweeper

Environment variables:
    AGENT_MEMORY_REDIS_URL: Redis connection URL (default: redis://localhost:6379)
    AGENT_MEMORY_SWEEP_INTERVAL: Seconds between sweeps (default: 3600)
    AGENT_MEMORY_SWEEP_THRESHOLD: Invert rules scoring below this (default: 0.0)
"""

import logging
import signal
import sys
import threading
from typing import List, Optional

from .config import MemoryConfig
from .constants import Defaults
from .engine import MemoryEngine
from .errors import MemoryEngineError
from .redis_factory import RedisStartupError
from .security import get_logger

logger = get_logger(__name__)


class SweepService:
    """Periodically sweeps an engine's rules.

    ``stop()`` (or SIGTERM/SIGINT under ``start()``) interrupts both the wait
    between sweeps and a sweep in progress; a cancelled sweep leaves only
    complete inversions behind.
    """

    def __init__(self, engine: MemoryEngine, interval_seconds: float = Defaults.SWEEP_INTERVAL,
                 threshold: Optional[float] = None):
        self.engine = engine
        self.interval = interval_seconds
        self.threshold = threshold
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.sweeps_run = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> List[str]:
        """One sweep. Storage errors are logged and the service keeps going."""
        try:
            written = self.engine.sweep(self.threshold, cancel=self._stop)
        except MemoryEngineError as e:
            logger.error("Sweep failed: %s", e)
            self.engine.store.metrics.record_backend_error('sweep')
            return []
        finally:
            self.sweeps_run += 1
        if written:
            logger.info("Sweep wrote %d inversions: %s", len(written), written)
        return written

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)

    def start_background(self) -> threading.Thread:
        """Run the sweep loop in a daemon thread."""
        if self.running:
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name='agent-memory-sweeper', daemon=True)
        self._thread.start()
        return self._thread

    def start(self) -> None:
        """Run the sweep loop in the calling (main) thread with signal handling."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)
        logger.info("Sweep service started (interval %ss, threshold %s)",
                    self.interval, self.threshold)
        self._stop.clear()
        self._loop()

    def _handle_shutdown(self, signum: int, frame) -> None:
        logger.info("Shutdown requested (signal %d)", signum)
        self._stop.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)


def main() -> None:
    """Entry point for the sweep service."""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(levelname)s %(message)s')
    config = MemoryConfig.from_env()
    if not config.redis_url:
        config.redis_url = Defaults.REDIS_URL

    try:
        engine = MemoryEngine.from_config(config)
    except RedisStartupError as e:
        logger.error("Failed to connect to Redis: %s", e)
        sys.exit(1)

    service = SweepService(engine, config.sweep_interval, config.sweep_threshold)
    try:
        service.start()
    except KeyboardInterrupt:
        service.stop()


if __name__ == "__main__":
    main()
