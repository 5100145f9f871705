"""Background thread that runs a job on a fixed interval."""

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicMonitor:
    def __init__(self, name: str, interval_seconds: float, tick: Callable[[], object]):
        self.name = name
        self.interval_seconds = interval_seconds
        self.tick = tick
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self):
        if not self._thread.is_alive():
            logger.info("Starting %s monitor (interval=%ss)", self.name, self.interval_seconds)
            self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout)

    def _run(self):
        while not self._stop_event.wait(self.interval_seconds):
            try:
                result = self.tick()
                if result:
                    logger.info("%s monitor: %s", self.name, result)
            except Exception:  # pragma: no cover - best effort logging
                logger.exception("%s monitor encountered an error", self.name)
