"""
Periodic loops driving the synchronizer, monitor and scheduler ticks.
"""
import logging
import threading
from typing import Callable, Optional

from orchestrator.logging_utils import correlation_context

logger = logging.getLogger(__name__)


class PeriodicLoop:
    """
    Calls ``func`` every ``interval`` seconds on a daemon thread.

    The first call happens right after start(). An exception raised by
    ``func`` is logged and the loop carries on with the next interval.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], object]):
        self.name = name
        self.interval = interval
        self.func = func
        self.ticks = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"loop-{self.name}")
        self._thread.start()
        logger.info(f"Started {self.name} loop (every {self.interval}s)")

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> None:
        with correlation_context(loop=self.name):
            try:
                self.func()
            except Exception as e:
                logger.error(f"{self.name} tick failed: {e}", exc_info=True)
            finally:
                self.ticks += 1

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)
        logger.info(f"Stopped {self.name} loop")
