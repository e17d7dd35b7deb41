"""Fixed-interval background jobs (idempotency sweep, budget sweep)."""

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs `func` every `interval_seconds` on a daemon thread until stopped.

    A failing run is logged and the next run still happens. Runs never
    overlap because one thread executes them in sequence.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Any],
        run_immediately: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.run_immediately = run_immediately
        self.runs = 0
        self.failures = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"replyguard-{self.name}", daemon=True)
        self._thread.start()
        logger.info("Started periodic task %s every %.1fs", self.name, self.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_once(self) -> Any:
        """Run the job on the caller's thread. Exceptions are logged, not raised."""
        self.runs += 1
        try:
            return self.func()
        except Exception as exc:
            self.failures += 1
            logger.exception("Periodic task %s failed: %s", self.name, exc)
            return None

    def _loop(self) -> None:
        if self.run_immediately:
            self.run_once()
        while not self._stop.wait(timeout=self.interval_seconds):
            self.run_once()
