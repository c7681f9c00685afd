"""Background thread driving the learning scheduler.

Summary
-------
Calls the engine's ``tick`` at a fixed interval on a daemon thread.  A
failing tick is logged and stops the worker, so a broken engine does not
spin in the background.

See Also
--------
sona.consolidation.scheduler.LearningScheduler
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class BackgroundLearner:
    """Periodically invoke ``tick`` until stopped.

    ``tick`` returns whether a consolidation cycle completed; the worker
    counts ticks, completed cycles and errors for :meth:`log_status`.
    """

    def __init__(self, tick: Callable[[], bool], *, name: str = "sona-background") -> None:
        self._tick = tick
        self._name = name
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self._log = {"ticks": 0, "cycles": 0, "errors": 0}

    def _loop(self, interval: float, stop_event: threading.Event) -> None:
        while not stop_event.wait(interval):
            self._log["ticks"] += 1
            try:
                if self._tick():
                    self._log["cycles"] += 1
            except Exception:
                self._log["errors"] += 1
                logger.exception("background tick failed; stopping worker")
                stop_event.set()

    def start(self, interval: float) -> None:
        """Start the loop unless it is already running."""

        if self.running:
            return
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._loop, args=(interval, stop_event), name=self._name, daemon=True
        )
        self._stop_event = stop_event
        self._thread = thread
        thread.start()
        logger.debug("background learner started (interval=%.3fs)", interval)

    def stop(self, timeout: float = 1.0) -> None:
        """Signal the loop to exit and wait for the thread."""

        if self._thread is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None
        self._stop_event = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def log_status(self) -> dict:
        return dict(self._log)


__all__ = ["BackgroundLearner"]
