# backend/photo_analysis/worker.py
import logging
import threading
import traceback
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class LocalPoller:
    """
    Fallback worker used while the broker is down: calls tick() every
    `interval` seconds on a background thread until stopped.
    """

    def __init__(self, tick: Callable[[], object], interval: float):
        self.tick = tick
        self.interval = interval
        self._thread: Optional[threading.Thread] = None
        self._stop: Optional[threading.Event] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self):
        with self._lock:
            if self.running:
                return
            self._stop = threading.Event()
            self._thread = threading.Thread(target=self._loop, args=(self._stop,),
                                            name="local-poller", daemon=True)
            self._thread.start()
        logger.info("local polling started (every %ss)", self.interval)

    def stop(self):
        with self._lock:
            if self._stop is not None:
                self._stop.set()

    def _loop(self, stop: threading.Event):
        while not stop.wait(self.interval):
            try:
                self.tick()
            except Exception:
                # keep polling; the tick logs its own failures
                logger.error("local poll error: %s", traceback.format_exc())
