"""
shutdown.py

Cooperative cancellation flag for long-running batch jobs.
The aggregator checks the flag at batch boundaries; SIGINT/SIGTERM only set it.
"""
import logging
import signal
import threading
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class ShutdownFlag:
    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def set(self, reason: str = "requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.warning(f"Shutdown requested ({reason}); finishing in-flight work")
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def clear(self) -> None:
        self._event.clear()
        self.reason = None

    def install(self, signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)) -> bool:
        """Route process signals to this flag. Returns False off the main thread."""
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on main thread; signal handlers not installed")
            return False

        def _handler(signum, frame):
            self.set(signal.Signals(signum).name)

        for sig in signals:
            signal.signal(sig, _handler)
        return True
