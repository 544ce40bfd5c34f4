import threading

from logging_config import get_logger

logger = get_logger(__name__)


class PresenceCounter:
    """Process-wide count of open notification connections.

    Single process only; running several instances needs a shared store instead.
    """

    def __init__(self):
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    def increment(self) -> int:
        with self._lock:
            self._count += 1
            count = self._count
        logger.debug(f"Online count incremented to {count}")
        return count

    def decrement(self) -> int:
        with self._lock:
            # never below zero
            self._count = max(0, self._count - 1)
            count = self._count
        logger.debug(f"Online count decremented to {count}")
        return count
