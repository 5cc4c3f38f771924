import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict

from .domain import RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass
class Window:
    count: int
    window_start: float


class FixedWindowRateLimiter:
    """
    Per-client fixed window request counter.

    Requests over the limit are still counted; the window only resets once
    ``window_seconds`` have passed since it opened. State is per process.
    """

    def __init__(
        self,
        max_requests: int = 12,
        window_seconds: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
        max_tracked_clients: int = 10000,
    ):
        if max_requests < 1 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self.max_tracked_clients = max_tracked_clients
        self._windows: Dict[str, Window] = {}

    def __len__(self) -> int:
        return len(self._windows)

    def _prune(self, now: float) -> None:
        """Forget clients whose window has already elapsed."""
        self._windows = {
            client_id: window
            for client_id, window in self._windows.items()
            if now - window.window_start <= self.window_seconds
        }

    def is_limited(self, client_id: str) -> bool:
        # No awaits in here, so updates are atomic on the event loop.
        now = self._clock()
        window = self._windows.get(client_id)

        if window is None and len(self._windows) >= self.max_tracked_clients:
            self._prune(now)

        if window is None or now - window.window_start > self.window_seconds:
            self._windows[client_id] = Window(count=1, window_start=now)
            return False

        window.count += 1
        return window.count > self.max_requests

    def check(self, client_id: str) -> None:
        """Raise RateLimitExceeded when ``client_id`` is over its budget."""
        if self.is_limited(client_id):
            logger.warning(f"🚦 Rate limit exceeded for client {client_id}")
            raise RateLimitExceeded(
                "Too many requests. Please slow down.",
                retry_after=self.window_seconds,
            )
