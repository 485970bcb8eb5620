"""Network connectivity signals used to decide between fetching and the offline path."""

import logging
import socket
import threading
import time
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class ConnectivitySignal(Protocol):
    def is_connected(self) -> bool:
        ...


class StaticConnectivity:
    """Fixed connectivity flag, switchable at runtime (dev/tests)."""

    def __init__(self, connected: bool = True):
        self.connected = connected

    def is_connected(self) -> bool:
        return self.connected

    def set_connected(self, connected: bool) -> None:
        self.connected = connected


class TcpConnectivity:
    """
    Connectivity by opening a TCP connection to the chart service host.

    The result is remembered for `cache_seconds` so a burst of requests
    costs one connection attempt.
    """

    def __init__(self, host: str, port: int = 443, timeout_ms: int = 1500,
                 cache_seconds: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.host = host
        self.port = port
        self.timeout = timeout_ms / 1000.0
        self.cache_seconds = cache_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._last_result: Optional[bool] = None
        self._checked_at = 0.0

    def _check(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True
        except OSError as e:
            logger.info(f"Connectivity check to {self.host}:{self.port} failed: {e}")
            return False

    def is_connected(self) -> bool:
        with self._lock:
            now = self.clock()
            if self._last_result is None or now - self._checked_at >= self.cache_seconds:
                self._last_result = self._check()
                self._checked_at = now
            return self._last_result
