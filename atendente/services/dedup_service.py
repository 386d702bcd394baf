import os
import threading
import time
from typing import Callable, Optional

from atendente.logging_config import get_logger

logger = get_logger("dedup_service")

DEDUP_TTL_SECONDS = float(os.environ.get("DEDUP_TTL_SECONDS", "15"))


class DedupCache:
    """Process-local message-id cache with a short per-entry expiry.

    Gateways fan the same event out to every registered endpoint and retry on
    slow answers; the window only has to outlive that, not a restart.
    """

    def __init__(self, ttl_seconds: float = DEDUP_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._expires_at: dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [key for key, expires_at in self._expires_at.items() if expires_at <= now]
        for key in expired:
            del self._expires_at[key]

    def should_process(self, message_id: Optional[str]) -> bool:
        if not message_id:
            return True

        with self._lock:
            now = self._clock()
            self._purge(now)
            if message_id in self._expires_at:
                logger.info("Duplicate message_id", extra={"context": {"message_id": message_id}})
                return False
            self._expires_at[message_id] = now + self.ttl_seconds
            return True

    def clear(self) -> None:
        with self._lock:
            self._expires_at.clear()

    def __len__(self) -> int:
        return len(self._expires_at)


_dedup_cache: Optional[DedupCache] = None


def get_dedup_cache() -> DedupCache:
    """FastAPI dependency returning the process-wide cache."""
    global _dedup_cache
    if _dedup_cache is None:
        _dedup_cache = DedupCache()
    return _dedup_cache
