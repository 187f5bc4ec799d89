import threading
import time
import uuid
from typing import Optional

from cachetools import TTLCache

from calsync.logging_config import get_logger

logger = get_logger(__name__)


class OAuthStateStore:
    """
    Single-use OAuth ``state`` values bound to the principal that started the flow.

    A state is valid for ``ttl_seconds`` and can be validated once. Expired
    entries drop out of the TTL cache on access.
    """

    def __init__(self, ttl_seconds: int = 600, maxsize: int = 10000, timer=time.monotonic):
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        self._lock = threading.Lock()

    def generate_state(self, user_id: int) -> str:
        state = str(uuid.uuid4())
        with self._lock:
            self._cache[state] = user_id
        logger.debug("OAuth state generated", user_id=user_id)
        return state

    def validate_state(self, state: Optional[str]) -> Optional[int]:
        """Bound principal id, or None for unknown/expired/reused states."""
        if not state:
            return None
        with self._lock:
            self._cache.expire()
            user_id = self._cache.pop(state, None)
        if user_id is None:
            logger.warning("Invalid or expired OAuth state")
        return user_id

    def __len__(self):
        with self._lock:
            self._cache.expire()
            return len(self._cache)
