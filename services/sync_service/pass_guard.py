"""Single-flight guard: at most one sync pass per connection at a time."""

import logging
import time
from contextlib import contextmanager
from typing import Callable, Dict

from shared.errors import SyncAlreadyRunning

logger = logging.getLogger(__name__)

# Claims older than this are treated as abandoned
DEFAULT_LEASE_SECONDS = 3600


class PassGuard:
    """
    Tracks which connections currently have a pass in flight.

    A claim is a lease: if its holder never releases it (for example a
    background pass that was queued but never started), it expires after
    lease_seconds and the connection can be claimed again.

    acquire/release are synchronous and only called from the event loop
    thread, so a plain dict is enough.
    """

    def __init__(self, lease_seconds: float = DEFAULT_LEASE_SECONDS, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            lease_seconds: How long a claim stays valid without being released
            clock: Monotonic time source (tests)
        """
        self.lease_seconds = lease_seconds
        self.clock = clock
        self._claims: Dict[str, float] = {}

    def _is_held(self, key: str) -> bool:
        claimed_at = self._claims.get(key)
        return claimed_at is not None and self.clock() - claimed_at < self.lease_seconds

    def is_running(self, connection_id) -> bool:
        return self._is_held(str(connection_id))

    def acquire(self, connection_id):
        """
        Claim the connection.

        Raises:
            SyncAlreadyRunning: If a pass already holds an unexpired claim
        """
        key = str(connection_id)
        if self._is_held(key):
            logger.warning(f"Rejecting concurrent sync pass for connection {key}")
            raise SyncAlreadyRunning(key)
        if key in self._claims:
            logger.warning(f"Reclaiming expired sync claim for connection {key}")
        self._claims[key] = self.clock()

    def release(self, connection_id):
        self._claims.pop(str(connection_id), None)

    @contextmanager
    def hold(self, connection_id):
        """Context manager form of acquire/release."""
        self.acquire(connection_id)
        try:
            yield
        finally:
            self.release(connection_id)


# Process-wide guard shared by every orchestrator instance
pass_guard = PassGuard()
