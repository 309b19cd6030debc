import logging
import threading
import time
from typing import Callable, Dict, Optional

from .storage import ConsentRequestStore, PresenceStore, TokenInbox, now_ms

log = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 30


class CleanupScheduler:
    """
    Periodic eviction of expired entries.

    Lazy expiry at read time keeps answers correct; the sweep bounds memory
    for identities that stopped polling. `sweep()` can be called directly.
    """

    def __init__(self, presence: PresenceStore, requests: ConsentRequestStore, tokens: TokenInbox,
                 interval: float = CLEANUP_INTERVAL_SECONDS, clock: Callable[[], float] = time.time):
        self.presence = presence
        self.requests = requests
        self.tokens = tokens
        self.interval = interval
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self) -> Dict[str, int]:
        now = now_ms(self._clock)
        removed = {
            "presence": self.presence.sweep(now),
            "requests": self.requests.sweep(now),
            "tokens": self.tokens.sweep(now),
        }
        if any(removed.values()):
            log.info(f"Cleanup evicted {removed}")
        return removed

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception:
                log.exception("Cleanup sweep failed")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="relay-cleanup", daemon=True)
        self._thread.start()
        log.info(f"Cleanup scheduler started (every {self.interval}s)")

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        log.info("Cleanup scheduler stopped")
