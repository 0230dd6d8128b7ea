import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from directory import SignInThrottle, SqlDirectory
from session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class BrowserSession:
    id: str
    store: SessionStore
    storage: dict[str, str] = field(default_factory=dict)
    last_seen: float = 0.0


class SessionRegistry:
    """One ``SessionStore`` per browser, keyed by the session cookie."""

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock
        self.throttle = SignInThrottle(
            self.settings.max_failed_sign_ins, self.settings.sign_in_window_secs
        )
        self._sessions: dict[str, BrowserSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, session_id: Optional[str]) -> Optional[BrowserSession]:
        if not session_id:
            return None
        with self._lock:
            browser = self._sessions.get(session_id)
            if browser is not None:
                browser.last_seen = self.clock()
            return browser

    async def create(self) -> BrowserSession:
        storage: dict[str, str] = {}
        directory = SqlDirectory(
            self.session_factory,
            storage=storage,
            settings=self.settings,
            throttle=self.throttle,
        )
        store = SessionStore(directory, storage=storage, settings=self.settings)
        await store.start()
        browser = BrowserSession(
            id=secrets.token_urlsafe(24),
            store=store,
            storage=storage,
            last_seen=self.clock(),
        )
        with self._lock:
            self._sessions[browser.id] = browser
        return browser

    def discard(self, session_id: str) -> None:
        with self._lock:
            browser = self._sessions.pop(session_id, None)
        if browser is not None:
            browser.store.close()

    def sweep_idle(self) -> int:
        cutoff = self.clock() - self.settings.session_idle_secs
        with self._lock:
            stale = [sid for sid, b in self._sessions.items() if b.last_seen < cutoff]
            removed = [self._sessions.pop(sid) for sid in stale]
        for browser in removed:
            browser.store.close()
            browser.storage.clear()
        if removed:
            logger.info(f"sessions_swept: removed={len(removed)}")
        return len(removed)
