from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from pricewatch.utils.time import utc_now_s

WizardStep = Literal["crypto", "threshold", "timeframe"]


@dataclass(slots=True)
class WizardSession:
    """In-progress /create conversation for one user: crypto -> threshold -> timeframe."""
    step: WizardStep = "crypto"
    asset_id: Optional[str] = None
    asset_label: Optional[str] = None
    threshold_pct: Optional[float] = None
    started_at: float = 0.0


class SessionStore:
    """
    Wizard sessions keyed by telegram user id. Sessions older than ttl_s are
    dropped on access so an abandoned wizard doesn't swallow later messages.
    """
    def __init__(self, ttl_s: float = 15 * 60, max_size: int = 1_000):
        self.ttl_s = ttl_s
        self.max_size = max_size
        self._sessions: dict[int, WizardSession] = {}

    def _expired(self, s: WizardSession, now: float) -> bool:
        return now - s.started_at > self.ttl_s

    def get(self, user_key: int, now: Optional[float] = None) -> Optional[WizardSession]:
        s = self._sessions.get(user_key)
        if s is None:
            return None
        now = utc_now_s() if now is None else now
        if self._expired(s, now):
            self._sessions.pop(user_key, None)
            return None
        return s

    def begin(self, user_key: int, now: Optional[float] = None) -> WizardSession:
        now = utc_now_s() if now is None else now
        # opportunistic cleanup when large: drop abandoned wizards
        if len(self._sessions) >= self.max_size:
            for k, s in list(self._sessions.items()):
                if self._expired(s, now):
                    self._sessions.pop(k, None)
        s = WizardSession(started_at=now)
        self._sessions[user_key] = s
        return s

    def clear(self, user_key: int) -> bool:
        return self._sessions.pop(user_key, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)


class CommandRateLimiter:
    """Fixed one-minute window of commands per user."""
    def __init__(self, max_per_minute: int = 10, window_s: float = 60.0, max_users: int = 10_000):
        self.max_per_minute = max_per_minute
        self.window_s = window_s
        self.max_users = max_users
        self._counts: dict[int, tuple[int, float]] = {}  # user -> (count, reset_at)

    def allow(self, user_key: int, now: Optional[float] = None) -> bool:
        now = utc_now_s() if now is None else now
        count, reset_at = self._counts.get(user_key, (0, 0.0))
        if now >= reset_at:
            # opportunistic cleanup when large: windows that have closed
            if len(self._counts) >= self.max_users:
                for k, (_, r) in list(self._counts.items()):
                    if now >= r:
                        self._counts.pop(k, None)
            self._counts[user_key] = (1, now + self.window_s)
            return True
        if count >= self.max_per_minute:
            return False
        self._counts[user_key] = (count + 1, reset_at)
        return True

    def __len__(self) -> int:
        return len(self._counts)
