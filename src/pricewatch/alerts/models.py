from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

# Bounds enforced when an alert is created or edited. The evaluator trusts
# stored definitions and never re-checks them.
MIN_THRESHOLD_PCT = 0.1
MAX_THRESHOLD_PCT = 100.0
MIN_WINDOW_MINUTES = 5
MAX_WINDOW_MINUTES = 1440


def validate_threshold(threshold_pct: float) -> float:
    v = float(threshold_pct)
    if not (MIN_THRESHOLD_PCT <= v <= MAX_THRESHOLD_PCT):
        raise ValueError(
            f"threshold must be between {MIN_THRESHOLD_PCT} and {MAX_THRESHOLD_PCT}, got {v}"
        )
    return v


def validate_window(window_minutes: int) -> int:
    v = int(window_minutes)
    if v != window_minutes or not (MIN_WINDOW_MINUTES <= v <= MAX_WINDOW_MINUTES):
        raise ValueError(
            f"window must be a whole number of minutes between {MIN_WINDOW_MINUTES} "
            f"and {MAX_WINDOW_MINUTES}, got {window_minutes}"
        )
    return v


def _flag(v) -> bool:
    return str(v) in ("1", "true", "True")


def _opt_float(v) -> Optional[float]:
    return None if v in (None, "") else float(v)


# ---- persisted entities ----

@dataclass(slots=True)
class User:
    id: int
    telegram_id: int
    username: Optional[str] = None
    is_active: bool = True
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def chat_id(self) -> int:
        # alerts go to the user's private chat with the bot
        return self.telegram_id

    def to_hash(self) -> dict[str, str]:
        return {
            "id": str(self.id),
            "telegram_id": str(self.telegram_id),
            "username": self.username or "",
            "is_active": "1" if self.is_active else "0",
            "created_at": repr(self.created_at),
            "updated_at": repr(self.updated_at),
        }

    @classmethod
    def from_hash(cls, h: dict) -> "User":
        return cls(
            id=int(h["id"]),
            telegram_id=int(h["telegram_id"]),
            username=h.get("username") or None,
            is_active=_flag(h.get("is_active", "1")),
            created_at=float(h.get("created_at", 0.0)),
            updated_at=float(h.get("updated_at", 0.0)),
        )


@dataclass(slots=True)
class AlertDefinition:
    """
    A user's "tell me when <asset> drops <threshold>% within <window> minutes".
    threshold_pct is a magnitude (5.0 means a 5% drop), never a signed change.
    """
    id: int
    user_id: int
    asset_id: str
    threshold_pct: float
    window_minutes: int
    is_active: bool = True
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_hash(self) -> dict[str, str]:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "asset_id": self.asset_id,
            "threshold_pct": repr(float(self.threshold_pct)),
            "window_minutes": str(int(self.window_minutes)),
            "is_active": "1" if self.is_active else "0",
            "created_at": repr(self.created_at),
            "updated_at": repr(self.updated_at),
        }

    @classmethod
    def from_hash(cls, h: dict) -> "AlertDefinition":
        return cls(
            id=int(h["id"]),
            user_id=int(h["user_id"]),
            asset_id=h["asset_id"],
            threshold_pct=float(h["threshold_pct"]),
            window_minutes=int(h["window_minutes"]),
            is_active=_flag(h.get("is_active", "1")),
            created_at=float(h.get("created_at", 0.0)),
            updated_at=float(h.get("updated_at", 0.0)),
        )


@dataclass(slots=True, frozen=True)
class PriceSample:
    asset_id: str
    price: float
    ts: float  # epoch seconds


@dataclass(slots=True)
class TriggerLogEntry:
    alert_id: int
    triggered_at: float
    pct_change: float           # signed, e.g. -6.0 for a 6% drop
    ref_price: float            # baseline price from history
    new_price: float            # price that caused the trigger
    delivered: bool = False
    id: Optional[int] = None

    def to_hash(self) -> dict[str, str]:
        if self.id is None:
            raise ValueError("trigger log entry has no id yet")
        return {
            "id": str(self.id),
            "alert_id": str(self.alert_id),
            "triggered_at": repr(self.triggered_at),
            "pct_change": repr(float(self.pct_change)),
            "ref_price": repr(float(self.ref_price)),
            "new_price": repr(float(self.new_price)),
            "delivered": "1" if self.delivered else "0",
        }

    @classmethod
    def from_hash(cls, h: dict) -> "TriggerLogEntry":
        return cls(
            id=int(h["id"]),
            alert_id=int(h["alert_id"]),
            triggered_at=float(h["triggered_at"]),
            pct_change=float(h["pct_change"]),
            ref_price=float(h["ref_price"]),
            new_price=float(h["new_price"]),
            delivered=_flag(h.get("delivered", "0")),
        )


# ---- per-tick outcome ----

@dataclass(slots=True)
class TickReport:
    started_at: float
    finished_at: Optional[float] = None
    alerts: int = 0
    assets: int = 0
    priced: int = 0
    recorded: int = 0
    skipped: int = 0          # alerts whose asset had no price this tick
    suppressed: int = 0       # cooldown
    insufficient: int = 0     # no baseline in window
    fired: int = 0
    delivered: int = 0
    errors: int = 0
    aborted: bool = False
    fired_alert_ids: list[int] = field(default_factory=list)

    def as_log(self) -> dict:
        return {
            "alerts": self.alerts,
            "assets": self.assets,
            "priced": self.priced,
            "recorded": self.recorded,
            "skipped": self.skipped,
            "suppressed": self.suppressed,
            "insufficient": self.insufficient,
            "fired": self.fired,
            "delivered": self.delivered,
            "errors": self.errors,
            "aborted": self.aborted,
            "duration_s": round((self.finished_at or self.started_at) - self.started_at, 3),
        }
