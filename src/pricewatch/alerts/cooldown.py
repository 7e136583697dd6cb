from __future__ import annotations

from typing import Optional, Protocol

from pricewatch.utils.time import minutes_before, utc_now_s


class TriggerCounter(Protocol):
    async def count_since(self, alert_id: int, since: float) -> int: ...


class CooldownTracker:
    """
    "Has this alert fired within the last C minutes?"

    The trigger log is the source of truth (durable across restarts). Firings
    noted in this process are memoised as alert_id -> triggered_at so the hot
    path skips a store round trip while an alert is known to be cooling.
    The memo never answers "eligible": a miss always falls through to the log.
    """
    def __init__(self, log: TriggerCounter, max_size: int = 10_000):
        self.log = log
        self.max_size = max_size
        self._fired_at: dict[int, float] = {}  # alert_id -> last triggered_at

    def note_fired(self, alert_id: int, triggered_at: float) -> None:
        # opportunistic cleanup when large: drop ~25% oldest insertions
        if len(self._fired_at) > self.max_size:
            for k in list(self._fired_at)[: self.max_size // 4]:
                self._fired_at.pop(k, None)
        self._fired_at[alert_id] = triggered_at

    def forget(self, alert_id: int) -> None:
        self._fired_at.pop(alert_id, None)

    async def fired_recently(
        self,
        alert_id: int,
        cooldown_minutes: float,
        now: Optional[float] = None,
    ) -> bool:
        now = utc_now_s() if now is None else now
        since = minutes_before(now, cooldown_minutes)

        last = self._fired_at.get(alert_id)
        if last is not None:
            if since <= last <= now:
                return True
            if last < since:
                # expired; cleanup
                self._fired_at.pop(alert_id, None)

        return await self.log.count_since(alert_id, since) > 0
