from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

import structlog

from pricewatch.alerts.cooldown import CooldownTracker
from pricewatch.alerts.formatting import format_alert_message
from pricewatch.alerts.models import (
    AlertDefinition,
    PriceSample,
    TickReport,
    TriggerLogEntry,
    User,
)
from pricewatch.alerts.notifiers import Notifier
from pricewatch.utils.time import utc_now_s

log = structlog.get_logger("evaluator")


# ---- collaborator boundaries ----

class PriceFetcher(Protocol):
    async def get_current_prices(self, asset_ids: Iterable[str]) -> dict[str, float]: ...
    async def get_price(self, asset_id: str) -> Optional[float]: ...
    async def asset_label(self, asset_id: str) -> str: ...


class AlertSource(Protocol):
    async def get_all_active(self) -> list[AlertDefinition]: ...
    async def get(self, alert_id: int) -> Optional[AlertDefinition]: ...


class UserSource(Protocol):
    async def get(self, user_id: int) -> Optional[User]: ...


class PriceHistory(Protocol):
    async def record(self, asset_id: str, price: float, at: Optional[float] = None) -> int: ...
    async def oldest_sample_within_window(
        self, asset_id: str, window_minutes: int, now: Optional[float] = None
    ) -> Optional[PriceSample]: ...


class TriggerLog(Protocol):
    async def create(self, entry: TriggerLogEntry) -> TriggerLogEntry: ...
    async def mark_delivered(self, log_id: int) -> bool: ...


# ---- pure decision helpers ----

def percent_change(baseline: float, current: float) -> float:
    """Signed % change from baseline to current (-6.0 == 6% drop)."""
    return (current - baseline) * 100.0 / baseline


def should_trigger(pct_change: float, threshold_pct: float) -> bool:
    # drops only; a drop of exactly `threshold` fires
    return pct_change <= -threshold_pct


def group_by_asset(alerts: Iterable[AlertDefinition]) -> dict[str, list[AlertDefinition]]:
    groups: dict[str, list[AlertDefinition]] = defaultdict(list)
    for a in alerts:
        groups[a.asset_id].append(a)
    return dict(groups)


@dataclass(slots=True)
class EvaluatorConfig:
    cooldown_minutes: float = 30.0
    tz_name: str = "UTC"


class AlertEvaluator:
    """
    One tick of the price-drop engine:

      1) load active alerts (none -> no-op)
      2) group by asset
      3) fetch current prices once for the distinct assets
         (total failure aborts the tick; missing assets skip their alerts)
      4) record a sample for every priced asset
      5) per alert: cooldown -> baseline -> pct change -> threshold gate,
         then trigger log write BEFORE delivery, owner lookup, notify,
         mark delivered
      6) every alert is isolated: one failure never stops the others

    Asset groups run concurrently; alerts inside a group run in order, so
    writes for one alert are never concurrent within a tick.
    """

    def __init__(
        self,
        *,
        alerts: AlertSource,
        users: UserSource,
        history: PriceHistory,
        trigger_log: TriggerLog,
        cooldown: CooldownTracker,
        fetcher: PriceFetcher,
        notifier: Notifier,
        cfg: Optional[EvaluatorConfig] = None,
        clock: Callable[[], float] = utc_now_s,
    ):
        self.alerts = alerts
        self.users = users
        self.history = history
        self.trigger_log = trigger_log
        self.cooldown = cooldown
        self.fetcher = fetcher
        self.notifier = notifier
        self.cfg = cfg or EvaluatorConfig()
        self.clock = clock

    # --- tick ---

    async def run_tick(self, now: Optional[float] = None) -> TickReport:
        now = self.clock() if now is None else now
        report = TickReport(started_at=now)

        # store unavailability propagates: the scheduler logs it and the
        # next tick retries
        active = await self.alerts.get_all_active()
        report.alerts = len(active)
        if not active:
            log.debug("no_active_alerts")
            report.finished_at = self.clock()
            return report

        groups = group_by_asset(active)
        report.assets = len(groups)
        log.info("tick_started", alerts=report.alerts, assets=report.assets)

        try:
            prices = await self.fetcher.get_current_prices(set(groups))
        except Exception as e:
            log.error("price_fetch_failed", err=str(e), assets=report.assets)
            report.aborted = True
            report.finished_at = self.clock()
            return report

        priced: dict[str, float] = {}
        for asset_id, alerts in groups.items():
            price = prices.get(asset_id)
            if price is None:
                log.warning("price_missing", asset=asset_id, alerts=len(alerts))
                report.skipped += len(alerts)
                continue
            priced[asset_id] = price
        report.priced = len(priced)

        # history accumulates whether or not anything fires
        for asset_id, price in priced.items():
            try:
                await self.history.record(asset_id, price, at=now)
                report.recorded += 1
            except Exception as e:
                log.error("price_record_failed", asset=asset_id, err=str(e))
                report.errors += 1

        await asyncio.gather(*(
            self._eval_asset(asset_id, groups[asset_id], price, now, report)
            for asset_id, price in priced.items()
        ))

        report.finished_at = self.clock()
        log.info("tick_completed", **report.as_log())
        return report

    async def _eval_asset(
        self,
        asset_id: str,
        alerts: list[AlertDefinition],
        price: float,
        now: float,
        report: TickReport,
    ) -> None:
        for alert in alerts:
            try:
                await self._eval_alert(alert, price, now, report)
            except Exception as e:
                report.errors += 1
                log.error("alert_eval_failed", alert_id=alert.id, asset=asset_id, err=str(e), exc_info=True)

    # --- per alert ---

    async def _baseline(self, alert: AlertDefinition, now: float) -> Optional[PriceSample]:
        sample = await self.history.oldest_sample_within_window(alert.asset_id, alert.window_minutes, now=now)
        if sample is None or sample.price <= 0.0:
            return None
        return sample

    async def _eval_alert(self, alert: AlertDefinition, price: float, now: float, report: TickReport) -> None:
        if await self.cooldown.fired_recently(alert.id, self.cfg.cooldown_minutes, now=now):
            log.debug("alert_in_cooldown", alert_id=alert.id)
            report.suppressed += 1
            return

        baseline = await self._baseline(alert, now)
        if baseline is None:
            log.debug("insufficient_history", alert_id=alert.id, asset=alert.asset_id,
                      window_minutes=alert.window_minutes)
            report.insufficient += 1
            return

        pct = percent_change(baseline.price, price)
        if not should_trigger(pct, alert.threshold_pct):
            return

        log.info("alert_triggered", alert_id=alert.id, asset=alert.asset_id,
                 pct_change=round(pct, 4), threshold_pct=alert.threshold_pct,
                 ref_price=baseline.price, new_price=price)

        # the log row is what feeds the cooldown check: no row, no notification
        try:
            entry = await self.trigger_log.create(TriggerLogEntry(
                alert_id=alert.id,
                triggered_at=now,
                pct_change=pct,
                ref_price=baseline.price,
                new_price=price,
                delivered=False,
            ))
        except Exception as e:
            report.errors += 1
            log.error("trigger_log_write_failed", alert_id=alert.id, err=str(e))
            return
        self.cooldown.note_fired(alert.id, now)
        report.fired += 1
        report.fired_alert_ids.append(alert.id)

        user = await self.users.get(alert.user_id)
        if user is None:
            report.errors += 1
            log.error("alert_owner_missing", alert_id=alert.id, user_id=alert.user_id)
            return

        label = await self.fetcher.asset_label(alert.asset_id)
        text = format_alert_message(
            label, pct, baseline.price, price, alert.window_minutes, now, self.cfg.tz_name,
        )
        if not await self.notifier.send(user.chat_id, text):
            log.warning("alert_delivery_failed", alert_id=alert.id, user_id=user.id)
            return

        report.delivered += 1
        try:
            await self.trigger_log.mark_delivered(entry.id)
        except Exception as e:
            # cooldown already holds from the log row itself
            log.warning("mark_delivered_failed", alert_id=alert.id, log_id=entry.id, err=str(e))

    # --- manual check ---

    async def check_alert(self, alert_id: int, now: Optional[float] = None) -> bool:
        """
        Would this alert fire right now? Read-only: fetches a live price but
        records nothing and sends nothing.
        """
        now = self.clock() if now is None else now
        alert = await self.alerts.get(alert_id)
        if alert is None or not alert.is_active:
            log.warning("check_alert_not_active", alert_id=alert_id)
            return False

        price = await self.fetcher.get_price(alert.asset_id)
        if price is None:
            log.warning("price_missing", asset=alert.asset_id)
            return False

        if await self.cooldown.fired_recently(alert.id, self.cfg.cooldown_minutes, now=now):
            return False
        baseline = await self._baseline(alert, now)
        if baseline is None:
            return False
        return should_trigger(percent_change(baseline.price, price), alert.threshold_pct)
