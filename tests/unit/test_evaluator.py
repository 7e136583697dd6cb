from types import SimpleNamespace

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from pricewatch.alerts.cooldown import CooldownTracker
from pricewatch.alerts.evaluator import (
    AlertEvaluator,
    EvaluatorConfig,
    group_by_asset,
    percent_change,
    should_trigger,
)
from pricewatch.prices.coingecko import CoinInfo
from storage.alerts_repo import RedisAlertRepository
from storage.price_history import RedisPriceHistory
from storage.trigger_log import RedisTriggerLog
from storage.users_repo import RedisUserRepository
from tests.helpers.fake_redis import FakeRedis
from tests.helpers.fakes import FakeFetcher, RecordingNotifier

NOW = 1_700_000_000.0
TG_ID = 1001


def _env(prices=None, notifier=None, cooldown_minutes=30.0):
    r = FakeRedis()
    env = SimpleNamespace(
        redis=r,
        users=RedisUserRepository(r),
        alerts=RedisAlertRepository(r),
        history=RedisPriceHistory(r),
        logs=RedisTriggerLog(r),
        fetcher=FakeFetcher(prices or {}, coins=[CoinInfo("bitcoin", "btc", "Bitcoin")]),
        notifier=notifier or RecordingNotifier(),
    )
    env.cooldown = CooldownTracker(env.logs)
    env.ev = AlertEvaluator(
        alerts=env.alerts,
        users=env.users,
        history=env.history,
        trigger_log=env.logs,
        cooldown=env.cooldown,
        fetcher=env.fetcher,
        notifier=env.notifier,
        cfg=EvaluatorConfig(cooldown_minutes=cooldown_minutes),
        clock=lambda: NOW,
    )
    return env


async def _alert(env, asset="bitcoin", threshold=5.0, window=60, tg_id=TG_ID):
    user = await env.users.get_or_create(tg_id, "trader")
    return await env.alerts.create(user.id, asset, threshold, window)


# ---- pure helpers ----

def test_percent_change_and_trigger_gate():
    assert percent_change(100.0, 94.0) == -6.0
    assert percent_change(100.0, 95.0) == -5.0
    assert should_trigger(-5.0, 5.0)          # exact drop fires
    assert should_trigger(-6.0, 5.0)
    assert not should_trigger(-4.0, 5.0)
    assert not should_trigger(12.0, 5.0)      # rises never fire


def test_group_by_asset():
    a = SimpleNamespace(asset_id="bitcoin")
    b = SimpleNamespace(asset_id="ethereum")
    c = SimpleNamespace(asset_id="bitcoin")
    groups = group_by_asset([a, b, c])
    assert groups == {"bitcoin": [a, c], "ethereum": [b]}


# ---- scenarios ----

@pytest.mark.asyncio
async def test_scenario_a_six_percent_drop_triggers_and_delivers():
    env = _env({"bitcoin": 94.0})
    alert = await _alert(env)
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)

    report = await env.ev.run_tick()

    assert (report.fired, report.delivered, report.errors) == (1, 1, 0)
    assert report.fired_alert_ids == [alert.id]
    recipient, text = env.notifier.sent[0]
    assert recipient == TG_ID
    assert "Bitcoin (BTC)" in text and "6.00%" in text and "1 hour" in text
    entries = await env.logs.recent(alert.id, 60, now=NOW)
    assert len(entries) == 1
    e = entries[0]
    assert (e.pct_change, e.ref_price, e.new_price, e.delivered) == (-6.0, 100.0, 94.0, True)


@pytest.mark.asyncio
async def test_scenario_b_four_percent_drop_does_not_trigger():
    env = _env({"bitcoin": 96.0})
    await _alert(env)
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)

    report = await env.ev.run_tick()

    assert report.fired == 0
    assert env.notifier.sent == []
    assert report.recorded == 1   # history accumulates regardless


@pytest.mark.asyncio
@pytest.mark.parametrize("price,fires", [(95.0, True), (110.0, False), (100.0, False)])
async def test_exact_threshold_fires_and_rises_never_do(price, fires):
    env = _env({"bitcoin": price})
    await _alert(env)
    await env.history.record("bitcoin", 100.0, at=NOW - 1800)

    report = await env.ev.run_tick()
    assert (report.fired == 1) is fires


@pytest.mark.asyncio
async def test_scenario_c_cooldown_suppresses_then_expires():
    env = _env({"bitcoin": 94.0})
    alert = await _alert(env)
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)
    assert (await env.ev.run_tick(now=NOW)).fired == 1

    env.fetcher.prices["bitcoin"] = 80.0
    r10 = await env.ev.run_tick(now=NOW + 10 * 60)
    assert (r10.fired, r10.suppressed) == (0, 1)

    env.fetcher.prices["bitcoin"] = 70.0
    r31 = await env.ev.run_tick(now=NOW + 31 * 60)
    assert (r31.fired, r31.suppressed) == (1, 0)
    assert len(env.notifier.sent) == 2
    assert await env.logs.count_since(alert.id, 0.0) == 2


@pytest.mark.asyncio
async def test_cooldown_survives_restart():
    env = _env({"bitcoin": 94.0})
    await _alert(env)
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)
    await env.ev.run_tick(now=NOW)

    # new tracker, same durable log
    env.ev.cooldown = CooldownTracker(env.logs)
    env.fetcher.prices["bitcoin"] = 50.0
    report = await env.ev.run_tick(now=NOW + 5 * 60)
    assert report.suppressed == 1 and report.fired == 0


@pytest.mark.asyncio
async def test_scenario_d_no_prior_history_never_triggers():
    env = _env({"bitcoin": 1.0})
    await _alert(env)

    report = await env.ev.run_tick()

    assert report.fired == 0
    assert env.notifier.sent == []
    # the sample taken this tick becomes the baseline for later ticks
    assert env.redis.samples("ts:bitcoin:price") == [(int(NOW * 1000), 1.0)]


@pytest.mark.asyncio
async def test_insufficient_history_is_a_silent_skip():
    env = _env({"bitcoin": 50.0})
    await _alert(env)
    env.redis.fail_on.add("TS.ADD")   # nothing lands in history

    report = await env.ev.run_tick()

    assert report.insufficient == 1
    assert report.fired == 0
    assert report.recorded == 0 and report.errors == 1


@pytest.mark.asyncio
async def test_scenario_e_only_the_lower_threshold_fires():
    env = _env({"bitcoin": 95.0})
    low = await _alert(env, threshold=3.0)
    await _alert(env, threshold=8.0)
    await env.history.record("bitcoin", 100.0, at=NOW - 1800)

    report = await env.ev.run_tick()

    assert report.fired_alert_ids == [low.id]
    assert len(env.notifier.sent) == 1


# ---- fetch & record ----

@pytest.mark.asyncio
async def test_no_active_alerts_is_a_no_op():
    env = _env({"bitcoin": 1.0})
    report = await env.ev.run_tick()
    assert report.alerts == 0
    assert env.fetcher.calls == []


@pytest.mark.asyncio
async def test_each_asset_fetched_and_recorded_once_per_tick():
    env = _env({"bitcoin": 100.0, "ethereum": 10.0})
    for t in (3.0, 5.0, 10.0):
        await _alert(env, threshold=t)
    await _alert(env, asset="ethereum")

    report = await env.ev.run_tick()

    assert env.fetcher.calls == [["bitcoin", "ethereum"]]
    assert env.redis.calls.count("TS.ADD") == 2
    assert (report.alerts, report.assets, report.recorded) == (4, 2, 2)


@pytest.mark.asyncio
async def test_missing_asset_price_skips_only_its_alerts():
    env = _env({"bitcoin": 94.0})
    await _alert(env)
    await _alert(env, asset="ghostcoin")
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)

    report = await env.ev.run_tick()

    assert report.skipped == 1
    assert report.fired == 1
    assert "ts:ghostcoin:price" not in env.redis.series


@pytest.mark.asyncio
async def test_total_fetch_failure_aborts_tick():
    env = _env({"bitcoin": 50.0})
    await _alert(env)
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)
    env.fetcher.fail = True

    report = await env.ev.run_tick()

    assert report.aborted is True
    assert report.fired == 0
    assert len(env.redis.samples("ts:bitcoin:price")) == 1   # nothing new recorded
    assert env.notifier.sent == []


@pytest.mark.asyncio
async def test_store_unavailable_on_load_propagates():
    env = _env({"bitcoin": 50.0})
    await _alert(env)
    env.redis.fail_on.add("smembers")
    with pytest.raises(RedisConnectionError):
        await env.ev.run_tick()


# ---- trigger path failures ----

@pytest.mark.asyncio
async def test_trigger_log_write_failure_means_no_notification():
    env = _env({"bitcoin": 90.0})
    await _alert(env)
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)
    env.redis.fail_on.add("incr")

    report = await env.ev.run_tick()

    assert report.fired == 0 and report.errors == 1
    assert env.notifier.sent == []


@pytest.mark.asyncio
async def test_missing_owner_is_logged_but_log_entry_kept():
    env = _env({"bitcoin": 90.0})
    orphan = await env.alerts.create(999, "bitcoin", 5.0, 60)
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)

    report = await env.ev.run_tick()

    assert (report.fired, report.delivered, report.errors) == (1, 0, 1)
    assert env.notifier.sent == []
    [entry] = await env.logs.recent(orphan.id, 60, now=NOW)
    assert entry.delivered is False


@pytest.mark.asyncio
async def test_delivery_failure_leaves_entry_undelivered_and_cooldown_holds():
    env = _env({"bitcoin": 90.0}, notifier=RecordingNotifier(ok=False))
    alert = await _alert(env)
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)

    report = await env.ev.run_tick(now=NOW)
    assert (report.fired, report.delivered) == (1, 0)
    [entry] = await env.logs.recent(alert.id, 60, now=NOW)
    assert entry.delivered is False

    again = await env.ev.run_tick(now=NOW + 5 * 60)
    assert again.suppressed == 1 and again.fired == 0


@pytest.mark.asyncio
async def test_mark_delivered_failure_is_not_fatal(monkeypatch):
    env = _env({"bitcoin": 90.0})
    await _alert(env)
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)

    async def boom(log_id):
        raise RedisConnectionError("gone")

    monkeypatch.setattr(env.logs, "mark_delivered", boom)
    report = await env.ev.run_tick()

    assert (report.fired, report.delivered, report.errors) == (1, 1, 0)


@pytest.mark.asyncio
async def test_one_failing_alert_does_not_stop_the_others(monkeypatch):
    env = _env({"bitcoin": 90.0})
    bad = await _alert(env)
    good = await _alert(env)
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)

    real = env.cooldown.fired_recently

    async def flaky(alert_id, *args, **kwargs):
        if alert_id == bad.id:
            raise RuntimeError("corrupt row")
        return await real(alert_id, *args, **kwargs)

    monkeypatch.setattr(env.cooldown, "fired_recently", flaky)
    report = await env.ev.run_tick()

    assert report.errors == 1
    assert report.fired_alert_ids == [good.id]


# ---- manual check ----

@pytest.mark.asyncio
async def test_check_alert_is_read_only():
    env = _env({"bitcoin": 90.0})
    alert = await _alert(env)
    await env.history.record("bitcoin", 100.0, at=NOW - 3600)

    assert await env.ev.check_alert(alert.id) is True
    assert len(env.redis.samples("ts:bitcoin:price")) == 1
    assert env.notifier.sent == []
    assert await env.logs.count_since(alert.id, 0.0) == 0

    await env.alerts.update(alert.id, is_active=False)
    assert await env.ev.check_alert(alert.id) is False
    assert await env.ev.check_alert(12345) is False
