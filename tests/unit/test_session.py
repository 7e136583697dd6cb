from pricewatch.bot.session import CommandRateLimiter, SessionStore

def test_session_lifecycle_and_expiry():
    store = SessionStore(ttl_s=60)
    s = store.begin(1, now=1000.0)
    assert s.step == "crypto"
    assert store.get(1, now=1030.0) is s
    assert store.get(1, now=1061.0) is None
    assert len(store) == 0

def test_clear_reports_whether_a_session_existed():
    store = SessionStore()
    store.begin(1)
    assert store.clear(1) is True
    assert store.clear(1) is False

def test_rate_limiter_fixed_window_per_user():
    rl = CommandRateLimiter(max_per_minute=3)
    assert all(rl.allow(1, now=100.0 + i) for i in range(3))
    assert rl.allow(1, now=105.0) is False
    assert rl.allow(2, now=105.0) is True      # other users unaffected
    assert rl.allow(1, now=160.0) is True      # window reset

def test_session_store_drops_abandoned_wizards_when_full():
    store = SessionStore(ttl_s=60, max_size=3)
    for user in (1, 2):
        store.begin(user, now=1000.0)
    store.begin(3, now=1050.0)
    assert len(store) == 3

    store.begin(4, now=1100.0)   # 1 and 2 are past their ttl
    assert len(store) == 2
    assert store.get(3, now=1100.0) is not None
    assert store.get(4, now=1100.0) is not None

def test_rate_limiter_forgets_closed_windows_when_full():
    rl = CommandRateLimiter(max_per_minute=1, window_s=60, max_users=2)
    assert rl.allow(1, now=100.0)
    assert rl.allow(2, now=130.0)
    assert rl.allow(3, now=170.0)   # user 1's window closed at 160
    assert len(rl) == 2
    assert rl.allow(2, now=171.0) is False   # open windows are kept
