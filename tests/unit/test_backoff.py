from pricewatch.utils.backoff import Backoff, backoff_iter, jitter, next_backoff

def test_next_backoff_caps():
    assert next_backoff(1, 4) == 2
    assert next_backoff(2, 4) == 4
    assert next_backoff(4, 4) == 4

def test_backoff_iter_progression():
    it = backoff_iter(0.25, 2.0)
    vals = [next(it) for _ in range(5)]
    assert vals == [0.25, 0.5, 1.0, 2.0, 2.0]

def test_jitter_stays_in_band():
    for _ in range(50):
        v = jitter(10.0, ratio=0.2)
        assert 8.0 <= v <= 12.0

def test_backoff_reset_starts_over():
    b = Backoff(initial=1.0, cap=8.0, ratio=0.0)
    assert [b.next_delay() for _ in range(5)] == [1.0, 2.0, 4.0, 8.0, 8.0]
    assert b.failures == 5
    b.reset()
    assert b.failures == 0
    assert b.next_delay() == 1.0
