import threading

from app.services.webhook_cache import WebhookIdempotencyCache


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_second_mark_is_rejected():
    cache = WebhookIdempotencyCache()
    assert cache.check_and_mark("evt_1") is True
    assert cache.check_and_mark("evt_1") is False
    assert "evt_1" in cache


def test_forget_allows_reprocessing():
    cache = WebhookIdempotencyCache()
    cache.check_and_mark("evt_1")
    cache.forget("evt_1")
    assert cache.check_and_mark("evt_1") is True


def test_expired_entry_is_accepted_again():
    clock = FakeClock()
    cache = WebhookIdempotencyCache(ttl_seconds=60, clock=clock)
    cache.check_and_mark("evt_1")
    clock.now = 61
    assert "evt_1" not in cache
    assert cache.check_and_mark("evt_1") is True


def test_sweep_runs_every_n_inserts_and_caps_size():
    clock = FakeClock()
    cache = WebhookIdempotencyCache(max_size=5, ttl_seconds=3600, sweep_every=10, clock=clock)
    for i in range(9):
        cache.check_and_mark(f"evt_{i}")
    # No sweep yet: eviction is lazy
    assert len(cache) == 9

    cache.check_and_mark("evt_9")
    assert len(cache) == 5
    # Oldest entries were evicted first
    assert "evt_0" not in cache
    assert "evt_9" in cache


def test_sweep_drops_expired_before_overflow():
    clock = FakeClock()
    cache = WebhookIdempotencyCache(max_size=100, ttl_seconds=10, sweep_every=1000, clock=clock)
    cache.check_and_mark("old")
    clock.now = 20
    cache.check_and_mark("new")
    assert cache.sweep() == 1
    assert len(cache) == 1


def test_concurrent_marks_accept_one():
    cache = WebhookIdempotencyCache()
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(cache.check_and_mark("evt_same"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
