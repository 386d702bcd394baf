import threading

from atendente.services.dedup_service import DedupCache, get_dedup_cache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestDedupCache:
    def test_first_delivery_is_processed(self):
        cache = DedupCache(ttl_seconds=15, clock=FakeClock())
        assert cache.should_process("m1") is True

    def test_repeat_within_window_is_rejected(self):
        clock = FakeClock()
        cache = DedupCache(ttl_seconds=15, clock=clock)

        assert cache.should_process("m1") is True
        clock.now += 1
        assert cache.should_process("m1") is False

    def test_repeat_after_window_is_new(self):
        clock = FakeClock()
        cache = DedupCache(ttl_seconds=15, clock=clock)

        cache.should_process("m1")
        clock.now += 15.1
        assert cache.should_process("m1") is True

    def test_empty_id_always_processed(self):
        cache = DedupCache(clock=FakeClock())
        assert cache.should_process(None) is True
        assert cache.should_process("") is True
        assert cache.should_process("") is True
        assert len(cache) == 0

    def test_expired_entries_are_purged(self):
        clock = FakeClock()
        cache = DedupCache(ttl_seconds=5, clock=clock)
        for i in range(10):
            cache.should_process(f"m{i}")
        clock.now += 6

        cache.should_process("fresh")

        assert len(cache) == 1

    def test_different_ids_do_not_collide(self):
        cache = DedupCache(clock=FakeClock())
        assert cache.should_process("m1") is True
        assert cache.should_process("m2") is True

    def test_concurrent_deliveries_yield_one_winner(self):
        cache = DedupCache(ttl_seconds=15)
        results = []
        barrier = threading.Barrier(8)

        def deliver():
            barrier.wait()
            results.append(cache.should_process("same-id"))

        threads = [threading.Thread(target=deliver) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1

    def test_clear(self):
        cache = DedupCache(clock=FakeClock())
        cache.should_process("m1")
        cache.clear()
        assert cache.should_process("m1") is True


class TestGetDedupCache:
    def test_returns_process_wide_instance(self):
        assert get_dedup_cache() is get_dedup_cache()
