from expense_pipeline.services.cache import InMemoryCacheService


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_in_memory_cache_set_get_exists():
    cache = InMemoryCacheService()

    assert cache.get("k") is None
    assert cache.exists("k") is False

    cache.set("k", "1")
    assert cache.get("k") == "1"
    assert cache.exists("k") is True


def test_in_memory_cache_expires_entries_after_ttl():
    clock = _Clock()
    cache = InMemoryCacheService(clock=clock)

    cache.set("k", "v", ttl_seconds=10)
    clock.now += 9.9
    assert cache.exists("k") is True

    clock.now += 0.2
    assert cache.exists("k") is False
    assert cache.get("k") is None


def test_set_if_absent_only_writes_once_while_live():
    clock = _Clock()
    cache = InMemoryCacheService(clock=clock)

    assert cache.set_if_absent("k", "1", ttl_seconds=5) is True
    assert cache.set_if_absent("k", "2", ttl_seconds=5) is False
    assert cache.get("k") == "1"

    clock.now += 6
    assert cache.set_if_absent("k", "3", ttl_seconds=5) is True
    assert cache.get("k") == "3"
