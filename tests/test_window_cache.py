import threading

import pytest

from guide_reader.indexing import CacheConfig, GuideNotReadyError, NotFoundError, PositionTracker, WindowCache

from conftest import numbered_lines


@pytest.fixture
def make_cache(store):
    caches = []

    def _make(config=CacheConfig(), positions=None):
        cache = WindowCache(store, config, positions=positions)
        caches.append(cache)
        return cache

    yield _make
    for cache in caches:
        cache.close()


def expected(start, end):
    return [f"line {i:06d}" for i in range(start, end)]


def test_window_returns_requested_lines(make_cache, import_text):
    guide = import_text(numbered_lines(1000))
    cache = make_cache(CacheConfig(block_lines=32))

    with cache.get_window(guide.id, 500, 20) as window:
        assert window.start == 480
        assert window.end == 521
        assert window.lines == expected(480, 521)
        assert window.version == 1
        assert window.line_count == 1000


def test_window_is_clamped_to_bounds(make_cache, import_text):
    guide = import_text(numbered_lines(1000))
    cache = make_cache()

    with cache.get_window(guide.id, -50, 5) as head:
        assert (head.start, head.end) == (0, 6)
    with cache.get_window(guide.id, 10**6, 5) as tail:
        assert (tail.start, tail.end) == (994, 1000)
        assert tail.lines[-1] == "line 000999"
    with cache.get_window(guide.id, 7, 0) as single:
        assert single.lines == ["line 000007"]
    with cache.get_window(guide.id, 10, 5000) as everything:
        assert len(everything) == 1000


def test_negative_radius_rejected(make_cache, import_text):
    guide = import_text(numbered_lines(10))
    with pytest.raises(ValueError):
        make_cache().get_window(guide.id, 0, -1)


def test_window_requires_ready_guide(make_cache, store):
    with pytest.raises(NotFoundError):
        make_cache().get_window("missing", 0, 5)


def test_window_on_guide_without_version(make_cache, store, worker):
    from guide_reader.indexing import GuideMetadata

    upload = store.storage.save_upload("pending", b"x\n")
    worker.create_job(upload, GuideMetadata(title="Pending"), guide_id="pending")
    with pytest.raises(GuideNotReadyError):
        make_cache().get_window("pending", 0, 5)


def test_release_is_idempotent_and_unpins(make_cache, store, import_text):
    guide = import_text(numbered_lines(100))
    cache = make_cache()
    window = cache.get_window(guide.id, 50, 5)
    assert store.pin_count(guide.id, 1) == 1
    window.release()
    window.release()
    assert window.released
    assert store.pin_count(guide.id, 1) == 0
    assert cache.stats()["open_windows"] == 0


@pytest.mark.parametrize("line_count", [100, 10_000, 200_000])
def test_resident_lines_bounded_regardless_of_length(make_cache, import_text, line_count):
    guide = import_text(numbered_lines(line_count))
    config = CacheConfig(block_lines=64, max_lines=512, max_bytes=64 * 1024, prefetch_blocks=2)
    cache = make_cache(config)

    centers = list(range(0, line_count, max(1, line_count // 40))) + list(range(line_count // 2, line_count // 2 + 3000, 37))
    for center in centers:
        with cache.get_window(guide.id, center, 50) as window:
            start = max(0, min(center, line_count - 1) - 50)
            assert window.lines == expected(start, window.end)
        assert cache.resident_lines <= config.max_lines
        assert cache.resident_bytes <= config.max_bytes

    cache.drain()
    assert cache.resident_lines <= config.max_lines
    assert cache.resident_bytes <= config.max_bytes
    assert cache.stats()["pending_prefetches"] == 0


def test_prefetch_fills_margin(make_cache, import_text):
    guide = import_text(numbered_lines(2000))
    cache = make_cache(CacheConfig(block_lines=50, prefetch_blocks=2))

    cache.get_window(guide.id, 1000, 10).release()
    cache.drain()

    for line in (900, 950, 1000, 1050, 1100):
        assert cache.contains(guide.id, 1, line)
    assert not cache.contains(guide.id, 1, 800)


def test_superseded_prefetch_is_discarded(make_cache, store, import_text, monkeypatch):
    guide = import_text(numbered_lines(1000))
    cache = make_cache(CacheConfig(block_lines=10, prefetch_blocks=2, prefetch_workers=1))
    gate = threading.Event()
    original = store.get_line_range

    def gated(*args, **kwargs):
        if threading.current_thread().name.startswith("window-prefetch"):
            gate.wait(5)
        return original(*args, **kwargs)

    monkeypatch.setattr(store, "get_line_range", gated)

    cache.get_window(guide.id, 0, 3).release()
    cache.get_window(guide.id, 500, 3).release()
    gate.set()
    cache.drain()

    assert cache.contains(guide.id, 1, 500)
    assert not cache.contains(guide.id, 1, 15)
    assert not cache.contains(guide.id, 1, 25)
    assert cache.contains(guide.id, 1, 485)
    assert cache.contains(guide.id, 1, 525)


def test_open_windows_beyond_capacity_are_served_uncached(make_cache, import_text):
    guide = import_text(numbered_lines(2000))
    cache = make_cache(CacheConfig(block_lines=64, max_lines=128, prefetch_blocks=0))

    first = cache.get_window(guide.id, 64, 63)
    assert cache.resident_lines == 128

    second = cache.get_window(guide.id, 1000, 10)
    assert second.lines == expected(990, 1011)
    assert cache.resident_lines == 128
    assert not cache.contains(guide.id, 1, 1000)

    first.release()
    second.release()
    with cache.get_window(guide.id, 1000, 10):
        assert cache.contains(guide.id, 1, 1000)
    assert cache.resident_lines <= 128


def test_block_at_position_is_kept_while_guide_is_open(make_cache, store, import_text):
    guide = import_text(numbered_lines(40_000))
    positions = PositionTracker(store, settle_interval=0)
    cache = make_cache(CacheConfig(block_lines=64, max_lines=256, prefetch_blocks=0), positions=positions)

    positions.set_position(guide.id, 10)
    cache.get_window(guide.id, 10, 5).release()
    held = cache.get_window(guide.id, 5000, 5)
    for center in (10_000, 15_000, 20_000, 25_000, 30_000):
        cache.get_window(guide.id, center, 5).release()
    assert cache.contains(guide.id, 1, 10)
    assert cache.resident_lines <= 256

    held.release()
    for center in (31_000, 32_000, 33_000, 34_000):
        cache.get_window(guide.id, center, 5).release()
    assert not cache.contains(guide.id, 1, 10)
    positions.close()


def test_stored_position_is_protected_after_restart(make_cache, store, import_text):
    guide = import_text(numbered_lines(40_000))
    earlier = PositionTracker(store, settle_interval=0)
    earlier.set_position(guide.id, 20_010)
    earlier.close()

    # a fresh tracker that has never been asked for this guide's position
    positions = PositionTracker(store)
    assert positions.peek(guide.id).line_number == 20_010
    cache = make_cache(CacheConfig(block_lines=64, max_lines=256, prefetch_blocks=0), positions=positions)

    cache.get_window(guide.id, 20_010, 5).release()
    held = cache.get_window(guide.id, 100, 5)
    for center in (1_000, 5_000, 9_000, 13_000, 30_000):
        cache.get_window(guide.id, center, 5).release()
    assert cache.contains(guide.id, 1, 20_010)
    held.release()
    positions.close()


def test_peek_without_stored_position(store, import_text):
    guide = import_text(numbered_lines(10))
    positions = PositionTracker(store)
    assert positions.peek(guide.id) is None
    positions.set_position(guide.id, 4)
    assert positions.peek(guide.id).line_number == 4
    positions.close()


def test_window_keeps_old_version_until_release(make_cache, store, import_text):
    guide = import_text(numbered_lines(1000))
    cache = make_cache()

    window = cache.get_window(guide.id, 995, 4)
    import_text(numbered_lines(500, prefix="new"))

    assert window.version == 1
    assert window.lines == expected(991, 1000)
    with cache.get_window(guide.id, 995, 4, version=1) as again:
        assert again.lines == window.lines

    with cache.get_window(guide.id, 995, 4) as fresh:
        assert fresh.version == 2
        assert fresh.lines[-1] == "new 000499"

    cache.drain()
    window.release()
    assert [v.version for v in store.repo.list_versions(guide.id)] == [2]
    with pytest.raises(NotFoundError):
        cache.get_window(guide.id, 995, 4, version=1)


def test_invalidate_drops_guide_blocks(make_cache, import_text):
    guide = import_text(numbered_lines(500))
    cache = make_cache()
    cache.get_window(guide.id, 0, 10).release()
    cache.drain()
    assert cache.invalidate(guide.id) > 0
    assert cache.resident_lines == 0
