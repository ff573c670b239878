import threading
import time

import pytest

from nodegraphs.errors import ErrorKind, FetchFailed, FetchTimeout
from nodegraphs.metrics import ALL_NODES, QueryKey, SourceSet, TimeWindow
from nodegraphs.store import QueryStore

WINDOW = TimeWindow(0, 600)


def key(name="cr.node.sql.conns", sources=ALL_NODES, window=WINDOW):
    return QueryKey(name, sources, window)


class CountingFetcher:
    def __init__(self, result=None, delay=0.0, gate=None):
        self.calls = 0
        self.result = result if result is not None else {"1": [[0, 1.0], [10, 2.0]]}
        self.delay = delay
        self.gate = gate
        self._lock = threading.Lock()

    def __call__(self, k):
        with self._lock:
            self.calls += 1
        if self.gate is not None:
            assert self.gate.wait(timeout=5)
        if self.delay:
            time.sleep(self.delay)
        return self.result


@pytest.fixture()
def store():
    s = QueryStore()
    yield s
    s.shutdown()


def test_get_creates_invalid_entry(store):
    entry = store.get(key())
    assert entry.valid is False
    assert entry.fetch_in_flight is False
    assert entry.raw_series == {}
    assert len(store) == 1


def test_ensure_fresh_populates_and_is_noop_when_valid(store):
    fetch = CountingFetcher()
    assert store.ensure_fresh(key(), fetch) is not None
    entry = store.get(key())
    assert entry.valid
    assert entry.raw_series == {"1": [(0.0, 1.0), (10.0, 2.0)]}

    assert store.ensure_fresh(key(), fetch) is None
    assert fetch.calls == 1


def test_single_flight_under_concurrent_callers(store):
    gate = threading.Event()
    fetch = CountingFetcher(gate=gate)
    k = key()

    first = store.ensure_fresh(k, fetch, background=True)
    assert first is not None

    started = []
    barrier = threading.Barrier(16)

    def worker():
        barrier.wait()
        started.append(store.ensure_fresh(k, fetch))

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    # Readers see the in-flight flag without blocking.
    assert store.get(k).fetch_in_flight is True
    gate.set()
    assert first.result(timeout=5) is True

    assert started == [None] * 16
    assert fetch.calls == 1
    assert store.get(k).valid


def test_single_flight_with_racing_first_callers(store):
    fetch = CountingFetcher(delay=0.05)
    k = key()
    barrier = threading.Barrier(12)

    def worker():
        barrier.wait()
        store.ensure_fresh(k, fetch)

    threads = [threading.Thread(target=worker) for _ in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert fetch.calls == 1
    assert store.get(k).valid


def test_invalidate_keeps_previous_series(store):
    k = key()
    store.ensure_fresh(k, CountingFetcher(result={"1": [[0, 5.0]]}))
    store.invalidate(k)

    entry = store.get(k)
    assert entry.valid is False
    assert entry.raw_series == {"1": [(0.0, 5.0)]}

    store.ensure_fresh(k, CountingFetcher(result={"1": [[0, 7.0]]}))
    entry = store.get(k)
    assert entry.valid is True
    assert entry.raw_series == {"1": [(0.0, 7.0)]}


def test_failed_fetch_records_error_and_retries(store):
    k = key()
    store.ensure_fresh(k, CountingFetcher(result={"1": [[0, 1.0]]}))
    store.invalidate(k)

    def broken(_k):
        raise FetchFailed("service unavailable")

    store.ensure_fresh(k, broken)
    entry = store.get(k)
    assert entry.valid is False
    assert entry.fetch_in_flight is False
    assert entry.last_error.kind is ErrorKind.FETCH_FAILED
    assert entry.raw_series == {"1": [(0.0, 1.0)]}

    retry = CountingFetcher(result={"1": [[0, 2.0]]})
    store.ensure_fresh(k, retry)
    entry = store.get(k)
    assert retry.calls == 1
    assert entry.valid
    assert entry.last_error is None


def test_unexpected_exception_and_timeout_are_recorded(store):
    def timeout(_k):
        raise FetchTimeout("took too long")

    def boom(_k):
        raise RuntimeError("kaput")

    store.ensure_fresh(key("a"), timeout)
    store.ensure_fresh(key("b"), boom)
    assert store.get(key("a")).last_error.kind is ErrorKind.TIMEOUT
    err = store.get(key("b")).last_error
    assert err.kind is ErrorKind.FETCH_FAILED
    assert "kaput" in err.message


def test_failure_does_not_touch_other_keys(store):
    good = key("good")
    store.ensure_fresh(good, CountingFetcher())

    def broken(_k):
        raise FetchFailed("nope")

    store.ensure_fresh(key("bad"), broken)
    assert store.get(good).valid
    assert store.get(good).last_error is None
    assert store.stats()["fetch_failures"] == 1


def test_empty_source_set_skips_fetcher(store):
    fetch = CountingFetcher()
    k = key(sources=SourceSet([]))
    assert store.ensure_fresh(k, fetch) is None
    entry = store.get(k)
    assert fetch.calls == 0
    assert entry.valid
    assert entry.raw_series == {}
    assert entry.last_error is None


def test_invalidate_during_fetch_lands_stale(store):
    gate = threading.Event()
    k = key()
    fut = store.ensure_fresh(k, CountingFetcher(gate=gate, result={"1": [[0, 3.0]]}), background=True)
    store.invalidate(k)
    gate.set()
    fut.result(timeout=5)

    entry = store.get(k)
    assert entry.raw_series == {"1": [(0.0, 3.0)]}
    assert entry.valid is False


def test_malformed_response_is_a_fetch_failure(store):
    store.ensure_fresh(key(), lambda _k: [1, 2, 3])
    entry = store.get(key())
    assert entry.valid is False
    assert entry.last_error.kind is ErrorKind.FETCH_FAILED


def test_points_are_sorted_and_bad_points_dropped(store):
    raw = {"1": [[20, 2], [0, 0], ["x", 1], [10, float("nan")], [10, 1]]}
    store.ensure_fresh(key(), lambda _k: raw)
    assert store.get(key()).raw_series == {"1": [(0.0, 0.0), (10.0, 1.0), (20.0, 2.0)]}


def test_ensure_fresh_many_batches_by_scope(store):
    calls = []

    def batch(names, sources, window):
        calls.append((tuple(names), sources, window))
        return {n: {"1": [[0, 1.0]]} for n in names if n != "missing"}

    node1 = SourceSet(["1"])
    keys = [key("a"), key("b"), key("missing"), key("a", sources=node1)]
    store.ensure_fresh_many(keys, batch)

    assert sorted(c[0] for c in calls) == [("a",), ("a", "b", "missing")]
    assert store.get(key("a")).valid
    missing = store.get(key("missing"))
    assert missing.valid and missing.raw_series == {}

    store.ensure_fresh_many(keys, batch)
    assert len(calls) == 2


def test_ensure_fresh_many_failure_marks_every_claimed_key(store):
    def batch(names, sources, window):
        raise FetchFailed("down")

    store.ensure_fresh_many([key("a"), key("b")], batch)
    assert store.get(key("a")).last_error is not None
    assert store.get(key("b")).last_error is not None


def test_keys_share_entries_across_source_order(store):
    a = key(sources=SourceSet(["2", "1"]))
    b = key(sources=SourceSet(["1", "2"]))
    store.ensure_fresh(a, CountingFetcher())
    assert store.get(b).valid
    assert len(store) == 1


def test_subscribers_are_notified(store):
    seen = []
    unsubscribe = store.subscribe(lambda k, e: seen.append((k.name, e.valid)))
    store.ensure_fresh(key(), CountingFetcher())
    store.invalidate(key())
    unsubscribe()
    store.ensure_fresh(key(), CountingFetcher())
    assert seen == [("cr.node.sql.conns", True), ("cr.node.sql.conns", False)]


def test_idle_eviction():
    now = [1000.0]
    s = QueryStore(idle_ttl_sec=60, clock=lambda: now[0])
    s.ensure_fresh(key("old"), CountingFetcher())
    now[0] += 30
    s.get(key("recent"))
    now[0] += 40
    assert s.evict_idle() == 1
    assert s.peek(key("old")) is None
    assert s.peek(key("recent")) is not None


def test_no_eviction_by_default(store):
    store.get(key())
    assert store.evict_idle(now=time.time() + 10 ** 9) == 0


def test_invalidate_all_and_entries(store):
    store.ensure_fresh_many([key("a"), key("b")], lambda names, sources, window: {n: {"1": [[0, 1.0]]} for n in names})
    assert store.invalidate_all() == 2

    entries = {e.key.name: e for e in store.entries()}
    assert set(entries) == {"a", "b"}
    assert all(e.stale for e in entries.values())
    assert entries["a"].to_dict()["sources"] == ["1"]
    assert entries["a"].to_dict()["key"]["name"] == "a"
