import threading

import pytest

from playbook_engine.utils.cache import SnapshotCache

class FakeClock:
    def __init__(self):
        self.t = 0.0
    def __call__(self):
        return self.t

def test_get_loads_once_until_stale():
    calls = {"n": 0}
    def loader():
        calls["n"] += 1
        return ("snapshot", calls["n"])

    clock = FakeClock()
    c = SnapshotCache("demo", loader, ttl_seconds=10, clock=clock)
    assert c.is_stale()
    assert c.get() == ("snapshot", 1)
    clock.t = 9.9
    assert c.get() == ("snapshot", 1)
    assert not c.is_stale()
    clock.t = 10.0
    assert c.is_stale()
    assert c.get() == ("snapshot", 2)

def test_invalidate_forces_reload():
    calls = {"n": 0}
    def loader():
        calls["n"] += 1
        return calls["n"]
    c = SnapshotCache("demo", loader, ttl_seconds=600)
    assert c.get() == 1
    c.invalidate()
    assert c.is_stale()
    assert c.get() == 2
    assert c.load() == 3

def test_failed_load_keeps_previous_snapshot():
    state = {"fail": False}
    def loader():
        if state["fail"]:
            raise RuntimeError("boom")
        return "ok"
    clock = FakeClock()
    c = SnapshotCache("demo", loader, ttl_seconds=1, clock=clock)
    assert c.get() == "ok"
    state["fail"] = True
    with pytest.raises(RuntimeError):
        c.load()
    clock.t = 0.5
    assert c.get() == "ok"

def test_concurrent_readers_see_complete_snapshots():
    def loader():
        return tuple(range(100))
    c = SnapshotCache("demo", loader, ttl_seconds=0)
    seen = []
    def reader():
        for _ in range(50):
            seen.append(len(c.get()))
    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads: t.start()
    for t in threads: t.join()
    assert set(seen) == {100}
