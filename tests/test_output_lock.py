from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest

from relaybuild.core.errors import LockContention
from relaybuild.runtime.lock import OutputBaseLock, read_lock_holder

pytestmark = pytest.mark.skipif(os.name == "nt", reason="fcntl locks are POSIX only")


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, sec: float) -> None:
        self.sleeps.append(sec)
        self.now += max(sec, 0.001)


def test_acquire_writes_holder_and_release_clears_it(tmp_path: Path) -> None:
    lock_path = tmp_path / "ob" / "lock"
    lock = OutputBaseLock(lock_path)

    with lock.holding(description={"command": "build", "cwd": "/w"}):
        holder = read_lock_holder(lock_path)
        assert holder["pid"] == os.getpid()
        assert holder["command"] == "build"
        assert isinstance(holder["acquired_at_ms"], int)
        assert lock.held is True

    assert lock.held is False
    assert read_lock_holder(lock_path) == {}
    lock.release()


def test_second_handle_fails_immediately_without_blocking(tmp_path: Path) -> None:
    lock_path = tmp_path / "lock"
    first = OutputBaseLock(lock_path)
    first.acquire(description={"command": "build"})
    try:
        second = OutputBaseLock(lock_path, block=False)
        with pytest.raises(LockContention) as ei:
            second.acquire()
        assert ei.value.exit_code == 9
        assert ei.value.details["holder"]["command"] == "build"
        assert second.held is False
    finally:
        first.release()

    # 释放后可再次获取（不需要手工清理）
    with OutputBaseLock(lock_path, block=False):
        pass


def test_wait_is_bounded(tmp_path: Path) -> None:
    lock_path = tmp_path / "lock"
    first = OutputBaseLock(lock_path)
    first.acquire()
    clock = _FakeClock()
    waits: list[dict] = []
    try:
        second = OutputBaseLock(
            lock_path,
            wait_secs=1.0,
            poll_interval=0.25,
            on_wait=waits.append,
            clock=clock,
            sleep=clock.sleep,
        )
        with pytest.raises(LockContention) as ei:
            second.acquire()
    finally:
        first.release()

    assert len(waits) == 1
    assert waits[0]["pid"] == os.getpid()
    assert ei.value.details["waited_ms"] >= 1000
    assert len(clock.sleeps) == 4


def test_waiter_succeeds_once_holder_releases(tmp_path: Path) -> None:
    lock_path = tmp_path / "lock"
    first = OutputBaseLock(lock_path)
    first.acquire()
    started_waiting = threading.Event()
    second = OutputBaseLock(lock_path, wait_secs=10.0, poll_interval=0.01, on_wait=lambda _h: started_waiting.set())
    result: dict = {}

    def _wait() -> None:
        second.acquire(description={"command": "test"})
        result["holder"] = read_lock_holder(lock_path)
        second.release()

    t = threading.Thread(target=_wait)
    t.start()
    assert started_waiting.wait(5.0)
    first.release()
    t.join(5.0)

    assert result["holder"]["command"] == "test"


def test_interrupt_while_waiting_leaves_no_lock(tmp_path: Path) -> None:
    lock_path = tmp_path / "lock"
    first = OutputBaseLock(lock_path)
    first.acquire()

    def _interrupt(_sec: float) -> None:
        raise KeyboardInterrupt

    second = OutputBaseLock(lock_path, sleep=_interrupt)
    with pytest.raises(KeyboardInterrupt):
        second.acquire()
    assert second.held is False
    first.release()

    with OutputBaseLock(lock_path, block=False):
        pass


def test_read_lock_holder_tolerates_garbage(tmp_path: Path) -> None:
    p = tmp_path / "lock"
    p.write_text("{not json", encoding="utf-8")
    assert read_lock_holder(p) == {}
    p.write_text(json.dumps([1, 2]), encoding="utf-8")
    assert read_lock_holder(p) == {}
    assert read_lock_holder(tmp_path / "missing") == {}
