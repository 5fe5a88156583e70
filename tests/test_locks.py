"""
Tests for per-instance locks and the pre-flight gate.
"""

import threading

import pytest

from mcruntime.exceptions import InstanceBusyError
from mcruntime.locks import InstanceLockSet, PreflightGate


class TestInstanceLockSet:
    def test_contention_fails_fast(self):
        """Second acquire of the same id raises instead of waiting."""
        locks = InstanceLockSet()
        locks.acquire("a", "launch")
        with pytest.raises(InstanceBusyError) as excinfo:
            locks.acquire("a", "repair")
        assert "launch in progress" in excinfo.value.message
        locks.acquire("b")
        assert locks.is_held("a") and locks.is_held("b")

    def test_hold_releases_on_error(self):
        """The context manager releases even when the body raises."""
        locks = InstanceLockSet()
        with pytest.raises(RuntimeError):
            with locks.hold("a"):
                assert locks.is_held("a")
                raise RuntimeError("boom")
        assert not locks.is_held("a")

    def test_release_unknown_is_noop(self):
        """Releasing an id that is not held does nothing."""
        InstanceLockSet().release("nobody")

    def test_threads(self):
        """Exactly one of many concurrent acquirers wins."""
        locks = InstanceLockSet()
        results = []
        barrier = threading.Barrier(8)

        def _worker():
            barrier.wait()
            try:
                locks.acquire("same")
                results.append(True)
            except InstanceBusyError:
                results.append(False)

        threads = [threading.Thread(target=_worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1


class TestPreflightGate:
    def test_first_caller_only(self):
        """enter() is True once until leave()."""
        gate = PreflightGate()
        assert gate.enter()
        assert gate.active
        assert not gate.enter()
        gate.leave()
        assert not gate.active
        assert gate.enter()
