"""
mcruntime.locks
---------------

Mutual exclusion owned by the engine.

- InstanceLockSet: one advisory lock per instance id; contention fails fast
  with InstanceBusyError instead of queueing
- PreflightGate: process-wide flag so overlapping pre-flight calls do not
  duplicate work
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import *

from .exceptions import InstanceBusyError

logger = logging.getLogger(__name__)


class InstanceLockSet:
    """Set of instance ids currently running a mutating operation."""

    def __init__(self):
        self._guard = threading.Lock()
        self._held: Dict[str, str] = {}

    def acquire(self, instance_id: str, operation: str = "operation") -> None:
        """
        Raises
        ------
        InstanceBusyError
            If `instance_id` is already held.
        """
        with self._guard:
            current = self._held.get(instance_id)
            if current is not None:
                raise InstanceBusyError(f"Instance {instance_id!r} is busy ({current} in progress)",
                                        context={"instance": instance_id, "requested": operation},
                                        hint="Wait for the running operation to finish.")
            self._held[instance_id] = operation

    def release(self, instance_id: str) -> None:
        with self._guard:
            self._held.pop(instance_id, None)

    def is_held(self, instance_id: str) -> bool:
        with self._guard:
            return instance_id in self._held

    @contextmanager
    def hold(self, instance_id: str, operation: str = "operation") -> Iterator[None]:
        self.acquire(instance_id, operation)
        try:
            yield
        finally:
            self.release(instance_id)


class PreflightGate:
    """Non-blocking flag: ``enter()`` is True for the first caller only until ``leave()``."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active = False

    def enter(self) -> bool:
        with self._lock:
            if self._active:
                return False
            self._active = True
            return True

    def leave(self) -> None:
        with self._lock:
            self._active = False

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active
