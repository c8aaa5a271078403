"""
Versioned immutable snapshots for rule sets.

Policy, constraint and route rule sets are shared between kopf handlers
(writers) and request-path evaluators (readers). Writers publish a whole new
value; readers take one snapshot per evaluation and never observe a mix of
old and new rules.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot[T]:
    """One published version of a value."""

    version: int
    value: T


class SnapshotConflict(Exception):
    """Raised when a compare-and-set write lost against a concurrent writer."""


class SnapshotStore[T]:
    """
    Copy-on-write holder for an immutable value.

    Reads are lock-free (a single attribute load); writes are serialized so
    each update derives from the latest published version.
    """

    def __init__(self, initial: T, name: str = "snapshot"):
        self.name = name
        self._lock = threading.Lock()
        self._current: Snapshot[T] = Snapshot(version=0, value=initial)

    def current(self) -> Snapshot[T]:
        return self._current

    def update(self, fn: Callable[[T], T]) -> Snapshot[T]:
        """
        Publish fn(current value) as a new version.

        Exceptions raised by fn propagate and leave the current snapshot
        untouched.
        """
        with self._lock:
            new_value = fn(self._current.value)
            self._current = Snapshot(self._current.version + 1, new_value)
            logger.debug(f"Published {self.name} snapshot v{self._current.version}")
            return self._current

    def compare_and_set(self, expected_version: int, value: T) -> Snapshot[T]:
        """
        Publish value only if nobody published since expected_version.

        Raises:
            SnapshotConflict: If the current version differs
        """
        with self._lock:
            if self._current.version != expected_version:
                raise SnapshotConflict(
                    f"{self.name} is at v{self._current.version}, "
                    f"expected v{expected_version}"
                )
            self._current = Snapshot(expected_version + 1, value)
            return self._current
