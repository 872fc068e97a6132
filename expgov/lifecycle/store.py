"""
In-process transition history.

TransitionLog is owned by a LifecycleManager and injected at construction,
so separate managers (and separate tests) never share history. Histories are
append-only; the only bulk write is `replace`, used when a manager reloads
its view from a persistence backplane.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from .states import StateTransition


class TransitionLog:
    """Per-experiment ordered lists of StateTransition, one lock per experiment."""

    def __init__(self) -> None:
        self._histories: dict[str, list[StateTransition]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, experiment: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(experiment)
            if lock is None:
                lock = self._locks[experiment] = threading.Lock()
            return lock

    @contextmanager
    def locked(self, experiment: str) -> Iterator[list[StateTransition]]:
        """
        Hold the experiment's lock and yield its mutable history list.

        Callers must not await while inside the block.
        """
        with self._lock_for(experiment):
            yield self._histories.setdefault(experiment, [])

    def history(self, experiment: str) -> tuple[StateTransition, ...]:
        with self.locked(experiment) as entries:
            return tuple(entries)

    def latest(self, experiment: str) -> StateTransition | None:
        with self.locked(experiment) as entries:
            return entries[-1] if entries else None

    def experiments(self) -> list[str]:
        with self._guard:
            return sorted(name for name, entries in self._histories.items() if entries)

    def replace(self, experiment: str, transitions: Iterable[StateTransition]) -> None:
        with self.locked(experiment) as entries:
            entries[:] = list(transitions)
