"""Per-round collection of test lifecycle events.

The RoundCollector sits between the execution engine and the downstream
consumer. It forwards events so that several physical rounds look like one
logical run, and it records which tests failed so the orchestrator can
decide whether to retry them.
"""

import logging
import threading
from collections.abc import Callable, Hashable, Iterator
from dataclasses import replace
from datetime import datetime
from types import MappingProxyType
from typing import Generic, TypeVar

from .exceptions import CollectorStateError
from .models import (
    CompletionStatus,
    NodeRole,
    RoundResult,
    TestDescriptor,
    TestIdentity,
)
from .ports import TestEventSink

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_EMPTY_SET: frozenset[TestIdentity] = frozenset()
_EMPTY_MAP = MappingProxyType({})


class LockedDict(Generic[K, V]):
    """Dictionary guarded by its own lock.

    Every operation is atomic; iteration happens over a copy.
    """

    def __init__(self) -> None:
        self._data: dict[K, V] = {}
        self._lock = threading.Lock()

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._data[key] = value

    def get(self, key: K) -> V | None:
        with self._lock:
            return self._data.get(key)

    def pop(self, key: K) -> V | None:
        with self._lock:
            return self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def copy(self) -> dict[K, V]:
        with self._lock:
            return dict(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data


class LockedSet(Generic[K]):
    """Set guarded by its own lock."""

    def __init__(self) -> None:
        self._data: set[K] = set()
        self._lock = threading.Lock()

    def add(self, item: K) -> None:
        with self._lock:
            self._data.add(item)

    def discard(self, item: K) -> None:
        with self._lock:
            self._data.discard(item)

    def replace(self, items: frozenset[K]) -> None:
        with self._lock:
            self._data = set(items)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def copy(self) -> frozenset[K]:
        with self._lock:
            return frozenset(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, item: object) -> bool:
        with self._lock:
            return item in self._data

    def __iter__(self) -> Iterator[K]:
        return iter(self.copy())


class RoundCollector(TestEventSink):
    """Collects one round of lifecycle events and forwards them downstream.

    Created once per run and reset between rounds. Event callbacks may be
    invoked concurrently by several engine workers; reset() must only be
    called once the engine's execute call for the round has returned.

    The first node to start is the root of the whole run. Its start is
    forwarded once; root nodes started by later rounds are swallowed and
    their children re-parented onto the first root. A root completion is
    forwarded, under the first root's id, only in the terminal round, so
    downstream sees exactly one run.
    """

    def __init__(
        self,
        delegate: TestEventSink,
        max_failures: int = 0,
        dict_factory: Callable[[], LockedDict] = LockedDict,
        set_factory: Callable[[], LockedSet] = LockedSet,
    ):
        """Initialize a collector for the first round.

        Args:
            delegate: Downstream consumer of forwarded events.
            max_failures: Treat a round as final once this many distinct
                tests have failed in it. 0 means unbounded.
            dict_factory: Builds the thread-safe mappings used for state.
            set_factory: Builds the thread-safe sets used for state.
        """
        if max_failures < 0:
            raise ValueError(f"max_failures must be non-negative, got {max_failures}")

        self.delegate = delegate
        self.max_failures = max_failures
        self.round_index = 0

        self._active: LockedDict[Hashable, TestDescriptor] = dict_factory()
        self._failed: LockedSet[TestIdentity] = set_factory()
        self._carried_over_failures: LockedSet[TestIdentity] = set_factory()
        self._failure_details: LockedDict[TestIdentity, BaseException | None] = dict_factory()
        self._root_lock = threading.Lock()
        self._root_id: Hashable | None = None
        self._root_aliases: LockedSet[Hashable] = set_factory()
        self._is_last_retry_round = False

    @property
    def root_id(self) -> Hashable | None:
        return self._root_id

    @property
    def is_last_retry_round(self) -> bool:
        return self._is_last_retry_round

    def is_root(self, test_id: Hashable) -> bool:
        """Whether test_id is the run's root or a later round's root node."""
        return test_id == self._root_id or test_id in self._root_aliases

    def started(self, descriptor: TestDescriptor, event_time: datetime) -> None:
        self._carried_over_failures.discard(descriptor.identity)

        with self._root_lock:
            establishes_root = self._root_id is None
            if establishes_root:
                self._root_id = descriptor.id
            elif descriptor.role is NodeRole.ROOT and descriptor.id != self._root_id:
                # A later round's root stands in for the first one.
                self._root_aliases.add(descriptor.id)

        if establishes_root:
            self._active.put(descriptor.id, descriptor)
            self.delegate.started(descriptor, event_time)
        elif not self.is_root(descriptor.id):
            if descriptor.role is NodeRole.LEAF:
                self._active.put(descriptor.id, descriptor)
            if descriptor.parent_id is not None and self.is_root(descriptor.parent_id):
                descriptor = replace(descriptor, parent_id=self._root_id)
            self.delegate.started(descriptor, event_time)

    def completed(
        self, test_id: Hashable, status: CompletionStatus, event_time: datetime
    ) -> None:
        self._active.pop(test_id)

        if not self.is_root(test_id):
            self.delegate.completed(test_id, status, event_time)
        elif self.is_terminal_round():
            self.delegate.completed(self._root_id, status, event_time)

    def output(self, test_id: Hashable, stream: str, text: str) -> None:
        self.delegate.output(test_id, stream, text)

    def failure(self, test_id: Hashable, error: BaseException | None) -> None:
        descriptor = self._active.get(test_id)
        if descriptor is not None:
            identity = descriptor.identity
            self._failed.add(identity)
            self._failure_details.put(identity, error)
        else:
            logger.debug(f"Failure for inactive test id {test_id!r} cannot be retried")
        self.delegate.failure(test_id, error)

    def is_terminal_round(self) -> bool:
        """Is this round the last one, whatever it observes from now on?

        True if nothing failed, the retry budget is spent, or the round has
        reached max_failures distinct failing tests.
        """
        failed_count = len(self._failed)
        return (
            failed_count == 0
            or self._is_last_retry_round
            or (self.max_failures > 0 and failed_count >= self.max_failures)
        )

    def snapshot(self) -> RoundResult:
        """Return an immutable view of what this round observed."""
        failed = self._failed.copy() or _EMPTY_SET
        non_retried = self._carried_over_failures.copy() or _EMPTY_SET
        details = self._failure_details.copy()
        return RoundResult(
            failed_tests=failed,
            non_retried_tests=non_retried,
            failure_details=MappingProxyType(details) if details else _EMPTY_MAP,
            is_final_round=self.is_terminal_round(),
        )

    def reset(self, is_last_retry_round: bool) -> None:
        """Prepare the collector for the next round.

        This round's failures become the tests expected to start in the
        next round. Failure details are kept so tests that never restart
        can still be classified.

        Args:
            is_last_retry_round: Whether the next round spends the last retry.

        Raises:
            CollectorStateError: If the current round is already terminal.
        """
        if self.is_terminal_round():
            raise CollectorStateError("collector has completed its final round")

        self._carried_over_failures.replace(self._failed.copy())
        self._failed.clear()
        self._active.clear()
        self._root_aliases.clear()
        self._is_last_retry_round = is_last_retry_round
        self.round_index += 1

        logger.debug(
            f"Collector reset for round {self.round_index} "
            f"(expecting {len(self._carried_over_failures)} retried tests, "
            f"last_retry_round={is_last_retry_round})"
        )
