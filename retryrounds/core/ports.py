"""Port interfaces for the retryrounds system.

These abstract base classes define the boundaries between core
domain logic and external adapters. Implementations live in the
adapters/ package.

Port Interface Categories:

1. **Driven Ports** (core calls out to adapters)
   - TestEventSink: Receives per-test lifecycle events
   - ExecutionEnginePort: Runs a (possibly narrowed) set of tests
   - RetrySpecBuilderPort: Narrows an execution spec to failing tests
   - RetryabilityFilter: Decides which non-retried tests are exempt

2. **Driving Ports** (adapters/external systems call into core)
   - TestRunPort: Entry point for a complete retry run
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Hashable, Mapping
from datetime import datetime
from typing import Generic, TypeVar

from .models import CompletionStatus, RetryOutcome, TestDescriptor, TestIdentity

SpecT = TypeVar("SpecT")

RetryabilityFilter = Callable[[TestIdentity, BaseException | None], bool]
"""Returns True if a non-retried test is exempt from the retry guarantee."""


# ============================================================================
# DRIVEN PORTS (Core calls out to adapters)
# ============================================================================


class TestEventSink(ABC):
    """Port for consumers of per-test lifecycle events.

    The execution engine emits into a sink; the round collector is itself a
    sink that forwards to the downstream consumer.

    Implementations must handle:
    - Concurrent invocation from multiple engine workers
    - Events for different tests arriving in any interleaving
    - Failure events for ids they never saw start
    """

    __test__ = False

    @abstractmethod
    def started(self, descriptor: TestDescriptor, event_time: datetime) -> None:
        """A node of the test tree started running.

        Args:
            descriptor: The node that started. Its id is only valid for
                the current round.
            event_time: When the node started.
        """

    @abstractmethod
    def completed(
        self, test_id: Hashable, status: CompletionStatus, event_time: datetime
    ) -> None:
        """A previously started node finished.

        Args:
            test_id: Opaque id from the matching started event.
            status: Outcome of the node.
            event_time: When the node finished.
        """

    @abstractmethod
    def output(self, test_id: Hashable, stream: str, text: str) -> None:
        """A chunk of output was produced by a running node.

        Args:
            test_id: Opaque id of the producing node.
            stream: "stdout" or "stderr".
            text: The output chunk, verbatim.
        """

    @abstractmethod
    def failure(self, test_id: Hashable, error: BaseException | None) -> None:
        """A node reported a failure.

        May arrive more than once for the same id (e.g. a failing test whose
        teardown also fails), and may refer to an id that is no longer
        active.

        Args:
            test_id: Opaque id of the failing node.
            error: The failure cause, if the engine has one.
        """


class ExecutionEnginePort(ABC, Generic[SpecT]):
    """Port for the external test-execution engine.

    Implementations run every test the spec selects, possibly in parallel,
    and deliver lifecycle events for each of them to the given sink.
    """

    @abstractmethod
    def execute(self, spec: SpecT, sink: TestEventSink) -> None:
        """Run the tests selected by spec. Blocks until all workers finish.

        Args:
            spec: Engine-specific description of what to run.
            sink: Receiver of lifecycle events.

        Raises:
            EngineError: If the engine could not run the tests at all.
        """

    @abstractmethod
    def stop(self) -> None:
        """Best-effort cancellation of an in-progress execute call.

        Must be safe to call from another thread or a signal handler, and
        when nothing is running.
        """


class RetrySpecBuilderPort(ABC, Generic[SpecT]):
    """Port for narrowing an execution spec to a set of tests."""

    @abstractmethod
    def build_retry_spec(
        self,
        original_spec: SpecT,
        failing_tests: frozenset[TestIdentity],
        failure_details: Mapping[TestIdentity, BaseException | None],
    ) -> SpecT:
        """Build a spec equivalent to original_spec but scoped to failing_tests.

        Args:
            original_spec: The spec of the first round.
            failing_tests: Tests to re-run.
            failure_details: Last-seen failure cause per test, for engines
                that need framework-specific filtering information.

        Returns:
            A new spec; everything except test selection is unchanged.
        """


# ============================================================================
# DRIVING PORTS (External systems call into core)
# ============================================================================


class TestRunPort(ABC, Generic[SpecT]):
    """Port for running a test suite with retries."""

    __test__ = False

    @abstractmethod
    def execute(self, spec: SpecT, sink: TestEventSink) -> RetryOutcome:
        """Run the suite, retrying failed tests in bounded rounds.

        Args:
            spec: Execution spec of the full suite.
            sink: Downstream consumer of the collapsed event stream.

        Returns:
            Summary of the run.

        Raises:
            UnretriedTestsError: A failed test was not re-run by the engine.
            CollectorStateError: The round protocol was violated.
        """

    @abstractmethod
    def stop(self) -> None:
        """Cancel the run. No further rounds will be started."""


__all__ = [
    "ExecutionEnginePort",
    "RetryabilityFilter",
    "RetrySpecBuilderPort",
    "SpecT",
    "TestEventSink",
    "TestRunPort",
]
