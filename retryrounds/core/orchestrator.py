"""Round-driving orchestration of test retries.

This module implements the retry loop: run the engine, read the round's
result, then decide whether to stop, fail, or re-submit exactly the
failing tests for another round.
"""

import logging
import threading
from collections.abc import Callable, Mapping

from .collector import RoundCollector
from .exceptions import UnretriedTestsError
from .filters import never_exempt
from .models import RetryOutcome, RoundResult, RunState, TestIdentity
from .ports import (
    ExecutionEnginePort,
    RetryabilityFilter,
    RetrySpecBuilderPort,
    SpecT,
    TestEventSink,
    TestRunPort,
)

logger = logging.getLogger(__name__)


class RetryOrchestrator(TestRunPort[SpecT]):
    """Runs a test suite, retrying failed tests in bounded rounds.

    Round 0 runs the full spec. Each later round runs only the tests that
    failed in the round before it, until no test fails, max_retries extra
    rounds have been spent, or a round reaches max_failures failing tests.

    The orchestrator is single-threaded: a round starts only after the
    engine's execute call for the previous round has returned. stop() may
    be called from any thread.
    """

    def __init__(
        self,
        engine: ExecutionEnginePort[SpecT],
        spec_builder: RetrySpecBuilderPort[SpecT],
        max_retries: int = 0,
        max_failures: int = 0,
        fail_on_passed_after_retry: bool = False,
        retryability_filter: RetryabilityFilter = never_exempt,
        collector_factory: Callable[[TestEventSink, int], RoundCollector] = RoundCollector,
    ):
        """Initialize the orchestrator.

        Args:
            engine: Runs the tests of one round.
            spec_builder: Narrows the original spec to failing tests.
            max_retries: Extra rounds allowed after the first. 0 disables
                retrying and passes events straight through.
            max_failures: A round with at least this many distinct failing
                tests is final. 0 means unbounded.
            fail_on_passed_after_retry: If False, a run whose tests all pass
                on retry is marked to ignore the failures seen earlier.
            retryability_filter: Exempts non-retried tests from being fatal.
            collector_factory: Builds the per-run collector from the
                downstream sink and max_failures.
        """
        if max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {max_retries}")
        if max_failures < 0:
            raise ValueError(f"max_failures must be non-negative, got {max_failures}")

        self.engine = engine
        self.spec_builder = spec_builder
        self.max_retries = max_retries
        self.max_failures = max_failures
        self.fail_on_passed_after_retry = fail_on_passed_after_retry
        self.retryability_filter = retryability_filter
        self.collector_factory = collector_factory

        self.state = RunState.PENDING
        self.round_index = 0
        self._cancelled = threading.Event()

    def execute(self, spec: SpecT, sink: TestEventSink) -> RetryOutcome:
        """Run the suite with retries.

        Raises:
            UnretriedTestsError: A failed test was not started again in the
                next round and the filter did not exempt it.
            CollectorStateError: The round protocol was violated.
        """
        if self.state is not RunState.PENDING:
            raise RuntimeError(f"Cannot execute a run in {self.state} state")

        self.state = RunState.RUNNING
        try:
            if self.max_retries <= 0:
                return self._execute_once(spec, sink)
            return self._execute_rounds(spec, sink)
        except BaseException:
            if self.state is RunState.RUNNING:
                self.state = RunState.FATAL
            raise

    def stop(self) -> None:
        """Cancel the run and ask the engine to stop the current round."""
        logger.info("Stop requested, cancelling test run")
        self._cancelled.set()
        self.engine.stop()

    def _execute_once(self, spec: SpecT, sink: TestEventSink) -> RetryOutcome:
        logger.info("Retries disabled, running tests once")
        self.engine.execute(spec, sink)
        if self._cancelled.is_set():
            return self._finish(RunState.CANCELLED, rounds_executed=1)
        return self._finish(RunState.SUCCEEDED, rounds_executed=1)

    def _execute_rounds(self, spec: SpecT, sink: TestEventSink) -> RetryOutcome:
        collector = self.collector_factory(sink, self.max_failures)
        round_spec = spec
        results: list[RoundResult] = []

        while True:
            if self._cancelled.is_set():
                return self._finish(
                    RunState.CANCELLED, self.round_index, round_results=tuple(results)
                )

            logger.info(
                f"Starting round {self.round_index} "
                f"({self.max_retries - self.round_index} retries remaining)"
            )
            self.engine.execute(round_spec, collector)
            rounds_executed = self.round_index + 1

            if self._cancelled.is_set():
                logger.info(f"Run cancelled during round {self.round_index}")
                return self._finish(
                    RunState.CANCELLED, rounds_executed, round_results=tuple(results)
                )

            result = collector.snapshot()
            results.append(result)

            non_retried = self._filter_non_retried(
                result.non_retried_tests, result.failure_details
            )
            if non_retried:
                self.state = RunState.FATAL
                logger.error(
                    f"Round {self.round_index} did not re-run {len(non_retried)} "
                    f"failed test(s): {', '.join(sorted(str(t) for t in non_retried))}"
                )
                raise UnretriedTestsError(non_retried)

            if not result.failed_tests:
                ignore_failures = self.round_index > 0 and not self.fail_on_passed_after_retry
                if ignore_failures:
                    logger.warning(
                        f"All tests passed after {self.round_index} retry round(s), "
                        "ignoring failures from earlier rounds"
                    )
                else:
                    logger.info(f"No failures in round {self.round_index}")
                return self._finish(
                    RunState.SUCCEEDED,
                    rounds_executed,
                    ignore_failures=ignore_failures,
                    round_results=tuple(results),
                )

            if result.is_final_round:
                logger.info(
                    f"Round {self.round_index} is final with "
                    f"{len(result.failed_tests)} failed test(s)"
                )
                return self._finish(
                    RunState.FAILED,
                    rounds_executed,
                    failed_tests=result.failed_tests,
                    round_results=tuple(results),
                )

            round_spec = self.spec_builder.build_retry_spec(
                spec, result.failed_tests, result.failure_details
            )
            self.round_index += 1
            logger.warning(
                f"Retrying {len(result.failed_tests)} failed test(s) "
                f"in round {self.round_index} of {self.max_retries}"
            )
            collector.reset(is_last_retry_round=self.round_index == self.max_retries)

    def _filter_non_retried(
        self,
        non_retried_tests: frozenset[TestIdentity],
        failure_details: Mapping[TestIdentity, BaseException | None],
    ) -> frozenset[TestIdentity]:
        anomalies = set()
        for test in non_retried_tests:
            if self.retryability_filter(test, failure_details.get(test)):
                logger.info(f"Test {test} was not retried, exempted by filter")
            else:
                anomalies.add(test)
        return frozenset(anomalies)

    def _finish(
        self,
        state: RunState,
        rounds_executed: int,
        failed_tests: frozenset[TestIdentity] = frozenset(),
        ignore_failures: bool = False,
        round_results: tuple[RoundResult, ...] = (),
    ) -> RetryOutcome:
        self.state = state
        return RetryOutcome(
            state=state,
            rounds_executed=rounds_executed,
            failed_tests=failed_tests,
            ignore_failures=ignore_failures,
            round_results=round_results,
        )
