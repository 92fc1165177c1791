"""Stdout result reporter.

Implements TestEventSink by printing test outcomes to the terminal with
human-readable formatting. Outcomes of retried tests supersede earlier
rounds, so the closing summary reflects the logical run.
"""

import logging
import sys
import threading
from collections.abc import Hashable
from datetime import datetime
from typing import Any, TextIO

from retryrounds.core.models import (
    CompletionStatus,
    NodeRole,
    RetryOutcome,
    TestDescriptor,
    TestIdentity,
)
from retryrounds.core.ports import TestEventSink

logger = logging.getLogger(__name__)


class StdoutEventSink(TestEventSink):
    """Prints one line per finished test and a summary when the run ends."""

    def __init__(self, verbose: bool = False, stream: TextIO | None = None):
        """Initialize stdout reporter.

        Args:
            verbose: If True, also print captured output of each test.
            stream: Where to write. Defaults to sys.stdout at write time.
        """
        self.verbose = verbose
        self._stream = stream
        self._lock = threading.Lock()
        self._descriptors: dict[Hashable, TestDescriptor] = {}
        self._latest: dict[TestIdentity, CompletionStatus] = {}
        self._ever_failed: set[TestIdentity] = set()
        self._failure_events = 0
        self.run_started: datetime | None = None
        self.run_finished: datetime | None = None

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    @property
    def had_failures(self) -> bool:
        """Whether any failure event reached this sink, in any round."""
        with self._lock:
            return self._failure_events > 0

    def started(self, descriptor: TestDescriptor, event_time: datetime) -> None:
        with self._lock:
            self._descriptors[descriptor.id] = descriptor
            if descriptor.role is NodeRole.ROOT and self.run_started is None:
                self.run_started = event_time

    def completed(
        self, test_id: Hashable, status: CompletionStatus, event_time: datetime
    ) -> None:
        with self._lock:
            descriptor = self._descriptors.pop(test_id, None)
            if descriptor is None:
                logger.debug(f"Completion for unknown test id {test_id!r}")
                return
            if descriptor.role is NodeRole.ROOT:
                self.run_finished = event_time
            elif descriptor.role is NodeRole.LEAF:
                identity = descriptor.identity
                if status is CompletionStatus.FAILED:
                    self._ever_failed.add(identity)
                self._latest[identity] = status
                self._write(self._format_result(descriptor, status))

    def output(self, test_id: Hashable, stream: str, text: str) -> None:
        if not self.verbose:
            return
        with self._lock:
            descriptor = self._descriptors.get(test_id)
            label = descriptor.identity.node_id if descriptor is not None else "<unknown>"
            self._write(f"--- {stream} of {label} ---\n{text.rstrip()}")

    def failure(self, test_id: Hashable, error: BaseException | None) -> None:
        with self._lock:
            self._failure_events += 1
            descriptor = self._descriptors.get(test_id)
            if descriptor is None:
                message = f"ERROR (unattributed): {_describe(error)}"
                self._write(message)

    def summary(self) -> dict[str, Any]:
        """Counts over the latest outcome of every test."""
        with self._lock:
            latest = dict(self._latest)
            ever_failed = set(self._ever_failed)

        by_status = {status.value: 0 for status in CompletionStatus}
        for status in latest.values():
            by_status[status.value] += 1
        flaky = sorted(
            str(test)
            for test in ever_failed
            if latest.get(test) is CompletionStatus.PASSED
        )
        return {
            "total_tests": len(latest),
            "by_status": by_status,
            "flaky_tests": flaky,
        }

    def report_outcome(self, outcome: RetryOutcome) -> None:
        """Print the closing summary for a run."""
        report = self._format_summary(self.summary(), outcome)
        with self._lock:
            self._write(report)

    def _write(self, text: str) -> None:
        print(text, file=self.stream)

    @staticmethod
    def _format_result(descriptor: TestDescriptor, status: CompletionStatus) -> str:
        return f"{status.value.upper():<8} {descriptor.identity.node_id}"

    @staticmethod
    def _format_summary(stats: dict[str, Any], outcome: RetryOutcome) -> str:
        """Format the summary report."""
        by_status = stats["by_status"]
        lines = [
            "=" * 80,
            "TEST RUN SUMMARY",
            "=" * 80,
            f"Outcome: {outcome.state.value.upper()}",
            f"Rounds executed: {outcome.rounds_executed}",
            f"Tests: {stats['total_tests']} "
            f"(passed {by_status['passed']}, failed {by_status['failed']}, "
            f"skipped {by_status['skipped']})",
        ]

        if stats["flaky_tests"]:
            lines.append("")
            lines.append("Passed after retry:")
            for name in stats["flaky_tests"]:
                lines.append(f"  {name}")

        if outcome.failed_tests:
            lines.append("")
            lines.append("Failed after all retries:")
            for test in sorted(outcome.failed_tests):
                lines.append(f"  {test}")

        if outcome.ignore_failures:
            lines.append("")
            lines.append("Failures from earlier rounds are ignored.")

        lines.append("=" * 80)
        return "\n".join(lines)


def _describe(error: BaseException | None) -> str:
    if error is None:
        return "no details"
    first_line = str(error).strip().splitlines()[0] if str(error).strip() else ""
    return f"{type(error).__name__}: {first_line}" if first_line else type(error).__name__
