"""Exceptions raised by the retry core and its adapters.

Ordinary test failures are not exceptions: they are reported through the
event stream and summarised in RetryOutcome. Everything here aborts the
whole run.
"""

from collections.abc import Iterable

from .models import TestIdentity


class RetryRoundsError(Exception):
    """Base class for all retryrounds errors."""


class CollectorStateError(RetryRoundsError):
    """A round collector was used outside its round protocol.

    Raised when reset() is called on a collector whose round is already
    terminal. This is an orchestration bug, not a user-facing condition.
    """


class UnretriedTestsError(RetryRoundsError):
    """One or more failed tests were never started in the following round.

    Signals that the test framework in use does not honor re-submission of
    a narrowed test set, or an upstream defect.

    Attributes:
        tests: Every offending test.
    """

    def __init__(self, tests: Iterable[TestIdentity]) -> None:
        self.tests = frozenset(tests)
        listing = "".join(f"\n   {test}" for test in sorted(self.tests))
        super().__init__(
            "retryrounds was unable to retry the following test methods, "
            f"which is unexpected.{listing}\n"
        )


class EngineError(RetryRoundsError):
    """The execution engine could not run the requested tests.

    Attributes:
        exit_code: Engine-specific status code, if any.
    """

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        self.exit_code = exit_code
        super().__init__(message)
