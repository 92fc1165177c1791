"""Retryability filters for tests that failed but were not re-run.

A filter answers one question: is this non-retried test exempt from the
guarantee that every failed test is retried? Some frameworks report a
failure against the tests of a class when a shared setup step throws, and
then never start those tests again on retry because the setup is reported
as the failing node instead. Those are artifacts, not broken retries.
"""

import traceback
from collections.abc import Iterable, Iterator

from .models import TestIdentity

DEFAULT_SETUP_HOOK_NAMES: tuple[str, ...] = (
    "setup_class",
    "setUpClass",
    "setup_module",
    "setUpModule",
    "setupSpec",
)


def never_exempt(test: TestIdentity, error: BaseException | None) -> bool:
    """Default filter: every non-retried test is an anomaly."""
    return False


class SetupFailureFilter:
    """Exempts tests whose recorded failure came from a shared setup hook.

    The error's traceback, and the tracebacks of its cause and context
    chain, are searched for a frame executing one of the hook functions.
    """

    def __init__(self, hook_names: Iterable[str] = DEFAULT_SETUP_HOOK_NAMES):
        self.hook_names = frozenset(hook_names)
        if not self.hook_names:
            raise ValueError("hook_names must not be empty")

    def __call__(self, test: TestIdentity, error: BaseException | None) -> bool:
        if error is None:
            return False
        return any(name in self.hook_names for name in self._frame_names(error))

    @staticmethod
    def _frame_names(error: BaseException) -> Iterator[str]:
        seen: set[int] = set()
        current: BaseException | None = error
        while current is not None and id(current) not in seen:
            seen.add(id(current))
            if current.__traceback__ is not None:
                for frame in traceback.extract_tb(current.__traceback__):
                    yield frame.name
            current = current.__cause__ or current.__context__

    def __repr__(self) -> str:
        return f"SetupFailureFilter(hook_names={sorted(self.hook_names)!r})"
