"""Execution specs for the pytest engine and their narrowing for retries.

A spec carries the user's pytest command line untouched. Retry rounds
re-run the same command line with a node id selection that is applied
after collection, so options and their values are never reinterpreted.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace

from retryrounds.core.models import TestIdentity
from retryrounds.core.ports import RetrySpecBuilderPort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PytestRunSpec:
    """What a single pytest invocation should run.

    Attributes:
        args: The pytest command line, passed through verbatim.
        rootdir: Directory to run from, if not the current one.
        selected_node_ids: If set, only collected items with one of these
            node ids run; every other item is deselected.
    """

    args: tuple[str, ...] = ()
    rootdir: str | None = None
    selected_node_ids: frozenset[str] | None = None

    def __post_init__(self) -> None:
        """Normalize sequences so the spec stays hashable."""
        object.__setattr__(self, "args", tuple(self.args))
        if self.selected_node_ids is not None:
            object.__setattr__(self, "selected_node_ids", frozenset(self.selected_node_ids))

    def to_args(self) -> list[str]:
        args = list(self.args)
        if self.rootdir:
            args.extend(["--rootdir", self.rootdir])
        return args

    def with_selection(self, node_ids: frozenset[str]) -> "PytestRunSpec":
        return replace(self, selected_node_ids=frozenset(node_ids))

    @classmethod
    def from_args(cls, args: list[str], rootdir: str | None = None) -> "PytestRunSpec":
        return cls(args=tuple(args), rootdir=rootdir)


class PytestRetrySpecBuilder(RetrySpecBuilderPort[PytestRunSpec]):
    """Narrows a pytest run to the node ids of failing tests.

    The command line is kept as it is: the failing tests were collected
    from it in the first round, so they are collected again.
    """

    def build_retry_spec(
        self,
        original_spec: PytestRunSpec,
        failing_tests: frozenset[TestIdentity],
        failure_details: Mapping[TestIdentity, BaseException | None],
    ) -> PytestRunSpec:
        if not failing_tests:
            raise ValueError("failing_tests must not be empty")

        node_ids = frozenset(test.node_id for test in failing_tests)
        logger.debug(f"Narrowed pytest run to {len(node_ids)} node id(s)")
        return original_spec.with_selection(node_ids)
