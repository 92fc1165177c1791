"""Domain models for the retryrounds system.

All models in this module use only Python standard library types,
ensuring zero external dependencies in the core domain.
"""

from collections.abc import Hashable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

_EMPTY_TESTS: frozenset["TestIdentity"] = frozenset()
_EMPTY_DETAILS: Mapping["TestIdentity", BaseException | None] = MappingProxyType({})


@dataclass(frozen=True, order=True)
class TestIdentity:
    """A test method, independent of any per-run engine id.

    Engine ids are not stable across rounds, so this is the only key used
    to correlate a test between one round and the next.
    """

    __test__ = False  # not a pytest test class

    class_name: str
    method_name: str

    def __post_init__(self) -> None:
        """Validate identity invariants on creation."""
        if not self.class_name or not self.class_name.strip():
            raise ValueError("class_name must be a non-empty string")
        if not self.method_name or not self.method_name.strip():
            raise ValueError("method_name must be a non-empty string")

    def __str__(self) -> str:
        return f"{self.class_name}#{self.method_name}"

    @classmethod
    def from_node_id(cls, node_id: str) -> "TestIdentity":
        """Build an identity from a pytest node id.

        ``tests/test_x.py::TestFoo::test_bar[1]`` becomes
        ``("tests/test_x.py::TestFoo", "test_bar[1]")``. A node id without
        ``::`` is used for both parts.
        """
        if "::" not in node_id:
            return cls(node_id, node_id)
        class_name, method_name = node_id.rsplit("::", 1)
        return cls(class_name, method_name)

    @property
    def node_id(self) -> str:
        """The pytest node id this identity was derived from."""
        if self.class_name == self.method_name:
            return self.class_name
        return f"{self.class_name}::{self.method_name}"


class NodeRole(Enum):
    """Position of a node in the engine's test tree."""

    ROOT = "root"
    COMPOSITE = "composite"
    LEAF = "leaf"


class CompletionStatus(Enum):
    """Outcome carried by a completion event."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TestDescriptor:
    """A node of the test tree as reported by the execution engine.

    ``id`` is opaque and only meaningful within the round that produced it.
    """

    __test__ = False

    id: Hashable
    class_name: str
    name: str
    role: NodeRole = NodeRole.LEAF
    parent_id: Hashable | None = None

    @property
    def identity(self) -> TestIdentity:
        return TestIdentity(self.class_name, self.name)

    @property
    def is_composite(self) -> bool:
        return self.role is not NodeRole.LEAF


@dataclass(frozen=True)
class RoundResult:
    """Immutable snapshot of one execution round.

    Attributes:
        failed_tests: Tests that failed while known to be running this round.
        non_retried_tests: Tests that failed in the previous round but never
            started in this one.
        failure_details: Last-seen failure cause per test.
        is_final_round: True if no further retry should follow.
    """

    failed_tests: frozenset[TestIdentity] = _EMPTY_TESTS
    non_retried_tests: frozenset[TestIdentity] = _EMPTY_TESTS
    failure_details: Mapping[TestIdentity, BaseException | None] = field(
        default_factory=lambda: _EMPTY_DETAILS
    )
    is_final_round: bool = True

    def __post_init__(self) -> None:
        """Freeze collections and validate the disjointness invariant."""
        if not isinstance(self.failed_tests, frozenset):
            object.__setattr__(self, "failed_tests", frozenset(self.failed_tests))
        if not isinstance(self.non_retried_tests, frozenset):
            object.__setattr__(
                self, "non_retried_tests", frozenset(self.non_retried_tests)
            )
        if isinstance(self.failure_details, dict):
            object.__setattr__(
                self, "failure_details", MappingProxyType(self.failure_details)
            )

        overlap = self.failed_tests & self.non_retried_tests
        if overlap:
            names = ", ".join(sorted(str(t) for t in overlap))
            raise ValueError(
                f"failed_tests and non_retried_tests must be disjoint, both contain: {names}"
            )


class RunState(Enum):
    """Lifecycle states of a retry run.

    State transitions:
    - PENDING -> RUNNING (execute called)
    - RUNNING -> SUCCEEDED (a round finished with no failures)
    - RUNNING -> FAILED (failures remain after the final round)
    - RUNNING -> FATAL (a failed test was not retried, or the engine raised)
    - RUNNING -> CANCELLED (stop requested)
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    FATAL = "fatal"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RetryOutcome:
    """Summary of a complete retry run."""

    state: RunState
    rounds_executed: int
    failed_tests: frozenset[TestIdentity] = _EMPTY_TESTS
    ignore_failures: bool = False
    round_results: tuple[RoundResult, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        """Validate outcome invariants on creation."""
        if self.rounds_executed < 0:
            raise ValueError(
                f"rounds_executed must be non-negative, got {self.rounds_executed}"
            )
        if self.state is RunState.FAILED and not self.failed_tests:
            raise ValueError("a FAILED outcome must name at least one failed test")

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.SUCCEEDED

    @property
    def retried(self) -> bool:
        return self.rounds_executed > 1
