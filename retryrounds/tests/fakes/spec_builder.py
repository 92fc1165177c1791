"""Fake RetrySpecBuilderPort implementation for testing."""

from collections.abc import Mapping

from retryrounds.core.models import TestIdentity
from retryrounds.core.ports import RetrySpecBuilderPort

from .engine import FakeSpec


class FakeSpecBuilder(RetrySpecBuilderPort[FakeSpec]):
    """Narrows a FakeSpec to exactly the failing tests and records each call."""

    def __init__(self) -> None:
        self.calls: list[tuple[FakeSpec, frozenset[TestIdentity], dict]] = []

    def build_retry_spec(
        self,
        original_spec: FakeSpec,
        failing_tests: frozenset[TestIdentity],
        failure_details: Mapping[TestIdentity, BaseException | None],
    ) -> FakeSpec:
        self.calls.append((original_spec, failing_tests, dict(failure_details)))
        return FakeSpec(tests=failing_tests, label=f"retry-{len(self.calls)}")
