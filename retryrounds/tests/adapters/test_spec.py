"""Unit tests for PytestRunSpec and PytestRetrySpecBuilder."""

import pytest

from retryrounds.adapters.engine.spec import PytestRetrySpecBuilder, PytestRunSpec
from retryrounds.core.models import TestIdentity


class TestPytestRunSpec:
    """Test carrying a pytest command line between rounds."""

    @pytest.mark.parametrize(
        "args",
        [
            ["-x", "-k", "slow and not db", "tests/unit", "--tb=short"],
            ["-r", "fE", "--durations", "3", "tests"],
            ["-n", "4", "--cov", "src", "--log-cli-level", "INFO"],
            [],
        ],
    )
    def test_from_args_keeps_command_line_verbatim(self, args: list[str]) -> None:
        spec = PytestRunSpec.from_args(args)

        assert spec.to_args() == args
        assert spec.selected_node_ids is None

    def test_rootdir_is_appended(self) -> None:
        spec = PytestRunSpec.from_args(["-q", "a.py"], rootdir="/repo")

        assert spec.to_args() == ["-q", "a.py", "--rootdir", "/repo"]

    def test_selection_does_not_touch_args(self) -> None:
        spec = PytestRunSpec.from_args(["-r", "fE", "tests"])

        narrowed = spec.with_selection(frozenset({"tests/t.py::test_x"}))

        assert narrowed.to_args() == ["-r", "fE", "tests"]
        assert narrowed.selected_node_ids == frozenset({"tests/t.py::test_x"})

    def test_is_hashable_and_immutable(self) -> None:
        spec = PytestRunSpec(args=["a.py"], selected_node_ids={"a.py::test_one"})

        assert hash(spec) == hash(
            PytestRunSpec(args=("a.py",), selected_node_ids=frozenset({"a.py::test_one"}))
        )
        with pytest.raises(AttributeError):
            spec.args = ("b.py",)  # type: ignore[misc]


class TestPytestRetrySpecBuilder:
    """Test narrowing a run to failing node ids."""

    def test_selects_failing_node_ids_and_keeps_command_line(self) -> None:
        original = PytestRunSpec.from_args(
            ["-x", "--durations", "3", "tests"], rootdir="/repo"
        )
        failing = frozenset(
            {
                TestIdentity.from_node_id("tests/test_b.py::test_two"),
                TestIdentity.from_node_id("tests/test_a.py::TestApi::test_get[json]"),
            }
        )

        retry = PytestRetrySpecBuilder().build_retry_spec(original, failing, {})

        assert retry.selected_node_ids == frozenset(
            {
                "tests/test_a.py::TestApi::test_get[json]",
                "tests/test_b.py::test_two",
            }
        )
        assert retry.args == original.args
        assert retry.rootdir == "/repo"

    def test_narrowing_starts_from_original_selection(self) -> None:
        original = PytestRunSpec.from_args(["tests"])
        first = PytestRetrySpecBuilder().build_retry_spec(
            original, frozenset({TestIdentity.from_node_id("tests/t.py::test_a")}), {}
        )
        second = PytestRetrySpecBuilder().build_retry_spec(
            original, frozenset({TestIdentity.from_node_id("tests/t.py::test_b")}), {}
        )

        assert first.selected_node_ids == frozenset({"tests/t.py::test_a"})
        assert second.selected_node_ids == frozenset({"tests/t.py::test_b"})

    def test_rejects_empty_failing_set(self) -> None:
        with pytest.raises(ValueError, match="must not be empty"):
            PytestRetrySpecBuilder().build_retry_spec(PytestRunSpec(), frozenset(), {})
