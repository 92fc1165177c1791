"""Tests for the composition root.

These tests verify that the command line is split between retryrounds and
pytest, that adapters are wired from configuration, and that run outcomes
map to the documented exit codes.
"""

import os
import signal
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from retryrounds import main
from retryrounds.adapters.reporting.jsonl import JsonLinesEventSink
from retryrounds.adapters.reporting.stdout import StdoutEventSink
from retryrounds.config import Settings
from retryrounds.core.filters import SetupFailureFilter, never_exempt
from retryrounds.core.models import RetryOutcome, RunState, TestIdentity

T = TestIdentity("tests/test_a.py", "test_one")


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep RETRYROUNDS_ variables and the real logging setup out of the tests."""
    for key in list(os.environ):
        if key.startswith("RETRYROUNDS_"):
            monkeypatch.delenv(key)
    monkeypatch.setattr(main, "configure_logging", lambda log_level, log_format: None)


class TestArgumentParsing:
    """Test splitting retryrounds flags from pytest arguments."""

    def test_unknown_arguments_pass_through(self) -> None:
        args, rest = main.build_parser().parse_known_args(
            ["--max-retries", "2", "-x", "tests/unit", "--tb=short"]
        )

        assert args.max_retries == 2
        assert rest == ["-x", "tests/unit", "--tb=short"]

    def test_unset_flags_are_none(self) -> None:
        args, rest = main.build_parser().parse_known_args([])

        assert args.max_retries is None
        assert args.fail_on_passed_after_retry is None
        assert args.verbose is None
        assert rest == []

    def test_flags(self) -> None:
        args, _ = main.build_parser().parse_known_args(
            [
                "--max-failures",
                "5",
                "--fail-on-passed-after-retry",
                "--report",
                "jsonl",
                "--report-path",
                "out/events.jsonl",
                "--show-output",
                "--log-level",
                "DEBUG",
            ]
        )

        assert args.max_failures == 5
        assert args.fail_on_passed_after_retry is True
        assert args.report_backend == "jsonl"
        assert args.report_path == "out/events.jsonl"
        assert args.verbose is True
        assert args.log_level == "DEBUG"


class TestAdapterWiring:
    """Test that adapters are instantiated from configuration."""

    def test_stdout_sink_is_its_own_reporter(self) -> None:
        sink, reporter = main.build_sink(Settings(verbose=True))

        assert sink is reporter
        assert isinstance(reporter, StdoutEventSink)
        assert reporter.verbose is True

    def test_jsonl_sink_tees_to_reporter(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        sink, reporter = main.build_sink(
            Settings(report_backend="jsonl", report_path=str(path))
        )

        assert isinstance(sink, JsonLinesEventSink)
        assert sink.delegate is reporter
        assert sink.path == path.resolve()

    def test_filter_selection(self) -> None:
        setup_filter = main.build_filter(Settings(setup_hook_names=["setUp"]))

        assert isinstance(setup_filter, SetupFailureFilter)
        assert setup_filter.hook_names == frozenset({"setUp"})
        assert main.build_filter(Settings(exempt_setup_failures=False)) is never_exempt


class TestExitCodes:
    """Test mapping of run outcomes onto exit codes."""

    @pytest.mark.parametrize(
        "outcome,had_failures,expected",
        [
            (RetryOutcome(RunState.SUCCEEDED, 1), False, main.EXIT_OK),
            (RetryOutcome(RunState.SUCCEEDED, 1), True, main.EXIT_TESTS_FAILED),
            (RetryOutcome(RunState.SUCCEEDED, 2, ignore_failures=True), True, main.EXIT_OK),
            (RetryOutcome(RunState.SUCCEEDED, 2), True, main.EXIT_TESTS_FAILED),
            (RetryOutcome(RunState.FAILED, 3, frozenset({T})), True, main.EXIT_TESTS_FAILED),
            (RetryOutcome(RunState.CANCELLED, 1), True, main.EXIT_INTERRUPTED),
        ],
    )
    def test_exit_code_for(
        self, outcome: RetryOutcome, had_failures: bool, expected: int
    ) -> None:
        assert main.exit_code_for(outcome, had_failures) == expected


class TestSignalHandling:
    """Test routing of SIGINT/SIGTERM to the running orchestrator."""

    def test_first_signal_stops_run_and_restores_previous_handlers(self) -> None:
        original_int = signal.getsignal(signal.SIGINT)
        original_term = signal.getsignal(signal.SIGTERM)
        run = MagicMock()

        with main.stop_on_signals(run):
            handler = signal.getsignal(signal.SIGINT)
            assert handler is not original_int

            handler(signal.SIGINT, None)

            run.stop.assert_called_once_with()
            # a second Ctrl-C reaches the previous handler
            assert signal.getsignal(signal.SIGINT) is original_int
            assert signal.getsignal(signal.SIGTERM) is original_term

        assert signal.getsignal(signal.SIGINT) is original_int

    def test_handlers_restored_without_signal(self) -> None:
        original_int = signal.getsignal(signal.SIGINT)

        with main.stop_on_signals(MagicMock()):
            pass

        assert signal.getsignal(signal.SIGINT) is original_int


class TestBootstrap:
    """End-to-end runs through bootstrap()."""

    PYTEST_ARGS = ["-p", "no:cacheprovider", "--import-mode=importlib"]

    def test_invalid_configuration(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main.bootstrap(["--max-retries", "-1"]) == main.EXIT_CONFIG_ERROR
        assert "invalid configuration" in capsys.readouterr().err

    def test_invalid_configuration_from_env(self) -> None:
        with patch.dict(os.environ, {"RETRYROUNDS_MAX_FAILURES": "-3"}):
            assert main.bootstrap([]) == main.EXIT_CONFIG_ERROR

    def test_flaky_suite_passes_with_retries(
        self, pytester: pytest.Pytester, capsys: pytest.CaptureFixture[str]
    ) -> None:
        pytester.makepyfile(
            test_cli_flaky="""
            from pathlib import Path

            MARKER = Path(__file__).with_name("attempted")

            def test_flaky():
                if not MARKER.exists():
                    MARKER.write_text("1")
                    assert False
            """
        )

        code = main.bootstrap(["--max-retries", "1", *self.PYTEST_ARGS, "test_cli_flaky.py"])

        assert code == main.EXIT_OK
        out = capsys.readouterr().out
        assert "Outcome: SUCCEEDED" in out
        assert "Passed after retry:" in out

    def test_retry_with_pytest_options_taking_values(
        self, pytester: pytest.Pytester
    ) -> None:
        pytester.makepyfile(
            test_cli_options="""
            from pathlib import Path

            MARKER = Path(__file__).with_name("attempted")

            def test_flaky():
                if not MARKER.exists():
                    MARKER.write_text("1")
                    assert False
            """
        )

        code = main.bootstrap(
            [
                "--max-retries",
                "1",
                *self.PYTEST_ARGS,
                "-r",
                "fE",
                "--durations",
                "3",
                "test_cli_options.py",
            ]
        )

        assert code == main.EXIT_OK

    def test_flaky_suite_fails_without_retries(self, pytester: pytest.Pytester) -> None:
        pytester.makepyfile(
            test_cli_once="""
            def test_broken():
                assert False
            """
        )

        code = main.bootstrap([*self.PYTEST_ARGS, "test_cli_once.py"])

        assert code == main.EXIT_TESTS_FAILED

    def test_fail_on_passed_after_retry(self, pytester: pytest.Pytester) -> None:
        pytester.makepyfile(
            test_cli_strict="""
            from pathlib import Path

            MARKER = Path(__file__).with_name("attempted")

            def test_flaky():
                if not MARKER.exists():
                    MARKER.write_text("1")
                    assert False
            """
        )

        code = main.bootstrap(
            [
                "--max-retries",
                "1",
                "--fail-on-passed-after-retry",
                *self.PYTEST_ARGS,
                "test_cli_strict.py",
            ]
        )

        assert code == main.EXIT_TESTS_FAILED

    def test_pytest_usage_error(self, pytester: pytest.Pytester) -> None:
        code = main.bootstrap(["--max-retries", "1", "--no-such-option-for-pytest"])

        assert code == main.EXIT_UNRETRIED
