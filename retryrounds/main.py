"""Composition root for the retryrounds system.

This module is the ONLY location that imports both core domain logic
and concrete adapter implementations. All wiring of dependencies
happens here, creating a clear entry point for the application.

Module Structure:
- Command-line parsing (retry flags; everything else goes to pytest)
- Configuration loading via config module
- Adapter instantiation
- Core service initialization
- Exit code selection from the run outcome
"""

import argparse
import logging
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager

from pydantic import ValidationError

from retryrounds.adapters.engine.pytest_engine import PytestExecutionEngine
from retryrounds.adapters.engine.spec import PytestRetrySpecBuilder, PytestRunSpec
from retryrounds.adapters.reporting.jsonl import JsonLinesEventSink
from retryrounds.adapters.reporting.stdout import StdoutEventSink
from retryrounds.config import Settings, load_settings
from retryrounds.core.exceptions import (
    CollectorStateError,
    EngineError,
    UnretriedTestsError,
)
from retryrounds.core.filters import SetupFailureFilter, never_exempt
from retryrounds.core.models import RetryOutcome, RunState
from retryrounds.core.orchestrator import RetryOrchestrator
from retryrounds.core.ports import RetryabilityFilter, TestEventSink, TestRunPort

EXIT_OK = 0
EXIT_TESTS_FAILED = 1
EXIT_UNRETRIED = 2
EXIT_PROTOCOL_VIOLATION = 3
EXIT_CONFIG_ERROR = 4
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    """Build the parser for retryrounds' own flags.

    Unrecognised arguments are passed to pytest unchanged.
    """
    parser = argparse.ArgumentParser(
        prog="retryrounds",
        description=(
            "Run pytest, retrying failed tests in bounded rounds. "
            "Arguments not listed here are passed to pytest."
        ),
        allow_abbrev=False,
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help="Extra rounds allowed after the first (0 disables retrying).",
    )
    parser.add_argument(
        "--max-failures",
        type=int,
        default=None,
        help="Stop retrying once a round has this many failing tests (0 = unbounded).",
    )
    parser.add_argument(
        "--fail-on-passed-after-retry",
        action="store_const",
        const=True,
        default=None,
        help="Fail the run even when every failed test passed on retry.",
    )
    parser.add_argument(
        "--report",
        dest="report_backend",
        choices=["stdout", "jsonl"],
        default=None,
        help="Result reporter (default: stdout).",
    )
    parser.add_argument(
        "--report-path",
        default=None,
        help="Output file for the jsonl reporter.",
    )
    parser.add_argument(
        "--show-output",
        dest="verbose",
        action="store_const",
        const=True,
        default=None,
        help="Print captured output of each test.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Log level for retryrounds' own messages.",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Load settings from this .env file.",
    )
    return parser


def configure_logging(log_level: str, log_format: str) -> None:
    """Configure application logging.

    Logs go to stderr so the test report on stdout stays readable.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json, text).
    """
    level = getattr(logging, log_level, logging.WARNING)

    if log_format == "json":
        format_str = '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'
    else:
        format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.StreamHandler(sys.stderr),
        ],
        force=True,
    )


def build_filter(settings: Settings) -> RetryabilityFilter:
    """Select the retryability filter from configuration."""
    if settings.exempt_setup_failures:
        return SetupFailureFilter(settings.setup_hook_names)
    return never_exempt


def build_sink(settings: Settings) -> tuple[TestEventSink, StdoutEventSink]:
    """Build the downstream sink chain.

    Returns:
        The sink handed to the orchestrator and the stdout reporter at the
        end of the chain, which also tracks whether any failure was seen.
    """
    reporter = StdoutEventSink(verbose=settings.verbose)
    if settings.report_backend == "jsonl":
        return JsonLinesEventSink(settings.report_path, delegate=reporter), reporter
    return reporter, reporter


def exit_code_for(outcome: RetryOutcome, had_failures: bool) -> int:
    """Map a finished run to a process exit code.

    A run that succeeded only after retries still fails when failures
    were reported and the run is not marked to ignore them.
    """
    if outcome.state is RunState.CANCELLED:
        return EXIT_INTERRUPTED
    if outcome.state is RunState.FAILED:
        return EXIT_TESTS_FAILED
    if had_failures and not outcome.ignore_failures:
        return EXIT_TESTS_FAILED
    return EXIT_OK


@contextmanager
def stop_on_signals(run: TestRunPort) -> Iterator[None]:
    """Route SIGINT/SIGTERM to run.stop() while the block executes.

    The first signal asks the run to stop after the current test and puts
    the previous handler back, so a second signal interrupts immediately.
    """
    logger = logging.getLogger(__name__)
    previous: dict[int, object] = {}

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info(f"Received signal {signum}, stopping test run...")
        for sig, handler in previous.items():
            signal.signal(sig, handler)  # type: ignore[arg-type]
        run.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _handle_signal)
        except ValueError:
            # Not on the main thread
            logger.debug("Signal handlers not available outside the main thread")
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)  # type: ignore[arg-type]


def bootstrap(argv: list[str]) -> int:
    """Parse arguments, wire adapters, run the tests and pick an exit code.

    This is the composition root: the single place where all components
    are instantiated and wired together.

    Steps:
    1. Parse command line and load configuration
    2. Configure logging
    3. Instantiate adapters with configuration
    4. Initialize the orchestrator
    5. Run and report

    Args:
        argv: Command-line arguments, without the program name.

    Returns:
        Process exit code.
    """
    # Step 1: Parse command line and load configuration
    parser = build_parser()
    args, pytest_args = parser.parse_known_args(argv)
    if pytest_args and pytest_args[0] == "--":
        pytest_args = pytest_args[1:]

    try:
        settings = load_settings(
            env_file=args.env_file,
            max_retries=args.max_retries,
            max_failures=args.max_failures,
            fail_on_passed_after_retry=args.fail_on_passed_after_retry,
            report_backend=args.report_backend,
            report_path=args.report_path,
            verbose=args.verbose,
            log_level=args.log_level,
        )
    except ValidationError as e:
        print(f"retryrounds: invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    # Step 2: Configure logging
    configure_logging(settings.log_level, settings.log_format)
    logger = logging.getLogger(__name__)
    logger.info(
        f"Loaded settings: max_retries={settings.max_retries}, "
        f"max_failures={settings.max_failures}, "
        f"fail_on_passed_after_retry={settings.fail_on_passed_after_retry}"
    )

    # Step 3: Instantiate adapters
    spec = PytestRunSpec.from_args(pytest_args)
    engine = PytestExecutionEngine()
    spec_builder = PytestRetrySpecBuilder()
    sink, reporter = build_sink(settings)

    # Step 4: Initialize the orchestrator
    orchestrator: RetryOrchestrator[PytestRunSpec] = RetryOrchestrator(
        engine=engine,
        spec_builder=spec_builder,
        max_retries=settings.max_retries,
        max_failures=settings.max_failures,
        fail_on_passed_after_retry=settings.fail_on_passed_after_retry,
        retryability_filter=build_filter(settings),
    )

    # Step 5: Run and report
    try:
        with stop_on_signals(orchestrator):
            outcome = orchestrator.execute(spec, sink)
    except UnretriedTestsError as e:
        logger.error(str(e))
        print(f"retryrounds: {e}", file=sys.stderr)
        return EXIT_UNRETRIED
    except EngineError as e:
        logger.error(f"Execution engine error: {e}")
        print(f"retryrounds: {e}", file=sys.stderr)
        return EXIT_UNRETRIED
    except CollectorStateError as e:
        logger.error(f"Round protocol violated: {e}", exc_info=True)
        return EXIT_PROTOCOL_VIOLATION

    reporter.report_outcome(outcome)
    return exit_code_for(outcome, reporter.had_failures)


def main() -> None:
    """Application entry point.

    Exit codes:
        0: All tests passed (possibly after retries, when failures are ignored)
        1: Test failures remain
        2: A failed test could not be retried, or pytest could not run
        3: Internal round protocol violation
        4: Invalid configuration
        130: Interrupted by user (SIGINT/SIGTERM)
    """
    logger = logging.getLogger(__name__)
    try:
        sys.exit(bootstrap(sys.argv[1:]))
    except KeyboardInterrupt:
        logger.warning("Shutdown requested by user (SIGINT)")
        sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    main()
