"""In-process pytest execution engine.

Implements ExecutionEnginePort by running ``pytest.main`` with a plugin
that translates pytest's reporting hooks into TestEventSink events:

- session start/finish: ROOT node started/completed
- first test of a module: COMPOSITE node started (completed when the
  next module begins or the session ends)
- each test item: LEAF node started, failure for any failing phase,
  captured output, completed

Every execution assigns fresh opaque ids, so ids never carry over from
one round to the next. Retry rounds re-run the original command line and
keep only the collected items whose node ids failed before.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import pytest

from retryrounds.core.exceptions import EngineError
from retryrounds.core.models import CompletionStatus, NodeRole, TestDescriptor
from retryrounds.core.ports import ExecutionEnginePort, TestEventSink

from .spec import PytestRunSpec

logger = logging.getLogger(__name__)

ROOT_CLASS_NAME = "pytest"
ROOT_NAME = "session"

# Exit codes that mean pytest could not run the suite at all.
_ENGINE_FAILURE_CODES = {
    pytest.ExitCode.INTERNAL_ERROR,
    pytest.ExitCode.USAGE_ERROR,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PytestEventBridge:
    """pytest plugin forwarding lifecycle hooks to a TestEventSink."""

    def __init__(
        self,
        sink: TestEventSink,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.sink = sink
        self.clock = clock
        self.id_factory = id_factory
        self.session: pytest.Session | None = None

        self._root_id: str | None = None
        self._module: str | None = None
        self._module_id: str | None = None
        self._module_failed = False
        self._item_ids: dict[str, str] = {}
        self._item_status: dict[str, CompletionStatus] = {}
        self._errors: dict[tuple[str, str], BaseException] = {}

    @pytest.hookimpl(tryfirst=True)
    def pytest_sessionstart(self, session: pytest.Session) -> None:
        self.session = session
        self._root_id = self.id_factory()
        self.sink.started(
            TestDescriptor(
                id=self._root_id,
                class_name=ROOT_CLASS_NAME,
                name=ROOT_NAME,
                role=NodeRole.ROOT,
            ),
            self.clock(),
        )

    def pytest_collectreport(self, report: pytest.CollectReport) -> None:
        if report.failed:
            # Never started, so the failure reaches downstream unattributed.
            self.sink.failure(self.id_factory(), _ReportedFailure(report))

    def pytest_runtest_logstart(self, nodeid: str, location: Any) -> None:
        module = nodeid.split("::", 1)[0]
        if module != self._module:
            self._finish_module()
            self._start_module(module)

        item_id = self.id_factory()
        self._item_ids[nodeid] = item_id
        self._item_status[nodeid] = CompletionStatus.PASSED
        class_name, _, name = nodeid.rpartition("::")
        self.sink.started(
            TestDescriptor(
                id=item_id,
                class_name=class_name or nodeid,
                name=name,
                role=NodeRole.LEAF,
                parent_id=self._module_id,
            ),
            self.clock(),
        )

    @pytest.hookimpl(tryfirst=True)
    def pytest_runtest_makereport(self, item: pytest.Item, call: pytest.CallInfo) -> None:
        if call.excinfo is not None:
            self._errors[(item.nodeid, call.when)] = call.excinfo.value

    def pytest_runtest_logreport(self, report: pytest.TestReport) -> None:
        item_id = self._item_ids.get(report.nodeid)
        if item_id is None:
            item_id = self.id_factory()

        error = self._errors.pop((report.nodeid, report.when), None)
        if report.failed:
            self._item_status[report.nodeid] = CompletionStatus.FAILED
            self._module_failed = True
            self.sink.failure(item_id, error if error is not None else _ReportedFailure(report))
        elif report.skipped and self._item_status.get(report.nodeid) is CompletionStatus.PASSED:
            self._item_status[report.nodeid] = CompletionStatus.SKIPPED

        if report.when == "teardown":
            if report.capstdout:
                self.sink.output(item_id, "stdout", report.capstdout)
            if report.capstderr:
                self.sink.output(item_id, "stderr", report.capstderr)

    def pytest_runtest_logfinish(self, nodeid: str, location: Any) -> None:
        item_id = self._item_ids.pop(nodeid, None)
        status = self._item_status.pop(nodeid, CompletionStatus.PASSED)
        if item_id is not None:
            self.sink.completed(item_id, status, self.clock())

    @pytest.hookimpl(trylast=True)
    def pytest_sessionfinish(self, session: pytest.Session, exitstatus: int) -> None:
        self._finish_module()
        if self._root_id is not None:
            status = CompletionStatus.FAILED if session.testsfailed else CompletionStatus.PASSED
            self.sink.completed(self._root_id, status, self.clock())
        self.session = None

    def _start_module(self, module: str) -> None:
        self._module = module
        self._module_id = self.id_factory()
        self._module_failed = False
        self.sink.started(
            TestDescriptor(
                id=self._module_id,
                class_name=module,
                name=module,
                role=NodeRole.COMPOSITE,
                parent_id=self._root_id,
            ),
            self.clock(),
        )

    def _finish_module(self) -> None:
        if self._module_id is None:
            return
        status = CompletionStatus.FAILED if self._module_failed else CompletionStatus.PASSED
        self.sink.completed(self._module_id, status, self.clock())
        self._module = None
        self._module_id = None


class PytestNodeSelection:
    """pytest plugin keeping only the collected items with the given node ids.

    Items left out are reported through ``pytest_deselected`` like any
    other deselection, so terminal summaries count them.
    """

    def __init__(self, node_ids: frozenset[str]):
        self.node_ids = frozenset(node_ids)

    @pytest.hookimpl(trylast=True)
    def pytest_collection_modifyitems(
        self, session: pytest.Session, config: pytest.Config, items: list[pytest.Item]
    ) -> None:
        selected = [item for item in items if item.nodeid in self.node_ids]
        deselected = [item for item in items if item.nodeid not in self.node_ids]
        if deselected:
            config.hook.pytest_deselected(items=deselected)
            items[:] = selected


class _ReportedFailure(Exception):
    """Failure known only from a pytest report, without the original exception."""

    def __init__(self, report: pytest.TestReport | pytest.CollectReport):
        self.nodeid = report.nodeid
        super().__init__(str(report.longrepr) if report.longrepr else report.nodeid)


class PytestExecutionEngine(ExecutionEnginePort[PytestRunSpec]):
    """Runs pytest in the current process, one ``pytest.main`` call per round.

    Test modules imported in an earlier round stay imported; retried tests
    run against the same module objects.
    """

    def __init__(self, plugins: list[object] | None = None):
        """Initialize the engine.

        Args:
            plugins: Extra plugin objects registered for every round.
        """
        self.plugins = list(plugins or [])
        self._lock = threading.Lock()
        self._bridge: PytestEventBridge | None = None
        self._stop_requested = False

    def execute(self, spec: PytestRunSpec, sink: TestEventSink) -> None:
        bridge = PytestEventBridge(sink)
        with self._lock:
            if self._stop_requested:
                logger.info("Stop already requested, skipping pytest run")
                return
            self._bridge = bridge

        args = spec.to_args()
        plugins: list[object] = [bridge, *self.plugins]
        if spec.selected_node_ids is not None:
            plugins.append(PytestNodeSelection(spec.selected_node_ids))
            logger.info(
                f"Running pytest {' '.join(args)} "
                f"(selecting {len(spec.selected_node_ids)} node id(s))"
            )
        else:
            logger.info(f"Running pytest {' '.join(args)}")
        try:
            exit_code = pytest.main(args, plugins=plugins)
        finally:
            with self._lock:
                self._bridge = None

        logger.debug(f"pytest finished with exit code {exit_code}")
        if exit_code in _ENGINE_FAILURE_CODES:
            raise EngineError(f"pytest could not run the tests (exit code {int(exit_code)})", int(exit_code))

    def stop(self) -> None:
        with self._lock:
            self._stop_requested = True
            session = self._bridge.session if self._bridge is not None else None
        if session is not None:
            session.shouldstop = "retryrounds run cancelled"
            logger.info("Asked pytest session to stop after the current test")
