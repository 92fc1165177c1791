"""JSON Lines event log.

Implements TestEventSink by appending one JSON object per lifecycle event
to a file, optionally forwarding every event to another sink. Useful for
feeding the collapsed event stream to other tooling.

Every record has a ``received`` timestamp taken by this sink, comparable
across event kinds. Started and completed records also carry ``time``,
the event time reported by the engine; failure and output events come
without one.
"""

import json
import threading
from collections.abc import Hashable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from retryrounds.core.models import CompletionStatus, TestDescriptor
from retryrounds.core.ports import TestEventSink


class JsonLinesEventSink(TestEventSink):
    """Appends events to a ``.jsonl`` file."""

    def __init__(self, report_path: str, delegate: TestEventSink | None = None):
        """Initialize the JSON Lines sink.

        Args:
            report_path: File to append to. Parent directories are created.
            delegate: Optional sink receiving every event after it is logged.

        Raises:
            ValueError: If report_path is an existing directory.
            OSError: If the parent directory cannot be created.
        """
        self.path = Path(report_path).resolve()
        if self.path.is_dir():
            raise ValueError(f"report_path is a directory: {report_path}")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OSError(f"Failed to create report directory {self.path.parent}: {e}") from e

        self.delegate = delegate
        self._lock = threading.Lock()

    def started(self, descriptor: TestDescriptor, event_time: datetime) -> None:
        self._append(
            {
                "event": "started",
                "id": _id(descriptor.id),
                "parent_id": _id(descriptor.parent_id),
                "role": descriptor.role.value,
                "class_name": descriptor.class_name,
                "name": descriptor.name,
                "time": event_time.isoformat(),
            }
        )
        if self.delegate is not None:
            self.delegate.started(descriptor, event_time)

    def completed(
        self, test_id: Hashable, status: CompletionStatus, event_time: datetime
    ) -> None:
        self._append(
            {
                "event": "completed",
                "id": _id(test_id),
                "status": status.value,
                "time": event_time.isoformat(),
            }
        )
        if self.delegate is not None:
            self.delegate.completed(test_id, status, event_time)

    def output(self, test_id: Hashable, stream: str, text: str) -> None:
        self._append({"event": "output", "id": _id(test_id), "stream": stream, "text": text})
        if self.delegate is not None:
            self.delegate.output(test_id, stream, text)

    def failure(self, test_id: Hashable, error: BaseException | None) -> None:
        self._append(
            {
                "event": "failure",
                "id": _id(test_id),
                "error_type": type(error).__name__ if error is not None else None,
                "error": str(error) if error is not None else None,
            }
        )
        if self.delegate is not None:
            self.delegate.failure(test_id, error)

    def _append(self, record: dict[str, Any]) -> None:
        record["received"] = datetime.now(timezone.utc).isoformat()
        line = json.dumps(record, default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")


def _id(value: Hashable | None) -> str | None:
    return None if value is None else str(value)
