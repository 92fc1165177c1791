"""Fake implementations of core ports for testing.

These in-memory implementations allow core domain logic to be tested
without running a real test framework:

- FakeExecutionEngine: Replays scripted rounds of lifecycle events
- FakeSpecBuilder: Records narrowing requests
- RecordingEventSink: Captures forwarded events for assertion
"""

from .engine import FakeExecutionEngine, FakeSpec, RoundScript
from .sink import RecordingEventSink
from .spec_builder import FakeSpecBuilder

__all__ = [
    "FakeExecutionEngine",
    "FakeSpec",
    "FakeSpecBuilder",
    "RecordingEventSink",
    "RoundScript",
]
