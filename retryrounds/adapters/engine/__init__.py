"""Execution engine adapters.

Implementations run a (possibly narrowed) set of tests and report their
lifecycle events:
- pytest (in-process, one ``pytest.main`` call per round)
"""

from .pytest_engine import PytestEventBridge, PytestExecutionEngine, PytestNodeSelection
from .spec import PytestRetrySpecBuilder, PytestRunSpec

__all__ = [
    "PytestEventBridge",
    "PytestExecutionEngine",
    "PytestNodeSelection",
    "PytestRetrySpecBuilder",
    "PytestRunSpec",
]
