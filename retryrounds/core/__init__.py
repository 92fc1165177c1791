"""Core domain logic for the retryrounds system.

This package contains zero external dependencies and represents
the pure retry logic of the application. The execution engine, spec
narrowing and result reporting are handled by the adapters package.
"""

from .collector import RoundCollector
from .exceptions import (
    CollectorStateError,
    EngineError,
    RetryRoundsError,
    UnretriedTestsError,
)
from .filters import SetupFailureFilter, never_exempt
from .models import (
    CompletionStatus,
    NodeRole,
    RetryOutcome,
    RoundResult,
    RunState,
    TestDescriptor,
    TestIdentity,
)
from .orchestrator import RetryOrchestrator

__all__ = [
    "CollectorStateError",
    "CompletionStatus",
    "EngineError",
    "NodeRole",
    "RetryOrchestrator",
    "RetryOutcome",
    "RetryRoundsError",
    "RoundCollector",
    "RoundResult",
    "RunState",
    "SetupFailureFilter",
    "TestDescriptor",
    "TestIdentity",
    "UnretriedTestsError",
    "never_exempt",
]
