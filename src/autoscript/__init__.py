"""Autoscript: iterative repair of browser automation scripts."""

from autoscript.models import (
    ClassifiedError,
    ErrorCategory,
    ExecutionResult,
    ProbePolicy,
    ProbeResult,
    QualityThresholds,
    RepairOutcome,
    RepairPolicy,
    ValidationOutcome,
)
from autoscript.orchestrator import RepairOrchestrator, run_repair_loop
from autoscript.version import __version__

__all__ = [
    "ClassifiedError",
    "ErrorCategory",
    "ExecutionResult",
    "ProbePolicy",
    "ProbeResult",
    "QualityThresholds",
    "RepairOutcome",
    "RepairPolicy",
    "ValidationOutcome",
    "RepairOrchestrator",
    "run_repair_loop",
    "__version__",
]
