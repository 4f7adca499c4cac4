"""Data model for the repair loop.

Runtime records (attempts, execution results, classifications, outcomes) are
dataclasses; the immutable session configuration is a frozen pydantic model
so that bad values are rejected when the session starts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .history import IterationHistory


class ErrorCategory(str, Enum):
    """Closed taxonomy of script failure causes."""

    CDP_CONNECTION = "CDP_CONNECTION"
    NAVIGATION = "NAVIGATION"
    SELECTOR_EMPTY = "SELECTOR_EMPTY"
    SELECTOR_WRONG = "SELECTOR_WRONG"
    DATA_QUALITY = "DATA_QUALITY"
    EXTRACTION_INCOMPLETE = "EXTRACTION_INCOMPLETE"
    JSON_PARSING = "JSON_PARSING"
    JAVASCRIPT_ERROR = "JAVASCRIPT_ERROR"
    BASH_ERROR = "BASH_ERROR"
    TIMEOUT = "TIMEOUT"
    ACCESS_DENIED = "ACCESS_DENIED"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class ClassifiedError:
    """A categorized explanation of a failed run.

    Attributes:
        category: Taxonomy category
        message: Human-readable summary
        confidence: Ranking score in [0, 1]
        suggested_fix: Optional short repair hint
        details: Optional extracted values (e.g. observed rates)
    """

    category: ErrorCategory
    message: str
    confidence: float
    suggested_fix: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "confidence": self.confidence,
            "suggested_fix": self.suggested_fix,
            "details": self.details,
        }


@dataclass
class ExecutionResult:
    """Raw outcome of one script execution."""

    stdout: str
    stderr: str
    exit_code: Optional[int]
    timed_out: bool = False
    failed_line_number: Optional[int] = None
    semantic_error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        """Process-level success (data quality is judged separately)."""
        return self.exit_code == 0 and not self.timed_out


@dataclass
class ValidationOutcome:
    """Data-quality verdict, independent of the exit code."""

    valid: bool
    issues: List[str] = field(default_factory=list)

    @classmethod
    def ok(cls) -> "ValidationOutcome":
        return cls(valid=True, issues=[])


@dataclass(frozen=True)
class ProbeResult:
    """Result of an endpoint connectivity probe."""

    connected: bool
    error: Optional[str] = None
    attempts: int = 0


class QualityThresholds(BaseModel):
    """Data-quality acceptance thresholds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_price_rate: float = Field(default=0.9, ge=0.0, le=1.0)
    min_rating_rate: float = Field(default=0.8, ge=0.0, le=1.0)
    min_item_count: int = Field(default=1, ge=0)
    require_prices: bool = True
    require_ratings: bool = True


class ProbePolicy(BaseModel):
    """Retry policy for the connectivity probe."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: int = Field(default=3, ge=1)
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=4000, ge=0)
    attempt_timeout_ms: int = Field(default=10000, gt=0)


class RepairPolicy(BaseModel):
    """Immutable configuration for one repair session."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    endpoint: str
    max_iterations: int = Field(default=5, ge=1)
    max_syntax_retries: int = Field(default=2, ge=0)
    execution_timeout_ms: int = Field(default=300_000, gt=0)
    fix_request_timeout_ms: int = Field(default=300_000, gt=0)
    quality_thresholds: QualityThresholds = Field(default_factory=QualityThresholds)
    probe: ProbePolicy = Field(default_factory=ProbePolicy)


@dataclass(frozen=True)
class RepairOutcome:
    """Terminal result of a repair session."""

    success: bool
    iterations: int
    final_script: str
    last_error: Optional[str] = None
    skipped_due_to_stale_endpoint: bool = False
    history: Optional[IterationHistory] = None
    classified_errors: Tuple[ClassifiedError, ...] = ()
    validation: Optional[ValidationOutcome] = None
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/telemetry."""
        return {
            "success": self.success,
            "iterations": self.iterations,
            "final_script": self.final_script,
            "last_error": self.last_error,
            "skipped_due_to_stale_endpoint": self.skipped_due_to_stale_endpoint,
            "attempts_recorded": len(self.history) if self.history is not None else 0,
            "classified_errors": [e.to_dict() for e in self.classified_errors],
            "validation": (
                {"valid": self.validation.valid, "issues": list(self.validation.issues)}
                if self.validation
                else None
            ),
            "finished_at": self.finished_at.isoformat(),
        }
