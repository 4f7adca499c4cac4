"""Fixer collaborator contract.

A fixer turns a failing script plus diagnostics into a candidate
replacement. Returning None means "no candidate produced this attempt"
(unparseable response, timeout, transport failure), which the orchestrator
handles differently from a candidate that fails the syntax check.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from ..history import IterationHistory


@dataclass(frozen=True)
class FixRequest:
    """Everything a fixer needs to propose a replacement script."""

    task: str
    current_script: str
    error_text: str
    endpoint: str
    history: IterationHistory
    failed_line_number: Optional[int] = None
    timeout_ms: int = 300_000


@runtime_checkable
class Fixer(Protocol):
    """Produces candidate replacement scripts."""

    async def request_fix(self, request: FixRequest) -> Optional[str]:
        ...
