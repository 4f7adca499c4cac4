"""Repair orchestrator: the probe / run / evaluate / fix loop.

States per session:

    PROBE -> (RUN -> EVALUATE -> [SUCCESS | REQUEST_FIX -> VALIDATE_SYNTAX]) * N

The probe runs once before the first iteration. Each iteration executes the
current script, classifies the output and validates the extracted data. On
failure the attempt is recorded in the history and the fixer is asked for a
replacement; only candidates that pass the syntax check replace the current
script. Session failures are reported as a RepairOutcome, never raised.
"""

from __future__ import annotations

import logging
import tempfile
import uuid
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from .connectivity import probe
from .data_quality import validate_extracted_data
from .error_classifier import classify_errors
from .fixer.base import FixRequest, Fixer
from .history import IterationHistory
from .logging_config import correlation_id_var
from .models import (
    ClassifiedError,
    ExecutionResult,
    ProbePolicy,
    ProbeResult,
    RepairOutcome,
    RepairPolicy,
    ValidationOutcome,
)
from .script_runner import ScriptRunner, format_error_output
from .syntax_check import check_syntax

logger = logging.getLogger(__name__)

Prober = Callable[[str, ProbePolicy], Awaitable[ProbeResult]]
SyntaxChecker = Callable[[str], Awaitable[Optional[str]]]

SYNTAX_RETRY_HEADER = "[SYNTAX ERROR IN YOUR PREVIOUS FIX]"
QUALITY_ISSUES_HEADER = "[DATA QUALITY ISSUES]"


def build_error_text(result: ExecutionResult, validation: ValidationOutcome) -> str:
    """Formatted execution output, prefixed with data-quality issues if any."""
    formatted = format_error_output(result)
    if validation.valid:
        return formatted
    issues = "\n".join(validation.issues)
    return f"{QUALITY_ISSUES_HEADER}\n{issues}\n\n{formatted}"


def with_syntax_feedback(error_text: str, syntax_error: str) -> str:
    return (
        f"{SYNTAX_RETRY_HEADER}\n{syntax_error}\n\n"
        "Please fix the bash syntax error and try again.\n\n"
        f"{error_text}"
    )


class RepairOrchestrator:
    """Drives one repair session for a script and task."""

    def __init__(
        self,
        fixer: Fixer,
        policy: RepairPolicy,
        runner: Optional[ScriptRunner] = None,
        prober: Prober = probe,
        syntax_checker: SyntaxChecker = check_syntax,
        session_id: Optional[str] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            fixer: Collaborator producing candidate scripts
            policy: Immutable session policy
            runner: Script executor (defaults to one writing into a temp dir)
            prober: Connectivity probe
            syntax_checker: Returns None for a valid script, else the diagnostic
            session_id: Identifier used for run tags and log correlation
        """
        self.fixer = fixer
        self.policy = policy
        self.runner = runner or ScriptRunner(Path(tempfile.gettempdir()) / "autoscript")
        self.prober = prober
        self.syntax_checker = syntax_checker
        self.session_id = session_id or uuid.uuid4().hex[:12]

    async def run(self, initial_script: str, task: str) -> RepairOutcome:
        """
        Run the repair loop.

        Args:
            initial_script: Script to start from
            task: Natural-language task the script must accomplish

        Returns:
            RepairOutcome describing success or the last failure
        """
        token = correlation_id_var.set(self.session_id)
        try:
            return await self._run(initial_script, task)
        finally:
            correlation_id_var.reset(token)

    async def _run(self, initial_script: str, task: str) -> RepairOutcome:
        policy = self.policy

        probe_result = await self.prober(policy.endpoint, policy.probe)
        if not probe_result.connected:
            logger.warning(
                f"[Orchestrator] Endpoint unavailable after {probe_result.attempts} attempt(s); "
                "skipping repair loop"
            )
            return RepairOutcome(
                success=False,
                iterations=0,
                final_script=initial_script,
                last_error=f"CDP connection unavailable: {probe_result.error}",
                skipped_due_to_stale_endpoint=True,
                history=IterationHistory(task_description=task),
            )

        current_script = initial_script
        history = IterationHistory(task_description=task)
        last_error: Optional[str] = None
        classified: List[ClassifiedError] = []
        validation: Optional[ValidationOutcome] = None

        for iteration in range(1, policy.max_iterations + 1):
            logger.info(f"[Orchestrator] Iteration {iteration}/{policy.max_iterations}")

            result = await self.runner.execute(
                current_script,
                policy.endpoint,
                policy.execution_timeout_ms,
                task_hint=task,
                run_tag=f"{self.session_id}-iter{iteration}",
            )

            classified = classify_errors(
                result.stdout, result.stderr, result.exit_code, result.timed_out
            )
            validation = validate_extracted_data(
                result.stdout, task, policy.quality_thresholds
            )

            primary = classified[0].category.value if classified else "NONE"
            logger.info(
                f"[Orchestrator] Iteration {iteration}: exit={result.exit_code} "
                f"timed_out={result.timed_out} primary={primary} valid={validation.valid}",
                extra={"iteration": iteration, "category": primary, "valid": validation.valid},
            )

            if result.succeeded and validation.valid:
                logger.info(f"[Orchestrator] Script succeeded on iteration {iteration}")
                return RepairOutcome(
                    success=True,
                    iterations=iteration,
                    final_script=current_script,
                    history=history,
                    classified_errors=tuple(classified),
                    validation=validation,
                )

            if result.semantic_error:
                logger.info(f"[Orchestrator] Semantic issue: {result.semantic_error}")

            last_error = build_error_text(result, validation)

            if iteration == policy.max_iterations:
                break

            history = history.append(iteration, current_script, last_error)
            current_script = await self._repair(
                current_script, task, last_error, result.failed_line_number, history, iteration
            )

        logger.warning(
            f"[Orchestrator] Giving up after {policy.max_iterations} iteration(s)"
        )
        return RepairOutcome(
            success=False,
            iterations=policy.max_iterations,
            final_script=current_script,
            last_error=last_error,
            history=history,
            classified_errors=tuple(classified),
            validation=validation,
        )

    async def _repair(
        self,
        current_script: str,
        task: str,
        error_text: str,
        failed_line_number: Optional[int],
        history: IterationHistory,
        iteration: int,
    ) -> str:
        """Request fixes until one passes the syntax check or retries run out."""
        prompt_error = error_text
        attempts = self.policy.max_syntax_retries + 1

        for attempt in range(1, attempts + 1):
            request = FixRequest(
                task=task,
                current_script=current_script,
                error_text=prompt_error,
                endpoint=self.policy.endpoint,
                history=history,
                failed_line_number=failed_line_number,
                timeout_ms=self.policy.fix_request_timeout_ms,
            )

            try:
                candidate = await self.fixer.request_fix(request)
            except Exception as e:
                logger.error(f"[Orchestrator] Fixer raised {type(e).__name__}: {e}", exc_info=True)
                candidate = None

            if candidate is None:
                logger.warning(
                    f"[Orchestrator] No fix candidate produced on iteration {iteration}; "
                    "keeping current script"
                )
                return current_script

            syntax_error = await self.syntax_checker(candidate)
            if syntax_error is None:
                logger.info(f"[Orchestrator] Accepted fix candidate (syntax attempt {attempt})")
                return candidate

            logger.warning(
                f"[Orchestrator] Candidate failed syntax check ({attempt}/{attempts}): {syntax_error}"
            )
            prompt_error = with_syntax_feedback(error_text, syntax_error)

        logger.warning(
            f"[Orchestrator] No syntactically valid fix after {attempts} attempt(s); "
            "keeping current script"
        )
        return current_script


async def run_repair_loop(
    initial_script: str,
    task: str,
    policy: RepairPolicy,
    fixer: Fixer,
    runner: Optional[ScriptRunner] = None,
    prober: Prober = probe,
    syntax_checker: SyntaxChecker = check_syntax,
    session_id: Optional[str] = None,
) -> RepairOutcome:
    """
    Repair a script until it accomplishes the task or the budget runs out.

    Args:
        initial_script: Script to start from
        task: Natural-language task description
        policy: Session policy
        fixer: Collaborator producing candidate scripts
        runner: Script executor override
        prober: Connectivity probe override
        syntax_checker: Syntax validator override
        session_id: Identifier for run tags and log correlation

    Returns:
        RepairOutcome
    """
    orchestrator = RepairOrchestrator(
        fixer,
        policy,
        runner=runner,
        prober=prober,
        syntax_checker=syntax_checker,
        session_id=session_id,
    )
    return await orchestrator.run(initial_script, task)
