"""Iteration history for repair attempts.

The history is an append-only accumulator: ``append`` returns a new
``IterationHistory`` and never touches the attempts already recorded. The
orchestrator threads the latest value through its loop and hands it to the
fixer so previously failed approaches are not proposed again.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

_QUERY_SELECTOR_RE = re.compile(r"querySelectorAll?\s*\(\s*['\"`]([^'\"`]+)['\"`]\s*\)")
_SELECTOR_VAR_RE = re.compile(r"(?:var|let|const)\s+\w*[Ss]elector\w*\s*=\s*['\"`]([^'\"`]+)['\"`]")
_GENERIC_SELECTOR_RE = re.compile(
    r"['\"`](\[data-[^\]]+\]|\.[\w-]+|\#[\w-]+|[a-z]+\[[\w-]+=)['\"`]", re.IGNORECASE
)
_TAG_ATTR_RE = re.compile(r"^[a-z]+\[", re.IGNORECASE)

MAX_SELECTORS_SHOWN = 5


def extract_selectors(script_text: str) -> Tuple[str, ...]:
    """
    Extract CSS selectors used by a script's eval snippets.

    Args:
        script_text: Bash script source

    Returns:
        Selectors in first-seen order, without duplicates
    """
    found: List[str] = []

    def _add(candidate: str) -> None:
        if candidate not in found:
            found.append(candidate)

    for match in _QUERY_SELECTOR_RE.finditer(script_text):
        _add(match.group(1))
    for match in _SELECTOR_VAR_RE.finditer(script_text):
        _add(match.group(1))
    for match in _GENERIC_SELECTOR_RE.finditer(script_text):
        candidate = match.group(1)
        if len(candidate) > 2 and (
            candidate[0] in "[.#" or _TAG_ATTR_RE.match(candidate)
        ):
            _add(candidate)

    return tuple(found)


@dataclass(frozen=True)
class Attempt:
    """One failed iteration recorded before asking for a fix."""

    iteration: int
    script_text: str
    error_output: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    syntax_error: Optional[str] = None
    selectors_used: Tuple[str, ...] = ()


@dataclass(frozen=True)
class IterationHistory:
    """Ordered, append-only record of prior attempts for one session."""

    task_description: str
    attempts: Tuple[Attempt, ...] = ()

    def __len__(self) -> int:
        return len(self.attempts)

    def append(
        self,
        iteration: int,
        script_text: str,
        error_output: str,
        syntax_error: Optional[str] = None,
    ) -> "IterationHistory":
        """Return a new history with one more attempt."""
        attempt = Attempt(
            iteration=iteration,
            script_text=script_text,
            error_output=error_output,
            syntax_error=syntax_error,
            selectors_used=extract_selectors(script_text),
        )
        return IterationHistory(
            task_description=self.task_description,
            attempts=self.attempts + (attempt,),
        )


def summarize_error(error_output: str) -> str:
    """Reduce a formatted error block to a one-line summary."""
    semantic = re.search(r"\[SEMANTIC ERROR\]\s*(.+)", error_output)
    if semantic:
        return semantic.group(1)[:150]

    quality = re.search(r"\[DATA QUALITY ISSUES\]\s*([\s\S]*?)(?:\n\n|\[)", error_output)
    if quality:
        issues = quality.group(1).strip().split("\n")[:2]
        return "; ".join(issues)[:150]

    if "extracted 0" in error_output or "No items extracted" in error_output:
        return "No items extracted - selector likely wrong"
    if "jq: error" in error_output:
        return "JSON parsing error - double-encoded JSON issue"
    if "WRONG_SELECTOR" in error_output:
        return "Wrong selector - targeting ads/carousel instead of main grid"
    if "INCOMPLETE" in error_output:
        return "Incomplete extraction - need more scrolling or pagination"
    if "valid prices" in error_output:
        return "Low price extraction rate - price selectors failing"
    if "valid ratings" in error_output:
        return "Low rating extraction rate - rating selectors failing"

    for line in error_output.split("\n"):
        line = line.strip()
        if len(line) > 10 and not line.startswith("[STDOUT]"):
            return line[:150]

    return "Script execution failed"


def format_history(history: IterationHistory) -> str:
    """
    Render the history as a prompt section.

    Args:
        history: Iteration history

    Returns:
        Markdown block, or empty string when nothing has been tried yet
    """
    if not history.attempts:
        return ""

    lines = [
        f"\n## Previous Fix Attempts ({len(history.attempts)} so far)\n",
        "**IMPORTANT**: These approaches have already been tried and FAILED. Do NOT repeat them.\n",
    ]

    for attempt in history.attempts:
        lines.append(f"### Attempt {attempt.iteration}")

        if attempt.selectors_used:
            shown = ", ".join(f"`{s}`" for s in attempt.selectors_used[:MAX_SELECTORS_SHOWN])
            extra = len(attempt.selectors_used) - MAX_SELECTORS_SHOWN
            if extra > 0:
                shown += f" (and {extra} more)"
            lines.append(f"**Selectors tried:** {shown}")

        if attempt.syntax_error:
            lines.append(f"**Syntax error:** {attempt.syntax_error[:200]}")

        lines.append(f"**Result:** {summarize_error(attempt.error_output)}\n")

    lines.extend(
        [
            "---\n",
            "**What to try differently:**",
            "- Use DIFFERENT selectors than those listed above",
            "- If selectors keep failing, use findProductGrid() to discover the main container",
            "- If data quality is low, inspect the actual DOM structure with agent-browser snapshot",
            "- If pagination isn't working, verify items actually change between pages\n",
        ]
    )
    return "\n".join(lines) + "\n"
