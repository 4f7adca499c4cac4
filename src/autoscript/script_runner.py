"""Script execution against a remote browser endpoint.

Runs a bash automation script as a subprocess with ``CDP_URL`` injected,
drains stdout/stderr concurrently, and enforces a hard timeout with
two-phase termination (SIGTERM, then SIGKILL after a grace window).

There are no retries here; retry policy belongs to the orchestrator.

Usage:
    runner = ScriptRunner(work_dir=Path("generated/.runs"))
    result = await runner.execute(script, endpoint, timeout_ms=300_000)
    if not result.succeeded:
        print(format_error_output(result))
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import time
import uuid
from pathlib import Path
from typing import List, Optional

from .data_quality import percent
from .models import ExecutionResult

logger = logging.getLogger(__name__)

STDOUT_TAIL_CHARS = 2000
DEFAULT_KILL_GRACE_SECONDS = 2.0

_LINE_RE = re.compile(r"(?:line\s+|:)(\d+)(?:\s*:|\s*$)", re.IGNORECASE)
_BASH_LINE_RE = re.compile(r"\.sh:\s*line\s+(\d+):", re.IGNORECASE)


async def _drain(stream: Optional[asyncio.StreamReader], sink: List[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        sink.append(chunk)


def _send(proc: asyncio.subprocess.Process, sig: int, process_group: bool) -> None:
    if process_group:
        os.killpg(proc.pid, sig)
    else:
        proc.send_signal(sig)


async def terminate_process(
    proc: asyncio.subprocess.Process,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    process_group: bool = False,
) -> None:
    """
    Request a graceful stop, then force-kill after ``grace_seconds``.

    With ``process_group`` the signals go to the whole group led by ``proc``
    (started with ``start_new_session=True``), so children of the script are
    stopped with it. Group members still alive after the leader exits are
    killed as well.
    """
    if proc.returncode is not None:
        return
    try:
        _send(proc, signal.SIGTERM, process_group)
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"[ScriptRunner] pid {proc.pid} ignored SIGTERM; sending SIGKILL")
        try:
            _send(proc, signal.SIGKILL, process_group)
        except ProcessLookupError:
            return
        await proc.wait()
        return

    if process_group:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass


def parse_failed_line_number(stderr: str, stdout: str) -> Optional[int]:
    """Best-effort line number of the failing command."""
    combined = f"{stderr}\n{stdout}"
    match = _LINE_RE.search(combined) or _BASH_LINE_RE.search(combined)
    return int(match.group(1)) if match else None


_ALL_ITEMS_RE = re.compile(r"\ball\b", re.IGNORECASE)
_TOTAL_EXTRACTED_RE = re.compile(r'"totalExtracted":\s*(\d+)')
_PAGE_COUNT_RE = re.compile(r"(\d+)\s*(?:products?|items?|results?)", re.IGNORECASE)
_PAGE_EXTRACTION_RE = re.compile(r"Found (\d+) items on page (\d+)")
_SAMPLE_ITEM_RE = re.compile(r'Sample item:[\s\S]*?"name":\s*"([^"]+)"')
_DATA_FIELD_RE = re.compile(r'\\?"(?:name|title|price|url|id|rank)\\?":\s*\\?["\d\[{]')
_NOT_FOUND_RE = re.compile(
    r"(?:page[\s-]?not[\s-]?found|error[\s:_-]*404|404[\s:_-]*(?:not[\s-]?found|error))",
    re.IGNORECASE,
)
_EMPTY_ARRAY_LINE_RE = re.compile(r'^(?:\s*"\[\]"\s*|\s*\[\]\s*)$', re.MULTILINE)
_EMPTY_TAIL_RE = re.compile(r"^\s*(?:\[\s*\]|\{\s*\})\s*$", re.MULTILINE)
_UNDEFINED_RE = re.compile(r"^(?:undefined|null)$", re.MULTILINE)
_REQUESTED_COUNT_RE = re.compile(
    r"(?:top|first|get|extract|scrape)\s+(\d+)\s+"
    r"(?:items?|tokens?|products?|results?|rows?|entries?|records?)",
    re.IGNORECASE,
)
_JSON_OBJECT_RES = [
    re.compile(r'\{\s*\\?"(?:rank|id|name|title)\\?":'),
    re.compile(r'\{\s*\\"(?:rank|id|name|title)\\":'),
    # Escaped JSON with literal \n between entries
    re.compile(r'\\n\s*\{\s*\\n\s*\\"rank\\":'),
]
_ZERO_COUNT_RE = re.compile(r'"(?:total|count|length)":\s*0', re.IGNORECASE)
_EMPTY_JSON_ARRAY_RE = re.compile(r'"(?:tokens|results|items|data|entries|records)":\s*\[\s*\]')
_INTERMEDIATE_SUCCESS_RE = re.compile(
    r'"count":\s*[1-9]|extraction complete|Page \d+', re.IGNORECASE
)
_JSON_ARRAY_RE = re.compile(r"\[\s*\{[^}]+\}")
_FINAL_SECTION_RE = re.compile(r"FINAL|RESULT|COMBINED|OUTPUT|TOTAL", re.IGNORECASE)
_TOTAL_COUNT_RE = re.compile(r"Total (?:rows|items|results|entries)[:\s]+(\d+)", re.IGNORECASE)
_ARRAY_OBJECT_RE = re.compile(r"[\[,]\s*\{")
_BASH_RUNTIME_RES = [
    re.compile(r"integer expression expected", re.IGNORECASE),
    re.compile(r"syntax error: operand expected", re.IGNORECASE),
    re.compile(r"unbound variable", re.IGNORECASE),
    re.compile(r"bad substitution", re.IGNORECASE),
]

ACCESS_DENIED_MARKERS = ("Access Denied", "403 Forbidden")
JS_ERROR_MARKERS = ("SyntaxError:", "TypeError:", "ReferenceError:")
DOUBLE_ENCODING_MARKERS = ("cannot be added", "cannot be subtracted", "Cannot iterate over string")
NAVIGATION_MARKERS = ("net::ERR_", "Navigation failed")
CDP_STALE_MARKERS = (
    "Resource temporarily unavailable",
    "os error 35",
    "WebSocket",
    "ECONNREFUSED",
    "connection closed",
)


def _contains_any(text: str, markers) -> bool:
    return any(marker in text for marker in markers)


def detect_semantic_error(
    stdout: str, stderr: str, task_description: Optional[str] = None
) -> Optional[str]:
    """
    Detect runs that exited cleanly but did not accomplish the task.

    The returned text is diagnostic only: it is prefixed to the error output
    so both the classifier and the fixer see it.

    Args:
        stdout: Script stdout
        stderr: Script stderr
        task_description: Original task, used for "all items" and count checks

    Returns:
        Description of the semantic problem, or None
    """
    is_all_items_task = bool(task_description and _ALL_ITEMS_RE.search(task_description))
    extracted_match = _TOTAL_EXTRACTED_RE.search(stdout)
    extracted = int(extracted_match.group(1)) if extracted_match else None

    if extracted is not None and is_all_items_task:
        page_count = _PAGE_COUNT_RE.search(stdout)
        if page_count and int(page_count.group(1)) > extracted * 1.2:
            return (
                f"INCOMPLETE: Page shows {page_count.group(1)} items but only extracted "
                f"{extracted}. Navigate to the full listing page, then scroll more or "
                "handle pagination."
            )
        if extracted < 20:
            return (
                f"INCOMPLETE: Only extracted {extracted} items. For \"all items\" tasks this "
                "is likely incomplete. Your selector may be targeting a carousel/ads section "
                "instead of the main product grid."
            )

    pages = [int(m.group(1)) for m in _PAGE_EXTRACTION_RE.finditer(stdout)]
    if len(pages) > 3:
        low = sum(1 for count in pages if count < 10)
        if low > len(pages) * 0.5:
            counts = ", ".join(str(c) for c in pages)
            return (
                f"WRONG_SELECTOR: Pages are returning very few items ({counts}). Your selector "
                "is likely targeting a carousel or ads section instead of the main product grid."
            )

    samples = [m.group(1) for m in _SAMPLE_ITEM_RE.finditer(stdout)]
    if len(samples) > 3:
        first = samples[0]
        same = samples.count(first)
        if same > len(samples) * 0.5:
            return (
                f'WRONG_SELECTOR: Same item "{first[:50]}..." appears on {same}/{len(samples)} '
                "pages. Your selector targets a sticky element that doesn't change between pages."
            )

    has_substantial_data = len(_DATA_FIELD_RE.findall(stdout)) >= 5
    low_count_for_404 = extracted is not None and 0 < extracted < 15
    if _NOT_FOUND_RE.search(stderr) or (
        _NOT_FOUND_RE.search(stdout)
        and (not has_substantial_data or (is_all_items_task and low_count_for_404))
    ):
        return "Navigation landed on 404/error page - URL may have changed or redirected"

    if _EMPTY_ARRAY_LINE_RE.search(stdout):
        return "Script returned empty results []"

    # Data printed mid-run, then an empty final result
    has_intermediate = bool(_INTERMEDIATE_SUCCESS_RE.search(stdout))
    if has_intermediate and (_ZERO_COUNT_RE.search(stdout) or _EMPTY_JSON_ARRAY_RE.search(stdout)):
        tail = "\n".join(stdout.strip().split("\n")[-20:])
        if _EMPTY_JSON_ARRAY_RE.search(tail) or _ZERO_COUNT_RE.search(tail):
            return (
                "Script extracted data but final result is empty "
                "(likely variable scoping issue between evals)"
            )

    final_lines = "\n".join(stdout.strip().split("\n")[-5:])
    if _EMPTY_TAIL_RE.search(final_lines):
        return "Script returned empty result"

    if (
        len(_JSON_ARRAY_RE.findall(stdout)) >= 2
        and not _FINAL_SECTION_RE.search(stdout)
        and not has_substantial_data
    ):
        return "Script has multiple extraction outputs but no final combined result section"

    total_match = _TOTAL_COUNT_RE.search(stdout)
    if total_match:
        total = int(total_match.group(1))
        object_count = len(_ARRAY_OBJECT_RE.findall(stdout))
        if total >= 50 and object_count < total * 0.25:
            return f"Incomplete extraction: Found {total} items but only extracted ~{object_count}"

    combined = f"{stdout}\n{stderr}"

    if _contains_any(stderr, ACCESS_DENIED_MARKERS) or (
        _contains_any(combined, ACCESS_DENIED_MARKERS) and not has_substantial_data
    ):
        return "Access denied to page"

    if _contains_any(stderr, JS_ERROR_MARKERS):
        return "JavaScript error in eval command"

    if "jq: error" in stderr or _contains_any(combined, DOUBLE_ENCODING_MARKERS):
        return (
            "JSON_DOUBLE_ENCODING: agent-browser eval returns string-encoded JSON. "
            'Add unwrap_json() helper and use: DATA=$(unwrap_json "$RAW_OUTPUT")'
        )

    if _contains_any(stderr, NAVIGATION_MARKERS) or (
        _contains_any(combined, NAVIGATION_MARKERS) and not has_substantial_data
    ):
        return "Navigation error"

    if _UNDEFINED_RE.search(stdout):
        return "Script returned undefined/null (likely variable not accessible between evals)"

    for pattern in _BASH_RUNTIME_RES:
        runtime = pattern.search(combined)
        if runtime:
            return f"Bash runtime error: {runtime.group(0)}"

    if _contains_any(combined, CDP_STALE_MARKERS):
        return "CDP_STALE: Browser session is no longer available"

    if task_description:
        requested = _REQUESTED_COUNT_RE.search(task_description)
        if requested:
            expected = int(requested.group(1))
            if extracted is not None:
                if extracted < expected * 0.7:
                    return (
                        f"Incomplete extraction: Task requested {expected} items but only "
                        f"extracted {extracted} ({percent(extracted / expected)}%). "
                        "Need more scrolling or pagination."
                    )
                return None

            object_count = max(len(rx.findall(stdout)) for rx in _JSON_OBJECT_RES)
            if object_count < expected * 0.7:
                return (
                    f"Incomplete extraction: Task requested {expected} items but only extracted "
                    f"~{object_count} ({percent(object_count / expected)}%). This often "
                    "indicates a virtualized/lazy-loaded table that requires scroll-and-accumulate."
                )

    return None



def format_error_output(result: ExecutionResult) -> str:
    """Render an execution result as the error text handed to the fixer."""
    parts: List[str] = []

    if result.semantic_error:
        parts.append(f"[SEMANTIC ERROR] {result.semantic_error}")
    if result.timed_out:
        parts.append("[TIMEOUT] Script execution timed out")
    if result.stderr:
        parts.append(f"[STDERR]\n{result.stderr}")
    if result.stdout:
        stdout = result.stdout
        if len(stdout) > STDOUT_TAIL_CHARS:
            stdout = stdout[-STDOUT_TAIL_CHARS:] + "\n... (truncated)"
        parts.append(f"[STDOUT]\n{stdout}")
    if result.exit_code is not None and result.exit_code != 0:
        parts.append(f"[EXIT CODE] {result.exit_code}")
    if result.failed_line_number:
        parts.append(f"[FAILED AT] Line {result.failed_line_number}")

    return "\n".join(parts).strip()


class ScriptRunner:
    """Executes scripts as subprocesses under a hard timeout."""

    def __init__(
        self,
        work_dir: Path,
        shell: str = "bash",
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ):
        """
        Initialize script runner.

        Args:
            work_dir: Directory where per-run script files are written
            shell: Interpreter used to run scripts
            kill_grace_seconds: Delay between SIGTERM and SIGKILL on timeout
        """
        self.work_dir = Path(work_dir)
        self.shell = shell
        self.kill_grace_seconds = kill_grace_seconds

    def write_script(self, script: str, run_tag: str) -> Path:
        """Write a script under a run-scoped unique filename."""
        self.work_dir.mkdir(parents=True, exist_ok=True)
        path = self.work_dir / f"{run_tag}.sh"
        path.write_text(script, encoding="utf-8")
        path.chmod(0o755)
        return path

    async def execute(
        self,
        script: str,
        endpoint: str,
        timeout_ms: int,
        task_hint: Optional[str] = None,
        run_tag: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Run a script against the endpoint.

        Args:
            script: Script source
            endpoint: Browser endpoint, exported as CDP_URL
            timeout_ms: Hard timeout in milliseconds
            task_hint: Task description for semantic checks
            run_tag: Unique name for the script file (defaults to a uuid)

        Returns:
            ExecutionResult; spawn failures are reported with exit_code None
        """
        path = self.write_script(script, run_tag or uuid.uuid4().hex)
        env = {**os.environ, "CDP_URL": endpoint}
        started = time.monotonic()

        logger.debug(f"[ScriptRunner] Running {path} (timeout {timeout_ms}ms)")

        try:
            proc = await asyncio.create_subprocess_exec(
                self.shell,
                str(path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"[ScriptRunner] Failed to start {self.shell}: {e}")
            return ExecutionResult(
                stdout="",
                stderr=str(e),
                exit_code=None,
                duration_ms=(time.monotonic() - started) * 1000,
            )

        out_chunks: List[bytes] = []
        err_chunks: List[bytes] = []
        readers = asyncio.gather(_drain(proc.stdout, out_chunks), _drain(proc.stderr, err_chunks))
        timed_out = False

        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"[ScriptRunner] Timed out after {timeout_ms}ms; terminating")
            await terminate_process(proc, self.kill_grace_seconds, process_group=True)

        try:
            await asyncio.wait_for(readers, timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            # Orphaned grandchildren can hold the pipes open
            logger.warning("[ScriptRunner] Output streams still open after exit; abandoning")

        stdout = b"".join(out_chunks).decode("utf-8", errors="replace")
        stderr = b"".join(err_chunks).decode("utf-8", errors="replace")

        result = ExecutionResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=proc.returncode,
            timed_out=timed_out,
            failed_line_number=parse_failed_line_number(stderr, stdout),
            semantic_error=detect_semantic_error(stdout, stderr, task_hint),
            duration_ms=(time.monotonic() - started) * 1000,
        )

        logger.debug(
            f"[ScriptRunner] exit={result.exit_code} timed_out={timed_out} "
            f"duration={result.duration_ms:.0f}ms"
        )
        return result
