"""Static syntax check for candidate scripts.

Runs the interpreter in parse-only mode (``bash -n``) with the candidate on
stdin, so no temp file is written. A candidate that fails here is never
promoted to the current script.
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SYNTAX_CHECK_TIMEOUT_SECONDS = 5.0


async def check_syntax(
    script_text: str,
    shell: str = "bash",
    timeout_seconds: float = SYNTAX_CHECK_TIMEOUT_SECONDS,
) -> Optional[str]:
    """
    Check a script's syntax without executing it.

    Args:
        script_text: Candidate script
        shell: Interpreter whose ``-n`` mode is used
        timeout_seconds: Upper bound for the check

    Returns:
        None if the script parses, otherwise the interpreter's diagnostic
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            shell,
            "-n",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.error(f"[SyntaxCheck] Could not start {shell}: {e}")
        return str(e)

    try:
        _, stderr = await asyncio.wait_for(
            proc.communicate(script_text.encode("utf-8")), timeout=timeout_seconds
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return "Syntax check timed out"

    if proc.returncode == 0:
        return None

    diagnostic = stderr.decode("utf-8", errors="replace").strip()
    return diagnostic or f"Syntax check failed with code {proc.returncode}"
