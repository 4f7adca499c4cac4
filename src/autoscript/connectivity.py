"""Connectivity probe for the remote browser endpoint.

Checks, once per repair session, that the endpoint answers a no-op command
(``agent-browser --cdp <endpoint> eval true``) before any iteration runs.
Transient failures are retried with exponential backoff:

    delay = min(initial_delay * 2**retry, max_delay)

An actively refused connection is definitive and returns immediately.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from .models import ProbePolicy, ProbeResult

logger = logging.getLogger(__name__)

DEFAULT_PROBE_COMMAND = ("agent-browser",)

STALE_MARKERS = (
    "Resource temporarily unavailable",
    "os error 35",
    "WebSocket",
    "ECONNREFUSED",
    "connection closed",
)

NON_RETRYABLE_MARKER = "ECONNREFUSED"

Sleeper = Callable[[float], Awaitable[None]]


def backoff_delay_ms(retry: int, policy: ProbePolicy) -> int:
    """Delay before the attempt following ``retry`` (0-based)."""
    return min(policy.initial_delay_ms * (2**retry), policy.max_delay_ms)


async def probe_once(
    endpoint: str,
    timeout_ms: int,
    command: Sequence[str] = DEFAULT_PROBE_COMMAND,
) -> ProbeResult:
    """
    Run a single no-op command against the endpoint.

    Args:
        endpoint: Opaque endpoint reference
        timeout_ms: Per-attempt timeout
        command: Browser CLI invocation prefix

    Returns:
        ProbeResult with attempts=1
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            "--cdp",
            endpoint,
            "eval",
            "true",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return ProbeResult(connected=False, error=str(e), attempts=1)

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return ProbeResult(connected=False, error="CDP connectivity check timed out", attempts=1)

    combined = (stdout + stderr).decode("utf-8", errors="replace")
    if proc.returncode != 0 or any(marker in combined for marker in STALE_MARKERS):
        return ProbeResult(
            connected=False,
            error=combined.strip() or f"Exit code: {proc.returncode}",
            attempts=1,
        )
    return ProbeResult(connected=True, attempts=1)


async def probe(
    endpoint: str,
    policy: Optional[ProbePolicy] = None,
    command: Sequence[str] = DEFAULT_PROBE_COMMAND,
    sleep: Sleeper = asyncio.sleep,
) -> ProbeResult:
    """
    Probe the endpoint with retry and exponential backoff.

    Args:
        endpoint: Opaque endpoint reference
        policy: Retry policy (defaults to ProbePolicy())
        command: Browser CLI invocation prefix
        sleep: Awaitable sleep, injectable for tests

    Returns:
        ProbeResult with the number of attempts made
    """
    policy = policy or ProbePolicy()
    last_error: Optional[str] = None

    for retry in range(policy.max_retries):
        attempt = retry + 1
        result = await probe_once(endpoint, policy.attempt_timeout_ms, command)

        if result.connected:
            logger.info(f"[Probe] Endpoint reachable (attempt {attempt})")
            return ProbeResult(connected=True, attempts=attempt)

        last_error = result.error
        logger.debug(f"[Probe] Attempt {attempt}/{policy.max_retries} failed: {last_error}")

        if last_error and NON_RETRYABLE_MARKER in last_error:
            logger.warning("[Probe] Connection refused; not retrying")
            return ProbeResult(connected=False, error=last_error, attempts=attempt)

        if retry < policy.max_retries - 1:
            await sleep(backoff_delay_ms(retry, policy) / 1000)

    logger.warning(f"[Probe] Endpoint unavailable after {policy.max_retries} attempts")
    return ProbeResult(connected=False, error=last_error, attempts=policy.max_retries)
