"""Fixer backed by the ``claude`` command-line agent.

The prompt is piped to ``claude -p`` with the Bash tool allowed, so the
agent can inspect the live DOM through ``agent-browser`` while it works.
Output is requested as stream-json and the text blocks are reassembled
before the script is parsed out.
"""

import asyncio
import json
import logging
import os
from typing import List, Optional, Sequence

from ..exceptions import FixerError
from ..script_runner import terminate_process
from .base import FixRequest
from .prompt import build_fix_prompt, parse_fixed_script

logger = logging.getLogger(__name__)

MAX_FIX_TURNS = 15


def extract_text_from_stream_json(output: str) -> str:
    """
    Collect assistant text from ``--output-format stream-json`` output.

    Args:
        output: Raw stdout of the claude process

    Returns:
        Concatenated text content
    """
    parts: List[str] = []

    for line in output.split("\n"):
        if not line.strip().startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            if "#!/bin/bash" in line or "agent-browser" in line or "```" in line:
                parts.append(line)
            continue

        event_type = event.get("type")
        if event_type == "assistant":
            for block in (event.get("message") or {}).get("content") or []:
                if block.get("type") == "text":
                    parts.append(block.get("text", ""))
        elif event_type == "result" and event.get("result"):
            parts.append(event["result"])
        elif event_type == "content_block_delta" and (event.get("delta") or {}).get("text"):
            parts.append(event["delta"]["text"])

    return "\n".join(parts)


class ClaudeCliFixer:
    """Requests fixes from the claude CLI."""

    def __init__(
        self,
        model: str,
        max_turns: int = 25,
        command: Sequence[str] = ("claude",),
    ):
        """
        Initialize CLI fixer.

        Args:
            model: Model name passed to ``--model``
            max_turns: Configured turn budget (capped at MAX_FIX_TURNS)
            command: CLI invocation prefix
        """
        self.model = model
        self.max_turns = min(max_turns, MAX_FIX_TURNS)
        self.command = tuple(command)

    def build_command(self) -> List[str]:
        return [
            *self.command,
            "-p",
            "--model",
            self.model,
            "--max-turns",
            str(self.max_turns),
            "--allowedTools",
            "Bash",
            "--output-format",
            "stream-json",
            "--verbose",
        ]

    async def _invoke(self, prompt: str, endpoint: str, timeout_ms: int) -> str:
        """
        Run the CLI once and return its raw stdout.

        Raises:
            FixerError: If the CLI cannot start, times out or exits non-zero
        """
        env = {**os.environ, "CDP_URL": endpoint}

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_command(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise FixerError(f"Could not start claude CLI: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(prompt.encode("utf-8")),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            await terminate_process(proc)
            raise FixerError(f"Fix request timed out after {timeout_ms / 1000:.0f}s")

        if proc.returncode != 0:
            raise FixerError(
                f"claude exited with code {proc.returncode}: "
                f"{stderr.decode('utf-8', errors='replace')[:300]}",
                status_code=proc.returncode,
            )

        return stdout.decode("utf-8", errors="replace")

    async def request_fix(self, request: FixRequest) -> Optional[str]:
        prompt = build_fix_prompt(request)

        try:
            raw = await self._invoke(prompt, request.endpoint, request.timeout_ms)
        except FixerError as e:
            logger.warning(f"[Fixer] {e}")
            return None

        text = extract_text_from_stream_json(raw)
        if len(text.strip()) < 50:
            logger.warning(f"[Fixer] Fix response appears empty or too short ({len(text)} chars)")

        script = parse_fixed_script(text)
        if script is None and len(text) > 100:
            preview = text[:200].replace("\n", "\\n")
            logger.warning(f"[Fixer] Could not parse script from response: {preview}...")
        return script
