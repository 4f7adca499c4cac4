"""Fixer backed by the Anthropic Messages API.

Sends the same fix prompt as the CLI fixer in a single request. It cannot
inspect the live DOM, but needs no local agent installation.
"""

import asyncio
import logging
import os
from typing import Optional

from anthropic import APIError, AsyncAnthropic

from .base import FixRequest
from .prompt import build_fix_prompt, parse_fixed_script

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You repair bash browser-automation scripts that drive a remote browser with "
    "`agent-browser --cdp`. Reply with one complete script in a ```bash code block."
)


class AnthropicFixer:
    """Requests fixes from Claude through the Anthropic SDK."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        max_tokens: int = 8192,
        client: Optional[AsyncAnthropic] = None,
    ):
        """
        Initialize API fixer.

        Args:
            model: Claude model identifier
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            max_tokens: Response token cap
            client: Pre-built client (tests inject a fake here)
        """
        self.model = model
        self.max_tokens = max_tokens
        self.client = client or AsyncAnthropic(api_key=api_key or os.getenv("ANTHROPIC_API_KEY"))

    async def request_fix(self, request: FixRequest) -> Optional[str]:
        prompt = build_fix_prompt(request)

        try:
            response = await asyncio.wait_for(
                self.client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=0.2,
                ),
                timeout=request.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[Fixer] Fix request timed out after {request.timeout_ms / 1000:.0f}s")
            return None
        except APIError as e:
            logger.warning(f"[Fixer] Anthropic API error: {e}")
            return None

        text = "\n".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        script = parse_fixed_script(text)
        if script is None:
            logger.warning(f"[Fixer] Could not parse script from response ({len(text)} chars)")
        return script
