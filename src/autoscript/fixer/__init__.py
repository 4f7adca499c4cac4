"""Fixer collaborators: contract, prompt building and concrete backends."""

from autoscript.fixer.base import FixRequest, Fixer
from autoscript.fixer.claude_cli import ClaudeCliFixer, extract_text_from_stream_json
from autoscript.fixer.prompt import build_fix_prompt, parse_fixed_script

__all__ = [
    "Fixer",
    "FixRequest",
    "ClaudeCliFixer",
    "build_fix_prompt",
    "parse_fixed_script",
    "extract_text_from_stream_json",
]
