"""Tests for the Claude CLI and Anthropic API fixers."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from autoscript.fixer import Fixer, FixRequest
from autoscript.fixer.anthropic_fixer import AnthropicFixer
from autoscript.fixer.claude_cli import MAX_FIX_TURNS, ClaudeCliFixer
from autoscript.history import IterationHistory

from conftest import TEST_ENDPOINT, requires_bash

FIXED = '#!/bin/bash\nset -e\nCDP="${CDP_URL:?Required}"\nagent-browser --cdp "$CDP" open "https://example.com"'


def make_request(timeout_ms=10_000):
    return FixRequest(
        task="Open the example page",
        current_script="#!/bin/bash\nagent-browser --cdp \"$CDP\" open htp://bad\n",
        error_text="[STDERR]\nnet::ERR_INVALID_URL",
        endpoint=TEST_ENDPOINT,
        history=IterationHistory(task_description="Open the example page"),
        timeout_ms=timeout_ms,
    )


def fake_cli(tmp_path, body):
    """Write a stand-in for the claude binary and return its command prefix."""
    path = tmp_path / "fake-claude.sh"
    path.write_text(body)
    return ("bash", str(path))


class TestClaudeCliFixer:
    """Tests for ClaudeCliFixer."""

    def test_satisfies_protocol(self):
        assert isinstance(ClaudeCliFixer(model="claude-test"), Fixer)

    def test_command_caps_turns(self):
        fixer = ClaudeCliFixer(model="claude-test", max_turns=25)
        command = fixer.build_command()

        assert command[:2] == ["claude", "-p"]
        assert command[command.index("--max-turns") + 1] == str(MAX_FIX_TURNS)
        assert command[command.index("--model") + 1] == "claude-test"
        assert "stream-json" in command

    def test_smaller_turn_budget_kept(self):
        assert ClaudeCliFixer(model="m", max_turns=5).max_turns == 5

    @requires_bash
    @pytest.mark.asyncio
    async def test_returns_parsed_script(self, tmp_path):
        event = {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": f"```bash\n{FIXED}\n```"}]},
        }
        output = tmp_path / "stream.jsonl"
        output.write_text(json.dumps(event) + "\n")
        command = fake_cli(
            tmp_path,
            f'cat > "{tmp_path}/prompt.txt"\necho "$CDP_URL" > "{tmp_path}/env.txt"\ncat "{output}"\n',
        )

        script = await ClaudeCliFixer(model="m", command=command).request_fix(make_request())

        assert script == FIXED
        assert "net::ERR_INVALID_URL" in (tmp_path / "prompt.txt").read_text()
        assert (tmp_path / "env.txt").read_text().strip() == TEST_ENDPOINT

    @requires_bash
    @pytest.mark.asyncio
    async def test_nonzero_exit_is_no_candidate(self, tmp_path):
        command = fake_cli(tmp_path, "cat > /dev/null\necho 'rate limited' >&2\nexit 1\n")
        assert await ClaudeCliFixer(model="m", command=command).request_fix(make_request()) is None

    @requires_bash
    @pytest.mark.asyncio
    async def test_timeout_is_no_candidate(self, tmp_path):
        command = fake_cli(tmp_path, "exec sleep 10\n")
        fixer = ClaudeCliFixer(model="m", command=command)

        assert await fixer.request_fix(make_request(timeout_ms=200)) is None

    @pytest.mark.asyncio
    async def test_missing_binary_is_no_candidate(self, tmp_path):
        fixer = ClaudeCliFixer(model="m", command=(str(tmp_path / "claude"),))
        assert await fixer.request_fix(make_request()) is None


class TestAnthropicFixer:
    """Tests for AnthropicFixer with a fake client."""

    def make_client(self, text=None, side_effect=None):
        client = MagicMock()
        response = SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])
        client.messages.create = AsyncMock(return_value=response, side_effect=side_effect)
        return client

    @pytest.mark.asyncio
    async def test_returns_parsed_script(self):
        client = self.make_client(text=f"Fixed:\n```bash\n{FIXED}\n```")
        fixer = AnthropicFixer(model="claude-test", client=client)

        script = await fixer.request_fix(make_request())

        assert script == FIXED
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert "net::ERR_INVALID_URL" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_unparseable_response(self):
        client = self.make_client(text="I am not sure what to change.")
        fixer = AnthropicFixer(model="m", client=client)

        assert await fixer.request_fix(make_request()) is None

    @pytest.mark.asyncio
    async def test_timeout_is_no_candidate(self):
        client = self.make_client(side_effect=asyncio.TimeoutError())
        fixer = AnthropicFixer(model="m", client=client)

        assert await fixer.request_fix(make_request()) is None
