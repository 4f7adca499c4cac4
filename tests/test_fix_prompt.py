"""Tests for fix prompt construction and script extraction."""

from autoscript.fixer.base import FixRequest
from autoscript.fixer.claude_cli import extract_text_from_stream_json
from autoscript.fixer.prompt import (
    SCRIPT_PREAMBLE,
    build_fix_prompt,
    heuristic_guidance,
    parse_fixed_script,
)
from autoscript.history import IterationHistory

from conftest import TEST_ENDPOINT

FIXED = """#!/bin/bash
set -e
CDP="${CDP_URL:?Required}"
agent-browser --cdp "$CDP" open "https://example.com/laptops"
RAW_DATA=$(agent-browser --cdp "$CDP" eval '(function() { return JSON.stringify({items: []}); })();')
echo "$RAW_DATA"
""".strip()


def make_request(error_text="[STDERR]\nboom", history=None, failed_line=None):
    return FixRequest(
        task="List the first 10 laptops with prices",
        current_script="#!/bin/bash\nagent-browser --cdp \"$CDP\" open https://example.com\n",
        error_text=error_text,
        endpoint=TEST_ENDPOINT,
        history=history or IterationHistory(task_description="List the first 10 laptops"),
        failed_line_number=failed_line,
    )


class TestBuildFixPrompt:
    """Tests for build_fix_prompt."""

    def test_contains_task_script_and_error(self):
        prompt = build_fix_prompt(make_request(failed_line=7))

        assert "## Original Task\nList the first 10 laptops with prices" in prompt
        assert "open https://example.com" in prompt
        assert "[STDERR]\nboom" in prompt
        assert f"CDP_URL is available: {TEST_ENDPOINT}" in prompt
        assert "approximately line 7" in prompt
        assert 'CDP="${CDP_URL:?Required}"' in prompt

    def test_no_history_section_on_first_fix(self):
        assert "Previous Fix Attempts" not in build_fix_prompt(make_request())

    def test_includes_history(self):
        history = IterationHistory(task_description="t").append(1, "echo", "[STDERR]\njq: error")
        prompt = build_fix_prompt(make_request(history=history))

        assert "## Previous Fix Attempts (1 so far)" in prompt

    def test_primary_error_guidance(self):
        prompt = build_fix_prompt(make_request(error_text="[STDERR]\njq: error: Cannot iterate over string"))
        assert "JSON PARSING ERROR" in prompt
        assert "unwrap_json" in prompt


class TestHeuristicGuidance:
    """Tests for heuristic_guidance."""

    def test_fragile_selectors(self):
        guidance = heuristic_guidance("querySelector('.a-offscreen')", "")
        assert "FRAGILE" in guidance

    def test_zero_items(self):
        assert "NO ITEMS EXTRACTED" in heuristic_guidance("", "No items extracted")

    def test_low_page_counts(self):
        guidance = heuristic_guidance("", "Found 4 items on page 2")
        assert "WRONG SELECTOR" in guidance

    def test_price_issues(self):
        guidance = heuristic_guidance("", "Only 40% of items have valid prices (need 90%+)")
        assert "PRICES" in guidance

    def test_not_found(self):
        assert "404" in heuristic_guidance("", "Page Not Found")

    def test_nothing_to_say(self):
        assert heuristic_guidance("echo ok", "exit 1") == ""


class TestParseFixedScript:
    """Tests for parse_fixed_script."""

    def test_fenced_bash_block(self):
        response = f"Here is the fix:\n\n```bash\n{FIXED}\n```\n"
        assert parse_fixed_script(response) == FIXED

    def test_adds_preamble_when_missing(self):
        response = '```sh\nagent-browser --cdp "$CDP" open "https://example.com"\n```'
        script = parse_fixed_script(response)

        assert script.startswith(SCRIPT_PREAMBLE)
        assert script.endswith('open "https://example.com"')

    def test_best_scoring_block_wins(self):
        snippet = 'agent-browser --cdp "$CDP" eval \'document.title\''
        response = f"Test with:\n```bash\n{snippet}\n```\nFull script:\n```bash\n{FIXED}\n```"

        assert parse_fixed_script(response) == FIXED

    def test_ignores_blocks_without_browser_commands(self):
        assert parse_fixed_script("```bash\necho hello\n```") is None

    def test_bare_shebang_response(self):
        assert parse_fixed_script(FIXED) == FIXED

    def test_shebang_inside_prose(self):
        response = f"I fixed the selector.\n\n{FIXED}\n\n## Explanation\nThe grid changed."
        assert parse_fixed_script(response) == FIXED

    def test_empty_response(self):
        assert parse_fixed_script("") is None
        assert parse_fixed_script("I could not fix this script.") is None


class TestExtractTextFromStreamJson:
    """Tests for extract_text_from_stream_json."""

    def test_collects_text_events(self):
        output = "\n".join(
            [
                '{"type": "system", "subtype": "init"}',
                '{"type": "assistant", "message": {"content": [{"type": "text", "text": "part one"},'
                ' {"type": "tool_use", "name": "Bash"}]}}',
                '{"type": "content_block_delta", "delta": {"text": "part two"}}',
                '{"type": "result", "result": "final"}',
                "not json at all",
            ]
        )
        assert extract_text_from_stream_json(output) == "part one\npart two\nfinal"

    def test_empty(self):
        assert extract_text_from_stream_json("") == ""
