"""Tests for the bash syntax validator."""

import pytest

from autoscript.syntax_check import check_syntax

from conftest import requires_bash


@requires_bash
class TestCheckSyntax:
    """Tests for check_syntax with a real bash."""

    @pytest.mark.asyncio
    async def test_valid_script(self):
        script = '#!/bin/bash\nset -e\nCDP="${CDP_URL:?Required}"\nfor i in 1 2; do echo "$i"; done\n'
        assert await check_syntax(script) is None

    @pytest.mark.asyncio
    async def test_invalid_script_returns_diagnostic(self):
        error = await check_syntax("#!/bin/bash\nif [ -z \"$X\" ]; then\necho missing\n")
        assert error
        assert "syntax error" in error or "unexpected end of file" in error

    @pytest.mark.asyncio
    async def test_script_is_not_executed(self, tmp_path):
        marker = tmp_path / "ran"
        assert await check_syntax(f"touch {marker}\n") is None
        assert not marker.exists()


class TestCheckSyntaxSpawnFailure:
    """Spawn failures surface as a diagnostic, not an exception."""

    @pytest.mark.asyncio
    async def test_missing_shell(self, tmp_path):
        error = await check_syntax("echo hi", shell=str(tmp_path / "no-such-shell"))
        assert error
