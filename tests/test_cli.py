"""Tests for the autoscript command-line interface."""

import argparse
import json

import pytest

from autoscript import cli
from autoscript.config import Settings
from autoscript.models import ProbeResult, RepairOutcome
from autoscript.version import __version__

from conftest import TEST_ENDPOINT, make_payload


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run each command from an empty directory with no CDP_URL configured."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CDP_URL", raising=False)
    return tmp_path


class TestVersionAndHelp:
    def test_version(self, capsys):
        assert cli.main(["--version"]) == 0
        assert f"Autoscript {__version__}" in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 0
        assert "repair" in capsys.readouterr().out


class TestValidateCommand:
    def test_valid_output(self, workdir):
        output = workdir / "out.txt"
        output.write_text(make_payload(10))

        assert cli.main(["validate", str(output)]) == 0

    def test_invalid_output(self, workdir, capsys):
        output = workdir / "out.txt"
        output.write_text(make_payload(20, priced=15))

        assert cli.main(["validate", str(output)]) == 1
        assert "75%" in capsys.readouterr().out


class TestClassifyCommand:
    def test_json_output(self, workdir, capsys):
        stderr = workdir / "stderr.txt"
        stderr.write_text("jq: error (at <stdin>:0): Cannot iterate over string\n")

        assert cli.main(["classify", "--stderr", str(stderr), "--exit-code", "5", "--json"]) == 0

        errors = json.loads(capsys.readouterr().out)
        assert errors[0]["category"] == "JSON_PARSING"

    def test_timed_out_flag(self, workdir, capsys):
        assert cli.main(["classify", "--timed-out", "--json"]) == 0
        assert json.loads(capsys.readouterr().out)[0]["category"] == "TIMEOUT"


class TestProbeCommand:
    def test_missing_endpoint(self, workdir):
        assert cli.main(["probe"]) == 2

    def test_reachable(self, workdir, monkeypatch):
        async def fake_probe(endpoint, policy):
            assert endpoint == TEST_ENDPOINT
            return ProbeResult(connected=True, attempts=1)

        monkeypatch.setattr(cli, "probe", fake_probe)
        assert cli.main(["probe", "--cdp-url", TEST_ENDPOINT]) == 0

    def test_unreachable(self, workdir, monkeypatch):
        async def fake_probe(endpoint, policy):
            return ProbeResult(connected=False, error="ECONNREFUSED", attempts=1)

        monkeypatch.setattr(cli, "probe", fake_probe)
        assert cli.main(["probe", "--cdp-url", TEST_ENDPOINT]) == 2


class TestRepairCommand:
    def write_script(self, workdir):
        script = workdir / "laptops.sh"
        script.write_text("#!/bin/bash\necho start\n")
        return script

    def fake_loop(self, monkeypatch, outcome):
        calls = []

        async def fake_run_repair_loop(initial_script, task, policy, fixer):
            calls.append((initial_script, task, policy))
            return outcome

        monkeypatch.setattr(cli, "run_repair_loop", fake_run_repair_loop)
        return calls

    def test_missing_endpoint_is_config_error(self, workdir):
        script = self.write_script(workdir)
        assert cli.main(["repair", str(script), "--task", "List laptops"]) == 2

    def test_missing_script(self, workdir):
        assert cli.main(["repair", "nope.sh", "--task", "t", "--cdp-url", TEST_ENDPOINT]) == 1

    def test_success_writes_final_script(self, workdir, monkeypatch):
        script = self.write_script(workdir)
        outcome = RepairOutcome(success=True, iterations=2, final_script="#!/bin/bash\necho fixed\n")
        calls = self.fake_loop(monkeypatch, outcome)

        code = cli.main(
            ["repair", str(script), "--task", "List laptops", "--cdp-url", TEST_ENDPOINT]
        )

        assert code == 0
        assert (workdir / "generated" / "laptops.fixed.sh").read_text() == outcome.final_script
        initial, task, policy = calls[0]
        assert initial == "#!/bin/bash\necho start\n"
        assert task == "List laptops"
        assert policy.endpoint == TEST_ENDPOINT

    def test_policy_file_applied(self, workdir, monkeypatch):
        script = self.write_script(workdir)
        policy_file = workdir / "policy.yaml"
        policy_file.write_text("repair_policy:\n  max_iterations: 2\n")
        outcome = RepairOutcome(success=False, iterations=2, final_script="x", last_error="boom")
        calls = self.fake_loop(monkeypatch, outcome)

        code = cli.main(
            [
                "repair",
                str(script),
                "--task",
                "t",
                "--cdp-url",
                TEST_ENDPOINT,
                "--policy",
                str(policy_file),
                "--output",
                str(workdir / "final.sh"),
            ]
        )

        assert code == 1
        assert calls[0][2].max_iterations == 2
        assert (workdir / "final.sh").read_text() == "x"

    def test_stale_endpoint_exit_code(self, workdir, monkeypatch, capsys):
        script = self.write_script(workdir)
        outcome = RepairOutcome(
            success=False,
            iterations=0,
            final_script="#!/bin/bash\necho start\n",
            last_error="CDP connection unavailable: ECONNREFUSED",
            skipped_due_to_stale_endpoint=True,
        )
        self.fake_loop(monkeypatch, outcome)

        code = cli.main(
            ["repair", str(script), "--task", "t", "--cdp-url", TEST_ENDPOINT, "--json"]
        )

        assert code == 2
        payload = json.loads(capsys.readouterr().out)
        assert payload["skipped_due_to_stale_endpoint"] is True
        assert payload["iterations"] == 0


class TestArgumentValidation:
    def test_probe_rejects_zero_retries(self, workdir, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["probe", "--cdp-url", TEST_ENDPOINT, "--retries", "0"])

        assert exc_info.value.code == 2
        assert "must be at least 1" in capsys.readouterr().err

    def test_positive_int(self):
        assert cli.positive_int("3") == 3
        with pytest.raises(argparse.ArgumentTypeError):
            cli.positive_int("zero")

    def test_invalid_policy_section_is_config_error(self, workdir):
        script = workdir / "laptops.sh"
        script.write_text("#!/bin/bash\necho start\n")
        policy_file = workdir / "policy.yaml"
        policy_file.write_text("repair_policy:\n  probe: 5\n")

        code = cli.main(
            [
                "repair",
                str(script),
                "--task",
                "t",
                "--cdp-url",
                TEST_ENDPOINT,
                "--policy",
                str(policy_file),
            ]
        )

        assert code == 2


class TestSettingsLoading:
    def test_main_uses_get_settings(self, workdir, monkeypatch):
        output = workdir / "out.txt"
        output.write_text(make_payload(10, priced=8))
        calls = []

        def fake_get_settings():
            calls.append(True)
            return Settings(_env_file=None, validation_min_price_rate=0.5)

        monkeypatch.setattr(cli, "get_settings", fake_get_settings)

        assert cli.main(["validate", str(output)]) == 0
        assert calls == [True]
