"""Command-line interface for Autoscript.

Usage:
    autoscript repair SCRIPT --task "..."   # Run the repair loop on a script
    autoscript probe                        # Check the browser endpoint
    autoscript classify --stderr err.txt    # Classify captured output
    autoscript validate output.txt          # Check extracted data quality

Exit codes: 0 success, 1 failure, 2 stale endpoint or configuration error.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import (
    Settings,
    build_repair_policy,
    get_settings,
    load_policy_overrides,
    require_endpoint,
)
from .connectivity import probe
from .data_quality import validate_extracted_data
from .error_classifier import classify_errors
from .exceptions import ConfigurationError
from .fixer.base import Fixer
from .logging_config import configure_logging, setup_structured_logging
from .models import ClassifiedError, ProbePolicy, QualityThresholds, RepairOutcome
from .orchestrator import run_repair_loop

console = Console()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNAVAILABLE = 2


def _read_text(path: Optional[str]) -> str:
    if not path:
        return ""
    return Path(path).read_text(encoding="utf-8", errors="replace")


def build_fixer(settings: Settings, name: Optional[str] = None) -> Fixer:
    """Instantiate the configured fixer backend."""
    name = name or settings.fixer
    if name == "anthropic":
        from .fixer.anthropic_fixer import AnthropicFixer

        return AnthropicFixer(model=settings.model, api_key=settings.anthropic_api_key)

    from .fixer.claude_cli import ClaudeCliFixer

    return ClaudeCliFixer(model=settings.model, max_turns=settings.max_turns)


def print_classified_errors(errors: List[ClassifiedError]) -> None:
    if not errors:
        console.print("[green]✓[/green] No errors detected")
        return

    table = Table(title="Classified Errors", show_header=True, header_style="bold magenta")
    table.add_column("Category", style="cyan")
    table.add_column("Confidence", justify="right")
    table.add_column("Message")
    table.add_column("Suggested Fix", style="dim")
    for error in errors:
        table.add_row(
            error.category.value,
            f"{error.confidence:.0%}",
            error.message,
            error.suggested_fix or "",
        )
    console.print(table)


def print_outcome(outcome: RepairOutcome, output_path: Optional[Path]) -> None:
    if outcome.success:
        status = "[green]✓ Success[/green]"
    elif outcome.skipped_due_to_stale_endpoint:
        status = "[yellow]⚠ Skipped (endpoint unavailable)[/yellow]"
    else:
        status = "[red]✗ Failed[/red]"

    lines = [
        f"Status: {status}",
        f"Iterations: {outcome.iterations}",
        f"Attempts recorded: {len(outcome.history) if outcome.history is not None else 0}",
    ]
    if output_path:
        lines.append(f"Final script: [cyan]{output_path}[/cyan]")
    console.print(Panel("\n".join(lines), title="[bold]Repair Outcome[/bold]", expand=False))

    if outcome.classified_errors and not outcome.success:
        print_classified_errors(list(outcome.classified_errors))
    if outcome.last_error:
        console.print("\n[dim]Last error:[/dim]")
        console.print(outcome.last_error, markup=False, highlight=False)


def cmd_repair(args: argparse.Namespace, settings: Settings) -> int:
    script_path = Path(args.script)
    if not script_path.exists():
        console.print(f"[red]✗[/red] Script not found: {script_path}", style="red")
        return EXIT_FAILED

    try:
        policy = build_repair_policy(
            settings, load_policy_overrides(args.policy), endpoint=args.cdp_url
        )
    except ConfigurationError as e:
        console.print(f"[red]✗[/red] {e}", style="red")
        return EXIT_UNAVAILABLE

    fixer = build_fixer(settings, args.fixer)
    outcome = asyncio.run(
        run_repair_loop(script_path.read_text(encoding="utf-8"), args.task, policy, fixer)
    )

    output_path = (
        Path(args.output)
        if args.output
        else Path(settings.output_dir) / f"{script_path.stem}.fixed.sh"
    )
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(outcome.final_script, encoding="utf-8")
    output_path.chmod(0o755)

    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    else:
        print_outcome(outcome, output_path)

    if outcome.success:
        return EXIT_OK
    return EXIT_UNAVAILABLE if outcome.skipped_due_to_stale_endpoint else EXIT_FAILED


def cmd_probe(args: argparse.Namespace, settings: Settings) -> int:
    try:
        endpoint = args.cdp_url or require_endpoint(settings)
    except ConfigurationError as e:
        console.print(f"[red]✗[/red] {e}", style="red")
        return EXIT_UNAVAILABLE

    result = asyncio.run(probe(endpoint, ProbePolicy(max_retries=args.retries)))
    if result.connected:
        console.print(f"[green]✓[/green] Endpoint reachable ({result.attempts} attempt(s))")
        return EXIT_OK

    console.print(
        f"[red]✗[/red] Endpoint unavailable after {result.attempts} attempt(s): {result.error}"
    )
    return EXIT_UNAVAILABLE


def cmd_classify(args: argparse.Namespace, settings: Settings) -> int:
    errors = classify_errors(
        _read_text(args.stdout), _read_text(args.stderr), args.exit_code, args.timed_out
    )
    if args.json:
        print(json.dumps([e.to_dict() for e in errors], indent=2))
    else:
        print_classified_errors(errors)
    return EXIT_OK


def cmd_validate(args: argparse.Namespace, settings: Settings) -> int:
    try:
        thresholds = QualityThresholds(
            min_price_rate=settings.validation_min_price_rate,
            min_rating_rate=settings.validation_min_rating_rate,
            min_item_count=settings.validation_min_item_count,
            require_prices=settings.validation_require_prices,
            require_ratings=settings.validation_require_ratings,
        )
    except ValueError as e:
        console.print(f"[red]✗[/red] Invalid quality thresholds: {e}", style="red")
        return EXIT_UNAVAILABLE
    outcome = validate_extracted_data(_read_text(args.file), args.task, thresholds)

    if outcome.valid:
        console.print("[green]✓[/green] Extracted data passes quality checks")
        return EXIT_OK

    console.print("[red]✗[/red] Data quality issues:")
    for issue in outcome.issues:
        console.print(f"  - {issue}")
    return EXIT_FAILED


def positive_int(value: str) -> int:
    """argparse type for counts that must be at least 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autoscript",
        description="Autoscript - iterative repair of browser automation scripts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Exit codes: 0 success, 1 failure, 2 endpoint unavailable or configuration error",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--log-json", action="store_true", help="Emit JSON logs with session IDs")
    parser.add_argument("--log-file", action="store_true", help="Also write a run log under AUTOSCRIPT_LOG_DIR")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    repair_parser = subparsers.add_parser("repair", help="Run the repair loop on a script")
    repair_parser.add_argument("script", help="Path to the bash script to repair")
    repair_parser.add_argument("--task", required=True, help="Task the script must accomplish")
    repair_parser.add_argument("--cdp-url", default=None, help="Browser endpoint (default: CDP_URL)")
    repair_parser.add_argument("--policy", default=None, help="YAML file with a repair_policy section")
    repair_parser.add_argument("--output", default=None, help="Where to write the final script")
    repair_parser.add_argument(
        "--fixer", choices=["claude-cli", "anthropic"], default=None, help="Fixer backend"
    )
    repair_parser.add_argument("--json", action="store_true", help="Print the outcome as JSON")

    probe_parser = subparsers.add_parser("probe", help="Check that the browser endpoint responds")
    probe_parser.add_argument("--cdp-url", default=None, help="Browser endpoint (default: CDP_URL)")
    probe_parser.add_argument(
        "--retries", type=positive_int, default=3, help="Probe attempts (default: 3)"
    )

    classify_parser = subparsers.add_parser("classify", help="Classify captured script output")
    classify_parser.add_argument("--stdout", default=None, help="File with captured stdout")
    classify_parser.add_argument("--stderr", default=None, help="File with captured stderr")
    classify_parser.add_argument("--exit-code", type=int, default=None, help="Process exit code")
    classify_parser.add_argument("--timed-out", action="store_true", help="Run was killed on timeout")
    classify_parser.add_argument("--json", action="store_true", help="Print errors as JSON")

    validate_parser = subparsers.add_parser("validate", help="Check extracted data quality")
    validate_parser.add_argument("file", help="File with captured script stdout")
    validate_parser.add_argument("--task", default=None, help="Task description")

    return parser


COMMANDS = {
    "repair": cmd_repair,
    "probe": cmd_probe,
    "classify": cmd_classify,
    "validate": cmd_validate,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point for Autoscript."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from .version import __version__

        print(f"Autoscript {__version__}")
        return EXIT_OK

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return EXIT_OK

    settings = get_settings()
    log_level = args.log_level or settings.log_level
    if args.log_json:
        setup_structured_logging(log_level)
    else:
        configure_logging(run_id=args.command, log_level=log_level, log_to_file=args.log_file)
    return handler(args, settings)


if __name__ == "__main__":
    sys.exit(main())
