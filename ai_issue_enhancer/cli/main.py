"""
CLI interface for the issue enhancer.

Provides command-line access to enhancement, health and configuration checks.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_issue_enhancer.config.loader import (
    EnhancerConfig,
    load_config_from_env,
    load_enhancer_config,
    validate_config,
)
from ai_issue_enhancer.core.errors import ConfigurationError
from ai_issue_enhancer.core.health import HealthSnapshot, HealthStatus, evaluate_health
from ai_issue_enhancer.core.ledger import UsageLedger, UsageSnapshot
from ai_issue_enhancer.core.models import (
    ChangeDiff,
    CodeSnippet,
    CrashContext,
    EnhancementRequest,
    EnhancementResult,
    RequestOptions,
)
from ai_issue_enhancer.core.orchestrator import Orchestrator
from ai_issue_enhancer.demo.scenarios import SCENARIOS, get_scenario

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load_config(config_path: Optional[str]) -> EnhancerConfig:
    """YAML file when given, environment variables otherwise."""
    if config_path:
        return load_enhancer_config(config_path)
    return load_config_from_env()


def request_from_dict(data: Dict[str, Any]) -> EnhancementRequest:
    """Build an EnhancementRequest from a parsed YAML/JSON document.

    Raises:
        ValueError: If required fields are missing or malformed
    """
    if not isinstance(data, dict):
        raise ValueError("Feedback file must contain a mapping")
    if not data.get("title") and not data.get("description"):
        raise ValueError("Feedback needs a title or a description")

    crash = None
    crash_data = data.get("crash")
    if crash_data and not isinstance(crash_data, dict):
        raise ValueError("'crash' must be a mapping")
    if crash_data:
        trace = crash_data.get("trace_lines") or str(crash_data.get("trace", "")).splitlines()
        crash = CrashContext(
            trace_lines=tuple(str(line) for line in trace),
            device=str(crash_data.get("device", "")),
            os_version=str(crash_data.get("os_version", "")),
            exception_type=str(crash_data.get("exception_type", "")),
            exception_message=str(crash_data.get("exception_message", "")),
        )

    return EnhancementRequest(
        title=str(data.get("title", "")),
        description=str(data.get("description", "")),
        kind=data.get("kind", "crash" if crash else "general"),
        crash=crash,
        snippets=[
            CodeSnippet(path=s["path"], content=s.get("content", ""),
                        relevance=float(s.get("relevance", 0.0)), lines=str(s.get("lines", "")))
            for s in data.get("snippets") or []
        ],
        changes=[
            ChangeDiff(file=c["file"], diff=c.get("diff", ""), author=c.get("author", ""),
                       timestamp=str(c.get("timestamp", "")))
            for c in data.get("changes") or []
        ],
    )


def _load_request(input_file: Optional[str], scenario: Optional[str]) -> EnhancementRequest:
    if scenario:
        return get_scenario(scenario)
    if not input_file:
        raise ValueError("Provide a feedback file or --scenario")
    path = Path(input_file)
    if not path.exists():
        raise FileNotFoundError(f"Feedback file not found: {input_file}")
    with open(path, "r", encoding="utf-8") as f:
        # JSON is a subset of YAML
        return request_from_dict(yaml.safe_load(f))


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Issue Enhancer CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Issue Enhancer - Use --help to see available commands")


@app.command()
def enhance(
    input_file: Optional[str] = typer.Argument(None, help="Feedback record as YAML or JSON"),
    scenario: Optional[str] = typer.Option(None, "--scenario", "-s", help="Built-in sample scenario"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    backend: Optional[str] = typer.Option(None, "--backend", "-b", help="Force a backend"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Override the model"),
    prefer_cheapest: bool = typer.Option(False, "--prefer-cheapest", help="Pick the cheapest backend"),
    no_fallback: bool = typer.Option(False, "--no-fallback", help="Do not try fallback backends"),
    skip_cost_check: bool = typer.Option(False, "--skip-cost-check", help="Skip cost ceilings"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write the result as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """
    Enhance a feedback record into a structured issue.

    Falls back to deterministic formatting when no backend can serve the
    request, so this command only fails on bad input or configuration.
    """
    _configure_logging(verbose)
    try:
        request = _load_request(input_file, scenario)
        orchestrator = Orchestrator(_load_config(config_path))
    except (ConfigurationError, FileNotFoundError, KeyError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    options = RequestOptions(
        backend=backend,
        model=model,
        enable_fallback=not no_fallback,
        skip_cost_check=skip_cost_check,
        prefer_cheapest=prefer_cheapest,
    )
    result = orchestrator.enhance(request, options)
    _display_result(result)
    _display_usage(orchestrator.get_usage_stats())

    if output:
        with open(output, "w", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, indent=2)
        console.print(f"[green]✓[/] Result written to {output}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def health(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    as_json: bool = typer.Option(False, "--json", help="Print the snapshot as JSON"),
):
    """Check backend credentials and remaining budget without network calls."""
    try:
        config = _load_config(config_path)
    except (ConfigurationError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    snapshot = evaluate_health(config, UsageLedger())
    if as_json:
        console.print_json(json.dumps(snapshot.to_dict()))
    else:
        _display_health(snapshot)
    sys.exit(EXIT_CODE_FAIL if snapshot.status == HealthStatus.UNHEALTHY else EXIT_CODE_PASS)


@app.command("validate-config")
def validate_config_command(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
):
    """Validate configuration and report errors and warnings."""
    try:
        config = _load_config(config_path)
    except (ConfigurationError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    validation = validate_config(config)
    for error in validation.errors:
        console.print(f"[red]✗[/] {error}")
    for warning in validation.warnings:
        console.print(f"[yellow]![/] {warning}")
    if validation.valid:
        console.print("[green]✓[/] Configuration is valid")
        sys.exit(EXIT_CODE_PASS)
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def scenarios():
    """List built-in sample scenarios."""
    table = Table(title="Sample Scenarios")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Title")
    for name, request in SCENARIOS.items():
        table.add_row(name, request.kind.value, request.title)
    console.print(table)


def _format_currency(amount: float) -> str:
    """Format cost with enough precision for per-call amounts."""
    return f"${amount:,.6f}"


def _display_result(result: EnhancementResult):
    console.print(f"\n[bold]{result.enhanced_title}[/bold]")
    console.print("-" * 40)

    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Priority", result.priority.value)
    table.add_row("Labels", ", ".join(result.labels) or "-")
    table.add_row("Components", ", ".join(result.analysis.affected_components) or "-")
    table.add_row("Confidence", f"{result.analysis.confidence:.2f}")
    table.add_row("Backend", f"{result.metadata.backend} ({result.metadata.model})")
    table.add_row("Mode", result.metadata.mode)
    table.add_row("Cost", _format_currency(result.metadata.cost))
    table.add_row("Time", f"{result.metadata.processing_time:.2f}s")
    console.print(table)

    if result.analysis.root_cause:
        console.print(f"\n[bold]Root cause:[/bold] {result.analysis.root_cause}")
    if result.analysis.suggested_fix:
        console.print(f"[bold]Suggested fix:[/bold] {result.analysis.suggested_fix}")
    if result.analysis.relevant_code_areas:
        console.print("\n[bold]Relevant code areas:[/bold]")
        for area in result.analysis.relevant_code_areas:
            location = f"{area.file}:{area.lines}" if area.lines else area.file
            console.print(f"  {location} ({area.confidence * 100:.0f}%) {area.reason}".rstrip())
    if result.analysis.reproduction_steps:
        console.print("\n[bold]Reproduction steps:[/bold]")
        for number, step in enumerate(result.analysis.reproduction_steps, 1):
            console.print(f"  {number}. {step}")
    console.print(f"\n{result.enhanced_description}")


def _display_usage(usage: UsageSnapshot):
    console.print(
        f"\n[dim]Usage: {usage.total_requests} request(s), {usage.total_tokens} tokens, "
        f"{_format_currency(usage.total_cost)}[/]"
    )


def _display_health(snapshot: HealthSnapshot):
    colour = {
        HealthStatus.HEALTHY: "green",
        HealthStatus.DEGRADED: "yellow",
        HealthStatus.UNHEALTHY: "red",
    }[snapshot.status]
    console.print(f"\n[bold]Status:[/bold] [{colour}]{snapshot.status.value}[/]")

    if snapshot.backends:
        table = Table(title="Backends")
        table.add_column("Backend")
        table.add_column("Available")
        table.add_column("Authenticated")
        table.add_column("Error")
        for name, result in snapshot.backends.items():
            table.add_row(
                name,
                "yes" if result.available else "no",
                "yes" if result.authenticated else "no",
                result.error or "",
            )
        console.print(table)
    else:
        console.print("[dim]No backend has an API key configured.[/]")

    console.print(f"Run budget: {_format_currency(snapshot.budget.run_remaining)}")
    console.print(f"Month budget remaining: {_format_currency(snapshot.budget.month_remaining)}")
    for problem in snapshot.errors:
        console.print(f"[red]✗[/] {problem}")
    for problem in snapshot.warnings:
        console.print(f"[yellow]![/] {problem}")


if __name__ == "__main__":
    app()
