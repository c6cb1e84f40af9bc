"""CLI entry point and pipeline orchestration."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from azureguard.adapters.adapter_protocol import ADAPTERS, get_adapter
from azureguard.adapters.json_source import ParseError
from azureguard.core.engine import run_analysis
from azureguard.core.model import AnalysisResult, Severity, severity_rank
from azureguard.logger import configure_logging
from azureguard.outputs.output_console import render_console
from azureguard.outputs.output_json import render_json
from azureguard.outputs.output_markdown import render_markdown
from azureguard.outputs.output_run_metadata import build_run_metadata, write_run_metadata
from azureguard.policy.config import GatingConfig, load_config
from azureguard.policy.security_rules import rules_for_type

app = typer.Typer(no_args_is_help=True)


@app.callback(invoke_without_command=True)
def _callback() -> None:
    """AzureGuard — Azure IaC topology, traffic and posture analyzer."""


def _parse_fail_on(value: str | None) -> list[Severity] | None:
    if value is None:
        return None
    severities: list[Severity] = []
    for token in value.split(","):
        token = token.strip().lower()
        if not token:
            continue
        try:
            severities.append(Severity(token))
        except ValueError:
            valid = ", ".join(s.value for s in Severity)
            typer.echo(
                f"Error: invalid severity '{token}'. Valid values: {valid}.",
                err=True,
            )
            raise SystemExit(2)  # noqa: B904
    return severities


def gate_passed(result: AnalysisResult, gating: GatingConfig) -> bool:
    """False when any finding has a gated severity or the overall score is too low."""
    fail_on = set(gating.fail_on)
    for posture in result.postures.values():
        if any(f.severity in fail_on for f in posture.findings):
            return False
    if gating.min_overall_score is not None:
        return result.summary.overall_score >= gating.min_overall_score
    return True


@app.command()
def analyze(
    input_path: Annotated[
        Path, typer.Option("--input", help="Path to resource JSON or Terraform plan JSON")
    ],
    input_format: Annotated[
        str, typer.Option("--format", help="Input format: resources or terraform")
    ] = "resources",
    config_path: Annotated[
        Path | None, typer.Option("--config", help="Path to azureguard.yml")
    ] = None,
    out: Annotated[Path, typer.Option("--out", help="Output directory for reports")] = Path("."),
    fail_on: Annotated[
        str | None, typer.Option("--fail-on", help="Comma-separated severities")
    ] = None,
    workers: Annotated[
        int | None, typer.Option("--workers", min=1, help="Worker threads for analysis")
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", help="Enable verbose logging")] = False,
    no_mermaid: Annotated[
        bool, typer.Option("--no-mermaid", help="Suppress Mermaid diagram in report.md")
    ] = False,
) -> None:
    """Analyze Azure resources for topology, traffic and security posture."""
    configure_logging(verbose)

    if input_format not in ADAPTERS:
        valid = ", ".join(sorted(ADAPTERS))
        typer.echo(f"Error: unknown format '{input_format}'. Valid values: {valid}.", err=True)
        raise SystemExit(2)

    try:
        adapter = get_adapter(input_format)
        adapter_output = adapter.parse(input_path)
    except ParseError as e:
        typer.echo(f"Error: {e}", err=True)
        raise SystemExit(2)  # noqa: B904

    cfg = load_config(config_path)

    fail_on_severities = _parse_fail_on(fail_on)
    if fail_on_severities is not None:
        cfg.gating.fail_on = fail_on_severities

    result = run_analysis(
        adapter_output.resources,
        config=cfg,
        max_workers=workers,
        stats=adapter_output.stats,
    )
    passed = gate_passed(result, cfg.gating)
    run_meta = build_run_metadata(result, input_path, out, input_format, passed)

    render_console(result, passed)

    try:
        md_path = render_markdown(result, out, passed, run_meta, include_mermaid=not no_mermaid)
        typer.echo(f"Wrote report (MD): {md_path.resolve()}")
    except OSError as e:
        typer.echo(f"Error writing markdown: {e}", err=True)
        raise

    try:
        json_path = render_json(result, out, input_path)
        typer.echo(f"Wrote report (JSON): {json_path.resolve()}")
    except OSError as e:
        typer.echo(f"Error writing JSON: {e}", err=True)
        raise

    try:
        meta_path = write_run_metadata(run_meta, out)
        typer.echo(f"Wrote run metadata (JSON): {meta_path.resolve()}")
    except OSError as e:
        typer.echo(f"Error writing run metadata: {e}", err=True)
        raise

    if not passed:
        raise SystemExit(1)


@app.command()
def rules(
    resource_type: Annotated[
        str | None, typer.Option("--type", help="Only rules for this resource type")
    ] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", help="Path to azureguard.yml")
    ] = None,
) -> None:
    """List the active security rule table."""
    cfg = load_config(config_path)
    active = cfg.active_rules()
    if resource_type is not None:
        active = rules_for_type(active, resource_type)
    active.sort(key=lambda r: (r.resource_type, severity_rank(r.severity), r.id))

    if not active:
        typer.echo("No rules match.")
        return

    for rule in active:
        typer.echo(f"{rule.id}\t{rule.severity.value}\t{rule.resource_type}\t{rule.title}")
