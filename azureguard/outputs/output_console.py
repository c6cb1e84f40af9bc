"""Console output — TTY summary with Rich tables."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from azureguard.core.model import AnalysisResult, Posture

from azureguard.core.model import ComplianceStatus, Severity


def render_console(result: AnalysisResult, gate_passed: bool) -> None:
    """Print a TTY-friendly summary to stdout."""
    try:
        import rich  # noqa: F401

        _render_rich(result, gate_passed)
    except ImportError:
        _render_plain(result, gate_passed)


def _worst_postures(result: AnalysisResult, limit: int = 5) -> list[Posture]:
    scored = [p for p in result.postures.values() if p.findings]
    scored.sort(key=lambda p: (p.score, p.resource_id))
    return scored[:limit]


def _render_rich(result: AnalysisResult, gate_passed: bool) -> None:
    from rich.console import Console
    from rich.table import Table

    console = Console()
    topo = result.topology.summary()
    console.print(
        f"[bold]Topology:[/bold] {topo.vnet_count} VNet(s), {topo.subnet_count} subnet(s), "
        f"{topo.peering_count} peering(s), {topo.private_endpoint_count} private endpoint(s)"
    )

    denied = sum(1 for f in result.flows if not f.allowed)
    console.print(f"[bold]Traffic:[/bold] {len(result.flows)} flow(s), {denied} denied")

    table = Table(title="Severity Distribution")
    table.add_column("Severity", style="bold")
    table.add_column("Count", justify="right")
    for sev in Severity:
        count = result.summary.severity_counts.get(sev, 0)
        if count > 0:
            table.add_row(sev.value, str(count))
    console.print(table)

    worst = _worst_postures(result)
    if worst:
        console.print("\n[bold]Lowest Scoring Resources:[/bold]")
        for posture in worst:
            console.print(
                f"  {posture.resource_id} score {posture.score} "
                f"({posture.compliance.value}, {len(posture.findings)} finding(s))"
            )

    compliant = result.summary.compliance_counts.get(ComplianceStatus.COMPLIANT, 0)
    console.print(
        f"\nOverall score: {result.summary.overall_score} "
        f"({compliant}/{result.summary.total_resources} compliant)"
    )
    console.print(f"Resources: {result.stats.supported} analyzed, {result.stats.skipped} skipped")
    status = "[green]PASSED[/green]" if gate_passed else "[red]FAILED[/red]"
    console.print(f"Gate: {status}")


def _render_plain(result: AnalysisResult, gate_passed: bool) -> None:
    topo = result.topology.summary()
    print(f"Topology: {topo.vnet_count} VNet(s), {topo.subnet_count} subnet(s)")
    print(f"Traffic: {len(result.flows)} flow(s)")
    print("--- Severity Distribution ---")
    for sev in Severity:
        count = result.summary.severity_counts.get(sev, 0)
        if count > 0:
            print(f"  {sev.value}: {count}")

    print(f"\nOverall score: {result.summary.overall_score}")
    print(f"Resources: {result.stats.supported} analyzed, {result.stats.skipped} skipped")
    status = "PASSED" if gate_passed else "FAILED"
    print(f"Gate: {status}")
    sys.stdout.flush()
