"""Markdown output — report.md with topology, traffic and posture sections."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

from azureguard.core.model import (
    INTERNET_NODE_ID,
    AnalysisResult,
    Finding,
    NetworkTopology,
    Posture,
    Severity,
    Subnet,
    severity_rank,
)


def render_markdown(
    result: AnalysisResult,
    out_path: Path,
    gate_passed: bool,
    run_meta: dict[str, object],
    include_mermaid: bool = True,
) -> Path:
    """Write report.md to *out_path* and return the written path."""
    from pathlib import Path as _Path

    lines: list[str] = []
    lines.append("# AzureGuard Report\n")

    _run_metadata_section(lines, run_meta)
    _executive_summary(lines, result, gate_passed)
    _topology_section(lines, result.topology, include_mermaid)
    _traffic_section(lines, result)
    _findings_section(lines, result)
    _methodology_section(lines)
    _scope_section(lines, result)

    _Path(str(out_path)).mkdir(parents=True, exist_ok=True)
    out_file = _Path(str(out_path), "report.md")
    out_file.write_text("\n".join(lines), encoding="utf-8")
    return out_file


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

def _run_metadata_section(lines: list[str], run_meta: dict[str, object]) -> None:
    lines.append("## Run Metadata\n")
    lines.append(f"- Timestamp (UTC): {run_meta.get('timestamp_utc', 'unknown')}")
    lines.append(f"- Input path: `{run_meta.get('input_path', 'unknown')}`")
    lines.append(f"- Input format: {run_meta.get('input_format', 'unknown')}")
    lines.append(f"- Output directory: `{run_meta.get('output_dir', 'unknown')}`")
    lines.append("")


def _executive_summary(lines: list[str], result: AnalysisResult, gate_passed: bool) -> None:
    summary = result.summary
    lines.append("## Executive Summary\n")
    lines.append(f"**Overall score:** {summary.overall_score} / 100\n")

    lines.append("| Compliance | Resources |")
    lines.append("|------------|-----------|")
    for status, count in summary.compliance_counts.items():
        lines.append(f"| {status.value} | {count} |")
    lines.append("")

    lines.append("| Severity | Count |")
    lines.append("|----------|-------|")
    for sev in Severity:
        count = summary.severity_counts.get(sev, 0)
        if count > 0:
            lines.append(f"| {sev.value} | {count} |")
    lines.append("")

    status = "PASSED ✓" if gate_passed else "FAILED ✗"
    lines.append(f"**Gate:** {status}\n")


def _topology_section(
    lines: list[str], topology: NetworkTopology, include_mermaid: bool
) -> None:
    lines.append("## Network Topology\n")
    if topology.is_empty:
        lines.append("No network resources were declared.\n")
        return

    summary = topology.summary()
    lines.append(f"- Virtual networks: {summary.vnet_count}")
    lines.append(f"- Subnets: {summary.subnet_count}")
    lines.append(f"- Peerings: {summary.peering_count}")
    lines.append(f"- Private endpoints: {summary.private_endpoint_count}")
    lines.append(f"- Gateway connections: {summary.gateway_count}")
    lines.append(f"- Load balancers: {summary.load_balancer_count}")
    lines.append(f"- Application gateways: {summary.application_gateway_count}")
    if summary.address_spaces:
        lines.append(f"- Address spaces: {', '.join(summary.address_spaces)}")
    lines.append("")

    if topology.vnets or topology.unattached_subnets:
        lines.append("| VNet | Subnet | Prefix | NSG | Members |")
        lines.append("|------|--------|--------|-----|:-------:|")
        for vnet in topology.vnets:
            if not vnet.subnets:
                lines.append(f"| {vnet.name} | | | | 0 |")
            for subnet in vnet.subnets:
                lines.append(_subnet_row(vnet.name, subnet))
        for subnet in topology.unattached_subnets:
            lines.append(_subnet_row("(unresolved)", subnet))
        lines.append("")

    if include_mermaid and topology.vnets:
        lines.extend(_mermaid_block(topology))
        lines.append("")


def _subnet_row(vnet_name: str, subnet: Subnet) -> str:
    prefix = subnet.address_prefix or ", ".join(subnet.address_prefixes)
    nsg = f"`{subnet.nsg_id}`" if subnet.nsg_id else "none"
    return f"| {vnet_name} | {subnet.name} | {prefix} | {nsg} | {len(subnet.resources)} |"


def _mermaid_block(topology: NetworkTopology) -> list[str]:
    lines = ["```mermaid", "graph LR"]
    for vnet in topology.vnets:
        vnet_id = _mermaid_node_id(vnet.id)
        space = ", ".join(vnet.address_space)
        lines.append(f'    subgraph {vnet_id}["{vnet.name} {space}"]')
        for subnet in vnet.subnets:
            lines.append(f'        {_mermaid_node_id(subnet.id)}["{subnet.name}"]')
        lines.append("    end")
    for peering in topology.peerings:
        if peering.vnet_id and peering.remote_vnet_key:
            lines.append(
                f"    {_mermaid_node_id(peering.vnet_id)} -.->|peering| "
                f"{_mermaid_node_id(peering.remote_vnet_key)}"
            )
    lines.append("```")
    return lines


def _mermaid_node_id(node_id: str) -> str:
    return node_id.replace(".", "_").replace("-", "_").replace("/", "_").replace("__", "")


def _traffic_section(lines: list[str], result: AnalysisResult) -> None:
    lines.append("## Traffic Flows\n")
    if not result.flows:
        lines.append("No traffic flows were inferred.\n")
        return

    lines.append("| Source | Target | Ports | Protocol | Type | Decision | Rule |")
    lines.append("|--------|--------|-------|----------|------|----------|------|")
    for flow in result.flows:
        source = "🌐 Internet" if flow.source_id == INTERNET_NODE_ID else f"`{flow.source_id}`"
        decision = "allow" if flow.allowed else "**deny**"
        rule = flow.deciding_rule or ("implicit" if flow.implicit else "no NSG")
        lines.append(
            f"| {source} | `{flow.target_id}` | {', '.join(flow.ports)} "
            f"| {flow.protocol} | {flow.flow_type.value} | {decision} | {rule} |"
        )
    lines.append("")


def _findings_section(lines: list[str], result: AnalysisResult) -> None:
    with_findings = [p for p in result.postures.values() if p.findings]
    with_findings.sort(key=lambda p: (p.score, p.resource_id))

    lines.append("## Findings\n")
    if not with_findings:
        lines.append("No findings.\n")
        return

    for posture in with_findings:
        _render_posture(lines, posture)


def _render_posture(lines: list[str], posture: Posture) -> None:
    lines.append(f"### {posture.resource_id}\n")

    lines.append("| Field | Value |")
    lines.append("|-------|-------|")
    lines.append(f"| Type | `{posture.resource_type}` |")
    lines.append(f"| Score | {posture.score} |")
    lines.append(f"| Grade | {posture.grade.value} |")
    lines.append(f"| Compliance | {posture.compliance.value} |")
    lines.append(f"| Encrypted | {'yes' if posture.is_encrypted else 'no'} |")
    lines.append(f"| Public endpoint | {'yes' if posture.has_public_endpoint else 'no'} |")
    lines.append("")

    findings = sorted(posture.findings, key=lambda f: (severity_rank(f.severity), f.rule_id))
    for i, f in enumerate(findings, 1):
        lines.append(_finding_line(i, f))
    lines.append("")


def _finding_line(i: int, f: Finding) -> str:
    line = f"{i}. [{f.severity.value}] **{f.title}** (`{f.rule_id}`)"
    if f.remediation:
        line += f": {f.remediation}"
    return line


def _methodology_section(lines: list[str]) -> None:
    lines.append("## Methodology\n")
    lines.append(
        "AzureGuard resolves references between the declared resources and rebuilds "
        "the virtual network topology: subnets, peerings, private endpoints, gateways "
        "and load balancers. NSG rule chains are compiled per security group and every "
        "dependency edge between a compute source and a data, secret or messaging "
        "target is evaluated against the source's outbound chain, lowest priority "
        "first. Each resource is then scored against the security rule table, where "
        "each finding deducts its severity weight from 100.\n"
    )


def _scope_section(lines: list[str], result: AnalysisResult) -> None:
    lines.append("## Scope\n")
    lines.append(f"- Resources analyzed: {result.stats.supported}")
    lines.append(f"- Resources skipped: {result.stats.skipped}")
    lines.append(f"- Total resources in input: {result.stats.total}")
    lines.append("")
