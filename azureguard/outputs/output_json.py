"""JSON output — deterministic report.json generation."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path

from azureguard.core.model import AnalysisResult, Posture, severity_rank
from azureguard.core.traffic import flow_sort_key


def report_data(result: AnalysisResult, source: Path | None = None) -> dict[str, Any]:
    data = _sort_for_determinism(result).model_dump(mode="json")
    if source is not None:
        data["input"] = str(source)
    return data


def dumps_report(result: AnalysisResult, source: Path | None = None) -> str:
    """Serialize *result* to byte-deterministic JSON text."""
    return json.dumps(report_data(result, source), sort_keys=True, indent=2) + "\n"


def render_json(result: AnalysisResult, out_path: Path, source: Path | None = None) -> Path:
    """Write byte-deterministic report.json and return the written path."""
    from pathlib import Path as _Path

    _Path(str(out_path)).mkdir(parents=True, exist_ok=True)
    out_file = _Path(str(out_path), "report.json")
    out_file.write_text(dumps_report(result, source), encoding="utf-8")
    return out_file


def _sort_posture(posture: Posture) -> Posture:
    findings = sorted(
        posture.findings, key=lambda f: (severity_rank(f.severity), f.rule_id, f.id)
    )
    return posture.model_copy(update={"findings": findings})


def _sort_for_determinism(result: AnalysisResult) -> AnalysisResult:
    topology = result.topology.model_copy(
        update={
            "vnets": sorted(result.topology.vnets, key=lambda v: v.id),
            "unattached_subnets": sorted(
                result.topology.unattached_subnets, key=lambda s: s.id
            ),
            "peerings": sorted(result.topology.peerings, key=lambda p: p.id),
            "private_endpoints": sorted(result.topology.private_endpoints, key=lambda p: p.id),
            "gateway_connections": sorted(
                result.topology.gateway_connections, key=lambda c: c.id
            ),
            "gateways": sorted(result.topology.gateways, key=lambda g: g.id),
            "load_balancers": sorted(result.topology.load_balancers, key=lambda lb: lb.id),
            "application_gateways": sorted(
                result.topology.application_gateways, key=lambda a: a.id
            ),
            "firewalls": sorted(result.topology.firewalls, key=lambda f: f.id),
        }
    )
    return result.model_copy(
        update={
            "topology": topology,
            "rule_chains": sorted(result.rule_chains, key=lambda c: c.nsg_id),
            "firewalls": sorted(result.firewalls, key=lambda f: f.firewall_id),
            "firewall_policies": sorted(result.firewall_policies, key=lambda p: p.policy_id),
            "flows": sorted(result.flows, key=flow_sort_key),
            "postures": {k: _sort_posture(result.postures[k]) for k in sorted(result.postures)},
        }
    )
