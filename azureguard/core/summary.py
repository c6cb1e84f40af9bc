"""Posture aggregation — roll per-resource postures into summary statistics."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

from azureguard.core.model import ComplianceStatus, Posture, PostureSummary, Severity


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def aggregate(postures: Mapping[str, Posture]) -> PostureSummary:
    """Counts by compliance and severity, plus the unweighted mean score.

    Every resource contributes equally to ``overall_score`` regardless of its
    type. An empty map scores 100.
    """
    compliance_counts = {status: 0 for status in ComplianceStatus}
    severity_counts = {severity: 0 for severity in Severity}
    for posture in postures.values():
        compliance_counts[posture.compliance] += 1
        for finding in posture.findings:
            severity_counts[finding.severity] += 1

    if postures:
        total = sum(p.score for p in postures.values())
        overall = _round_half_up(Decimal(total) / Decimal(len(postures)))
    else:
        overall = 100

    return PostureSummary(
        total_resources=len(postures),
        compliance_counts=compliance_counts,
        severity_counts=severity_counts,
        overall_score=overall,
    )
