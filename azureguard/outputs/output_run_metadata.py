"""Run-metadata sidecar — writes run-metadata.json alongside reports."""

from __future__ import annotations

import datetime
import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from azureguard.core.model import AnalysisResult

import azureguard


def build_run_metadata(
    result: AnalysisResult,
    source: Path,
    out_path: Path,
    input_format: str,
    gate_passed: bool,
) -> dict[str, object]:
    return {
        "timestamp_utc": datetime.datetime.now(datetime.UTC).isoformat().replace("+00:00", "Z"),
        "version": azureguard.__version__,
        "input_path": str(source.resolve()),
        "input_format": input_format,
        "output_dir": str(out_path.resolve()),
        "resources": {
            "total": result.stats.total,
            "analyzed": result.stats.supported,
            "skipped": result.stats.skipped,
        },
        "overall_score": result.summary.overall_score,
        "gate_passed": gate_passed,
    }


def write_run_metadata(meta: dict[str, object], out_path: Path) -> Path:
    """Write run-metadata.json to *out_path* and return the written path."""
    from pathlib import Path as _Path

    _Path(str(out_path)).mkdir(parents=True, exist_ok=True)
    out_file = _Path(str(out_path), "run-metadata.json")
    out_file.write_text(
        json.dumps(meta, sort_keys=True, indent=2) + "\n",
        encoding="utf-8",
    )
    return out_file
