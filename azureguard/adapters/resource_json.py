"""Resource JSON adapter — reads already-typed resource records."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path

from azureguard.adapters.json_source import ParseError, load_json
from azureguard.core.model import AdapterOutput, AdapterStats, Resource
from azureguard.logger import logger


def parse_resources(path: Path) -> AdapterOutput:
    """Parse a JSON array of resource records (or ``{"resources": [...]}``)."""
    raw = load_json(path)
    records = _extract_records(raw, path)

    resources: list[Resource] = []
    skipped = 0
    for position, record in enumerate(records):
        resource = _to_resource(record)
        if resource is None:
            logger.warning("Skipping invalid resource record at position %d in %s", position, path)
            skipped += 1
            continue
        resources.append(resource)

    if skipped:
        logger.info("Skipped %d invalid record(s) out of %d total", skipped, len(records))

    return AdapterOutput(
        resources=resources,
        stats=AdapterStats(total=len(records), supported=len(resources), skipped=skipped),
    )


def _extract_records(raw: object, path: Path) -> list[Any]:
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        records = raw.get("resources")
        if records is None:
            raise ParseError(f"{path} has no 'resources' key.")
        if not isinstance(records, list):
            raise ParseError("'resources' must be an array.")
        return records
    raise ParseError(f"{path} must contain a JSON array or an object with 'resources'.")


def _to_resource(record: Any) -> Resource | None:
    if not isinstance(record, Mapping):
        return None
    rtype = record.get("type")
    name = record.get("name")
    attributes = record.get("attributes")
    if not (isinstance(rtype, str) and rtype and isinstance(name, str) and name):
        return None
    if not isinstance(attributes, Mapping):
        return None

    tags = record.get("tags") or {}
    if not isinstance(tags, Mapping):
        tags = {}
    dependencies = record.get("dependencies") or []
    if not isinstance(dependencies, list):
        dependencies = []

    return Resource(
        type=rtype,
        name=name,
        attributes=dict(attributes),
        tags={str(k): str(v) for k, v in tags.items()},
        dependencies=[d for d in dependencies if isinstance(d, str)],
    )
