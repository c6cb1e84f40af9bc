"""Terraform plan JSON adapter — maps ``terraform show -json`` output onto resources."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path

from azureguard.adapters.json_source import ParseError, load_json
from azureguard.core.index import TYPE_PREFIXES, reference_fragments
from azureguard.core.model import AdapterOutput, AdapterStats, Resource, resource_key
from azureguard.logger import logger

_PLAN_HINT = "Run 'terraform show -json tfplan > tfplan.json' to generate a valid plan file."

_INDEX_SANITIZE_RE = re.compile(r"[^A-Za-z0-9_-]+")


def parse_plan(path: Path) -> AdapterOutput:
    """Parse a Terraform plan JSON file into resource records."""
    raw = load_json(path, hint=_PLAN_HINT)
    if not isinstance(raw, dict):
        raise ParseError(f"{path} is not a valid Terraform plan (expected JSON object).")
    resource_changes = _extract_resource_changes(raw)
    configs = _configuration_index(raw)

    resources: list[Resource] = []
    instances: dict[str, list[str]] = {}
    skipped = 0
    for rc in resource_changes:
        if not isinstance(rc, dict) or not _is_supported(rc):
            skipped += 1
            continue
        resource = _to_resource(rc, configs)
        resources.append(resource)
        if rc.get("index") is not None:
            base = resource_key(resource.type, str(rc.get("name", "unnamed")))
            instances.setdefault(base, []).append(resource.key)
    resources = _expand_instance_dependencies(resources, instances)

    total = len(resource_changes)
    if skipped > 0:
        logger.info("Skipped %d unsupported resource change(s) out of %d total", skipped, total)

    return AdapterOutput(
        resources=resources,
        stats=AdapterStats(total=total, supported=len(resources), skipped=skipped),
    )


def _extract_resource_changes(raw: dict[str, Any]) -> list[Any]:
    rc = raw.get("resource_changes")
    if rc is None:
        raise ParseError(
            "Missing 'resource_changes' key. "
            "This does not appear to be a valid Terraform plan JSON."
        )
    if not isinstance(rc, list):
        raise ParseError("'resource_changes' must be an array.")
    return rc


def _is_supported(rc: dict[str, Any]) -> bool:
    rtype = rc.get("type")
    if not isinstance(rtype, str) or not rtype.startswith(TYPE_PREFIXES):
        return False
    if rc.get("mode", "managed") != "managed":
        return False
    actions = (rc.get("change") or {}).get("actions") or []
    return actions != ["delete"]


def _local_name(rc: dict[str, Any]) -> str:
    name = str(rc.get("name", "unnamed"))
    index = rc.get("index")
    if index is None:
        return name
    suffix = _INDEX_SANITIZE_RE.sub("_", str(index)).strip("_")
    return f"{name}_{suffix}" if suffix else name


def _config_address(address: str) -> str:
    """Strip instance keys: ``module.a["x"].azurerm_foo.bar[0]`` -> ``module.a.azurerm_foo.bar``."""
    return re.sub(r"\[[^\]]*\]", "", address)


def _configuration_index(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Configuration resources keyed by module-qualified address."""
    found: dict[str, dict[str, Any]] = {}
    config = raw.get("configuration")
    if not isinstance(config, dict):
        return found

    def walk(module: Any, prefix: str) -> None:
        if not isinstance(module, dict):
            return
        for resource in module.get("resources") or []:
            if isinstance(resource, dict) and isinstance(resource.get("address"), str):
                found[prefix + resource["address"]] = resource
        for call_name, call in (module.get("module_calls") or {}).items():
            if isinstance(call, dict):
                walk(call.get("module"), f"{prefix}module.{call_name}.")

    walk(config.get("root_module"), "")
    return found


def _references(expression: Any) -> list[str]:
    refs: list[str] = []
    if isinstance(expression, dict):
        if isinstance(expression.get("references"), list):
            refs.extend(r for r in expression["references"] if isinstance(r, str))
        for key, value in expression.items():
            if key != "references":
                refs.extend(_references(value))
    elif isinstance(expression, list):
        for item in expression:
            refs.extend(_references(item))
    return refs


def _fill_references(values: Any, unknown: Any, expressions: Any) -> Any:
    """Replace null or unknown values with the ``${...}`` reference they were built from."""
    if not isinstance(expressions, dict):
        return values
    result = dict(values) if isinstance(values, dict) else {}
    unknown = unknown if isinstance(unknown, dict) else {}
    for attr, expr in expressions.items():
        current = result.get(attr)
        if isinstance(expr, dict) and isinstance(expr.get("references"), list):
            refs = [r for r in expr["references"] if isinstance(r, str)]
            if refs and (current is None or unknown.get(attr) is True):
                result[attr] = "${" + refs[0] + "}"
        elif isinstance(expr, list) and expr and all(isinstance(e, dict) for e in expr):
            # nested block: one expression object per block instance
            current_blocks = current if isinstance(current, list) else []
            unknown_blocks = unknown.get(attr) if isinstance(unknown.get(attr), list) else []
            filled = []
            for i, block_expr in enumerate(expr):
                block_value = current_blocks[i] if i < len(current_blocks) else {}
                block_unknown = unknown_blocks[i] if i < len(unknown_blocks) else {}
                filled.append(_fill_references(block_value, block_unknown, block_expr))
            result[attr] = filled
    return result


def _dependencies(config: dict[str, Any], own_key: str) -> list[str]:
    deps: list[str] = []
    raw_refs = _references(config.get("expressions"))
    raw_refs.extend(d for d in config.get("depends_on") or [] if isinstance(d, str))
    for ref in raw_refs:
        for rtype, name in reference_fragments(ref):
            key = resource_key(rtype, name)
            if key != own_key and key not in deps:
                deps.append(key)
    return deps


def _expand_instance_dependencies(
    resources: list[Resource], instances: dict[str, list[str]]
) -> list[Resource]:
    """Point dependencies on a counted or for_each resource at each of its instances."""
    if not instances:
        return resources
    known = {r.key for r in resources}
    expanded: list[Resource] = []
    for resource in resources:
        deps: list[str] = []
        for dep in resource.dependencies:
            targets = instances[dep] if dep not in known and dep in instances else [dep]
            for target in targets:
                if target != resource.key and target not in deps:
                    deps.append(target)
        if deps != resource.dependencies:
            resource = resource.model_copy(update={"dependencies": deps})
        expanded.append(resource)
    return expanded


def _to_resource(rc: dict[str, Any], configs: dict[str, dict[str, Any]]) -> Resource:
    rtype = rc["type"]
    name = _local_name(rc)
    change = rc.get("change") or {}
    after = change.get("after")
    values: dict[str, Any] = after if isinstance(after, dict) else {}

    config = configs.get(_config_address(str(rc.get("address", ""))), {})
    attributes = _fill_references(values, change.get("after_unknown"), config.get("expressions"))
    if not config:
        logger.debug("No configuration block for %s, references not recovered", rc.get("address"))

    tags = attributes.get("tags")
    return Resource(
        type=rtype,
        name=name,
        attributes=attributes,
        tags={str(k): str(v) for k, v in tags.items()} if isinstance(tags, dict) else {},
        dependencies=_dependencies(config, resource_key(rtype, name)),
    )
