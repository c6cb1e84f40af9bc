"""Adapter protocol and registry for input sources."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from pathlib import Path

    from azureguard.core.model import AdapterOutput


class InputAdapter(Protocol):
    """Protocol for parsing an input file into resource records."""

    def parse(self, path: Path) -> AdapterOutput:
        """Parse the file into canonical resources."""
        ...

    @property
    def supported_formats(self) -> list[str]:
        """File extensions this adapter handles (e.g., ['.json'])."""
        ...


class ResourceJsonAdapter:
    """Adapter for JSON arrays of typed resource records."""

    @property
    def supported_formats(self) -> list[str]:
        return [".json"]

    def parse(self, path: Path) -> AdapterOutput:
        from azureguard.adapters.resource_json import parse_resources

        return parse_resources(path)


class TerraformPlanAdapter:
    """Adapter for Terraform plan JSON (``terraform show -json``)."""

    @property
    def supported_formats(self) -> list[str]:
        return [".json"]

    def parse(self, path: Path) -> AdapterOutput:
        from azureguard.adapters.terraform_plan import parse_plan

        return parse_plan(path)


ADAPTERS: dict[str, InputAdapter] = {
    "resources": ResourceJsonAdapter(),
    "terraform": TerraformPlanAdapter(),
}


def get_adapter(adapter_name: str) -> InputAdapter:
    """Get adapter by name, raise KeyError if not found."""
    return ADAPTERS[adapter_name]
