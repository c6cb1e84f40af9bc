"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from azureguard.adapters.resource_json import parse_resources
from azureguard.core.model import Resource

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture()
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture()
def hub_spoke() -> list[Resource]:
    return parse_resources(FIXTURES_DIR / "hub-spoke.json").resources
