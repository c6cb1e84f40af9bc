"""Configuration loader — azureguard.yml parsing and defaults."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from azureguard.core.model import PostureRule, Severity
from azureguard.logger import logger
from azureguard.policy.defaults import SEVERITY_WEIGHTS
from azureguard.policy.security_rules import SECURITY_RULES


class GatingConfig(BaseModel):
    fail_on: list[Severity] = Field(default_factory=lambda: [Severity.CRITICAL])
    min_overall_score: int | None = Field(default=None, ge=0, le=100)


class AzureGuardConfig(BaseModel):
    severity_weights: dict[Severity, int] = Field(
        default_factory=lambda: dict(SEVERITY_WEIGHTS)
    )
    gating: GatingConfig = Field(default_factory=GatingConfig)
    required_tags: list[str] = Field(default_factory=list)
    disabled_rules: list[str] = Field(default_factory=list)
    extra_rules: list[PostureRule] = Field(default_factory=list)
    max_workers: int | None = Field(default=None, ge=1)

    @field_validator("severity_weights")
    @classmethod
    def _fill_missing_weights(cls, value: dict[Severity, int]) -> dict[Severity, int]:
        merged = dict(SEVERITY_WEIGHTS)
        for severity, weight in value.items():
            if weight < 0:
                raise ValueError(f"weight for {severity} must be non-negative")
            merged[severity] = weight
        return merged

    def active_rules(self) -> list[PostureRule]:
        """Built-in table minus disabled rule ids, followed by extra rules."""
        disabled = set(self.disabled_rules)
        rules = [r for r in SECURITY_RULES if r.id not in disabled]
        rules.extend(r for r in self.extra_rules if r.id not in disabled)
        return rules


def load_config(path: Path | None = None) -> AzureGuardConfig:
    """Load config from YAML file, or return defaults if no path given."""
    if path is None:
        logger.debug("No config file provided, using defaults")
        return AzureGuardConfig()

    from pathlib import Path as _Path

    p = _Path(str(path))

    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("Config file not found: %s, using defaults", path)
        return AzureGuardConfig()
    except OSError as e:
        logger.warning("Cannot read config file %s: %s, using defaults", path, e)
        return AzureGuardConfig()

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        logger.warning("Malformed YAML in %s: %s, using defaults", path, e)
        return AzureGuardConfig()

    if raw is None:
        logger.debug("Config file %s is empty, using defaults", path)
        return AzureGuardConfig()

    if not isinstance(raw, dict):
        logger.warning("Config file %s is not a YAML mapping, using defaults", path)
        return AzureGuardConfig()

    try:
        return AzureGuardConfig.model_validate(raw)
    except ValidationError as e:
        logger.warning("Invalid config in %s: %s, using defaults", path, e)
        return AzureGuardConfig()
