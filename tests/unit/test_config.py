"""Tests for config.load_config()."""

from __future__ import annotations

from pathlib import Path

from azureguard.core.model import Operator, Severity
from azureguard.policy.config import AzureGuardConfig, load_config
from azureguard.policy.defaults import SEVERITY_WEIGHTS
from azureguard.policy.security_rules import SECURITY_RULES


class TestDefaults:
    def test_default_config_no_file(self) -> None:
        config = load_config(None)
        assert config.gating.fail_on == [Severity.CRITICAL]
        assert config.gating.min_overall_score is None
        assert config.severity_weights == dict(SEVERITY_WEIGHTS)
        assert config.required_tags == []
        assert len(config.active_rules()) == len(SECURITY_RULES)

    def test_default_config_missing_file(self, tmp_path: Path) -> None:
        config = load_config(tmp_path / "nonexistent.yml")
        assert config.gating.fail_on == [Severity.CRITICAL]

    def test_empty_file(self, tmp_path: Path) -> None:
        empty = tmp_path / "empty.yml"
        empty.write_text("")
        assert load_config(empty) == AzureGuardConfig()


class TestCustomConfig:
    def test_custom_config(self, tmp_path: Path) -> None:
        cfg = tmp_path / "custom.yml"
        cfg.write_text(
            "severity_weights:\n"
            "  medium: 40\n"
            "gating:\n"
            "  fail_on:\n"
            "    - critical\n"
            "    - high\n"
            "  min_overall_score: 70\n"
            "required_tags:\n"
            "  - owner\n"
            "disabled_rules:\n"
            "  - storage-min-tls\n"
            "max_workers: 2\n"
        )
        config = load_config(cfg)
        assert config.gating.fail_on == [Severity.CRITICAL, Severity.HIGH]
        assert config.gating.min_overall_score == 70
        assert config.severity_weights[Severity.MEDIUM] == 40
        assert config.severity_weights[Severity.CRITICAL] == 100
        assert config.required_tags == ["owner"]
        assert config.max_workers == 2
        assert "storage-min-tls" not in {r.id for r in config.active_rules()}

    def test_extra_rules(self, tmp_path: Path) -> None:
        cfg = tmp_path / "extra.yml"
        cfg.write_text(
            "extra_rules:\n"
            "  - id: redis-non-ssl-port\n"
            "    resource_type: azurerm_redis_cache\n"
            "    attribute: non_ssl_port_enabled\n"
            "    operator: equals\n"
            "    value: true\n"
            "    severity: high\n"
            "    title: Non-SSL port enabled\n"
        )
        config = load_config(cfg)
        extra = config.active_rules()[-1]
        assert extra.id == "redis-non-ssl-port"
        assert extra.operator == Operator.EQUALS
        assert extra.value is True


class TestMalformedYAML:
    def test_malformed_yaml_returns_defaults(self, tmp_path: Path) -> None:
        bad = tmp_path / "bad.yml"
        bad.write_text("{{{{not yaml!!!!")
        config = load_config(bad)
        assert config.gating.fail_on == [Severity.CRITICAL]

    def test_non_mapping_returns_defaults(self, tmp_path: Path) -> None:
        bad = tmp_path / "list.yml"
        bad.write_text("- item1\n- item2\n")
        config = load_config(bad)
        assert config.gating.fail_on == [Severity.CRITICAL]

    def test_invalid_severity_returns_defaults(self, tmp_path: Path) -> None:
        bad = tmp_path / "sev.yml"
        bad.write_text("gating:\n  fail_on:\n    - catastrophic\n")
        config = load_config(bad)
        assert config.gating.fail_on == [Severity.CRITICAL]

    def test_negative_weight_returns_defaults(self, tmp_path: Path) -> None:
        bad = tmp_path / "weights.yml"
        bad.write_text("severity_weights:\n  high: -5\n")
        config = load_config(bad)
        assert config.severity_weights[Severity.HIGH] == SEVERITY_WEIGHTS[Severity.HIGH]

    def test_score_out_of_range_returns_defaults(self, tmp_path: Path) -> None:
        bad = tmp_path / "score.yml"
        bad.write_text("gating:\n  min_overall_score: 140\n")
        assert load_config(bad).gating.min_overall_score is None
