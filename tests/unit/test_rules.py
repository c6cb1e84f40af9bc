"""Tests for RuleSetCompiler: NSG chains, firewall collections, policy groups."""

from __future__ import annotations

from typing import Any

from azureguard.core.index import ResourceIndex
from azureguard.core.model import Access, CollectionKind, Direction, Resource, SecurityRule
from azureguard.core.rules import RuleSetCompiler, normalize_security_rule
from azureguard.core.traffic import evaluate_chain
from azureguard.policy.defaults import DEFAULT_NSG_RULES


def _res(rtype: str, name: str, attributes: dict[str, Any] | None = None) -> Resource:
    return Resource(type=rtype, name=name, attributes=attributes or {})


def _nsg_rule(name: str, priority: int, direction: str, access: str, port: str) -> dict[str, Any]:
    return {
        "name": name,
        "priority": priority,
        "direction": direction,
        "access": access,
        "protocol": "Tcp",
        "destination_port_range": port,
    }


def _compiler(*resources: Resource) -> RuleSetCompiler:
    return RuleSetCompiler(ResourceIndex.build(resources))


class TestNormalize:
    def test_defaults_for_missing_fields(self) -> None:
        rule = normalize_security_rule({})
        assert rule.name == "unnamed"
        assert rule.priority == 100
        assert rule.direction == Direction.INBOUND
        assert rule.access == Access.ALLOW
        assert rule.protocol == "*"
        assert rule.destination_port_range == "*"
        assert rule.origin == "inline"

    def test_case_insensitive_direction_and_access(self) -> None:
        rule = normalize_security_rule(
            {"direction": "outbound", "access": "deny", "priority": "300"}
        )
        assert rule.direction == Direction.OUTBOUND
        assert rule.access == Access.DENY
        assert rule.priority == 300

    def test_port_range_lists(self) -> None:
        rule = normalize_security_rule({"destination_port_ranges": ["80", "443"]})
        assert rule.destination_ports() == ["80", "443"]

    def test_numeric_ports_and_prefixes(self) -> None:
        rule = normalize_security_rule({
            "destination_port_range": 22,
            "source_port_range": 1024,
            "source_address_prefix": {"unexpected": "shape"},
            "destination_address_prefix": True,
        })
        assert rule.destination_port_range == "22"
        assert rule.source_port_range == "1024"
        assert rule.source_address_prefix == "*"
        assert rule.destination_address_prefix == "*"

    def test_explicit_zero_priority_kept(self) -> None:
        assert normalize_security_rule({"priority": 0}).priority == 0
        assert normalize_security_rule({"priority": "high"}).priority == 100


class TestCompileRules:
    def test_numeric_port_deny_only_blocks_that_port(self) -> None:
        deny_ssh = _nsg_rule("deny-22", 100, "Outbound", "Deny", "*")
        deny_ssh["destination_port_range"] = 22
        compiler = _compiler(
            _res("azurerm_network_security_group", "nsg", {
                "security_rule": [
                    _nsg_rule("allow-all", 200, "Outbound", "Allow", "*"),
                    deny_ssh,
                ],
            }),
        )
        chain = compiler.compile_rules("nsg")
        assert chain is not None
        assert [(r.name, r.destination_port_range) for r in chain.outbound] == [
            ("deny-22", "22"),
            ("allow-all", "*"),
        ]
        assert evaluate_chain(chain.outbound, 22).allowed is False
        https = evaluate_chain(chain.outbound, 443)
        assert https.allowed is True
        assert https.rule_name == "allow-all"

    def test_rules_sorted_by_priority_per_direction(self) -> None:
        compiler = _compiler(
            _res("azurerm_network_security_group", "app", {
                "name": "nsg-app",
                "security_rule": [
                    _nsg_rule("b", 200, "Outbound", "Allow", "*"),
                    _nsg_rule("a", 100, "Outbound", "Deny", "22"),
                    _nsg_rule("in", 150, "Inbound", "Allow", "80"),
                ],
            })
        )
        chain = compiler.compile_rules("azurerm_network_security_group_app")
        assert chain is not None
        assert chain.name == "nsg-app"
        assert [r.name for r in chain.outbound] == ["a", "b"]
        assert [r.name for r in chain.inbound] == ["in"]

    def test_equal_priorities_keep_declaration_order(self) -> None:
        compiler = _compiler(
            _res("azurerm_network_security_group", "app", {
                "security_rule": [
                    _nsg_rule("first", 100, "Outbound", "Allow", "80"),
                    _nsg_rule("second", 100, "Outbound", "Deny", "80"),
                ],
            })
        )
        chain = compiler.compile_rules("app")
        assert chain is not None
        assert [r.name for r in chain.outbound] == ["first", "second"]

    def test_separate_rule_resources_are_merged(self) -> None:
        compiler = _compiler(
            _res("azurerm_network_security_group", "app", {
                "security_rule": [_nsg_rule("inline", 300, "Inbound", "Allow", "443")],
            }),
            _res("azurerm_network_security_rule", "ssh", {
                **_nsg_rule("ssh", 100, "Inbound", "Allow", "22"),
                "network_security_group_name": "${azurerm_network_security_group.app.name}",
            }),
        )
        chain = compiler.compile_rules("azurerm_network_security_group_app")
        assert chain is not None
        assert [r.name for r in chain.inbound] == ["ssh", "inline"]
        assert chain.inbound[0].origin == "azurerm_network_security_rule_ssh"

    def test_single_block_form(self) -> None:
        compiler = _compiler(
            _res("azurerm_network_security_group", "app", {
                "security_rule": _nsg_rule("only", 100, "Inbound", "Deny", "*"),
            })
        )
        chain = compiler.compile_rules("app")
        assert chain is not None
        assert [r.name for r in chain.inbound] == ["only"]

    def test_default_rules_exposed_but_not_in_chain(self) -> None:
        compiler = _compiler(_res("azurerm_network_security_group", "empty"))
        chain = compiler.compile_rules("empty")
        assert chain is not None
        assert chain.inbound == []
        assert chain.outbound == []
        assert len(chain.default_rules) == len(DEFAULT_NSG_RULES)

    def test_injected_default_rules(self) -> None:
        custom = SecurityRule(
            name="custom", priority=65000, direction=Direction.OUTBOUND, access=Access.DENY
        )
        compiler = RuleSetCompiler(
            ResourceIndex.build([_res("azurerm_network_security_group", "a")]),
            default_rules=[custom],
        )
        chain = compiler.compile_rules("a")
        assert chain is not None
        assert [r.name for r in chain.default_rules] == ["custom"]

    def test_unknown_nsg_is_none(self) -> None:
        assert _compiler().compile_rules("missing") is None

    def test_chains_are_memoized(self) -> None:
        compiler = _compiler(_res("azurerm_network_security_group", "app"))
        assert compiler.compile_rules("app") is compiler.compile_rules(
            "azurerm_network_security_group_app"
        )

    def test_compile_all_sorted(self) -> None:
        compiler = _compiler(
            _res("azurerm_network_security_group", "b"),
            _res("azurerm_network_security_group", "a"),
        )
        assert [c.nsg_id for c in compiler.compile_all()] == [
            "azurerm_network_security_group_a",
            "azurerm_network_security_group_b",
        ]


class TestFirewalls:
    def test_classic_collections_attach_to_firewall(self) -> None:
        compiler = _compiler(
            _res("azurerm_firewall", "hub", {"name": "fw-hub", "threat_intel_mode": "Deny"}),
            _res("azurerm_firewall_network_rule_collection", "net", {
                "name": "net-rules",
                "azure_firewall_name": "${azurerm_firewall.hub.name}",
                "priority": 200,
                "action": "Allow",
                "rule": [{
                    "name": "dns",
                    "protocols": ["UDP"],
                    "source_addresses": ["10.0.0.0/16"],
                    "destination_addresses": ["8.8.8.8"],
                    "destination_ports": ["53"],
                }],
            }),
            _res("azurerm_firewall_application_rule_collection", "app", {
                "name": "app-rules",
                "azure_firewall_name": "${azurerm_firewall.hub.name}",
                "priority": 100,
                "rule": [{
                    "name": "web",
                    "target_fqdns": ["*.microsoft.com"],
                    "protocol": [{"type": "Https", "port": 443}],
                }],
            }),
        )
        firewall = compiler.compile_firewall("azurerm_firewall_hub")
        assert firewall is not None
        assert firewall.name == "fw-hub"
        assert firewall.threat_intel_mode == "Deny"
        assert [c.name for c in firewall.collections] == ["app-rules", "net-rules"]
        app, net = firewall.collections
        assert app.kind == CollectionKind.APPLICATION
        assert app.action == "Allow"
        assert app.rules[0].protocols == ["Https:443"]
        assert net.rules[0].destination_ports == ["53"]

    def test_firewall_lookup_does_not_match_policy(self) -> None:
        compiler = _compiler(_res("azurerm_firewall_policy", "hub"))
        assert compiler.compile_firewall("hub") is None
        assert compiler.compile_firewalls() == []

    def test_nat_collection_defaults_to_dnat(self) -> None:
        compiler = _compiler(
            _res("azurerm_firewall", "hub"),
            _res("azurerm_firewall_nat_rule_collection", "nat", {
                "azure_firewall_name": "${azurerm_firewall.hub.name}",
                "rule": [
                    {"name": "rdp", "translated_address": "10.0.1.4", "translated_port": 3389}
                ],
            }),
        )
        firewall = compiler.compile_firewall("hub")
        assert firewall is not None
        nat = firewall.collections[0]
        assert nat.kind == CollectionKind.NAT
        assert nat.action == "Dnat"
        assert nat.rules[0].translated_port == "3389"


class TestPolicies:
    def test_groups_sorted_and_collections_parsed(self) -> None:
        compiler = _compiler(
            _res("azurerm_firewall_policy", "main", {"name": "fwp-main"}),
            _res("azurerm_firewall_policy_rule_collection_group", "platform", {
                "name": "platform",
                "priority": 500,
                "firewall_policy_id": "${azurerm_firewall_policy.main.id}",
                "network_rule_collection": [
                    {"name": "net", "priority": 400, "action": "Allow", "rule": [{"name": "ntp"}]},
                ],
                "application_rule_collection": [
                    {"name": "app", "priority": 300, "action": "Deny", "rule": []},
                ],
            }),
            _res("azurerm_firewall_policy_rule_collection_group", "core", {
                "name": "core",
                "priority": 100,
                "firewall_policy_id": "${azurerm_firewall_policy.main.id}",
            }),
        )
        policy = compiler.compile_policy("azurerm_firewall_policy_main")
        assert policy is not None
        assert policy.name == "fwp-main"
        assert [g.name for g in policy.groups] == ["core", "platform"]
        platform = policy.groups[1]
        assert [c.name for c in platform.collections] == ["app", "net"]
        assert platform.collections[0].action == "Deny"
        assert platform.policy_id == "azurerm_firewall_policy_main"

    def test_base_policy_resolved(self) -> None:
        compiler = _compiler(
            _res("azurerm_firewall_policy", "base"),
            _res("azurerm_firewall_policy", "child", {
                "base_policy_id": "${azurerm_firewall_policy.base.id}",
            }),
        )
        policies = {p.policy_id: p for p in compiler.compile_policies()}
        assert policies["azurerm_firewall_policy_child"].base_policy_id == (
            "azurerm_firewall_policy_base"
        )
        assert policies["azurerm_firewall_policy_base"].base_policy_id is None

    def test_zero_priority_group_sorts_first(self) -> None:
        compiler = _compiler(
            _res("azurerm_firewall_policy", "main"),
            _res("azurerm_firewall_policy_rule_collection_group", "late", {
                "priority": 100,
                "firewall_policy_id": "${azurerm_firewall_policy.main.id}",
            }),
            _res("azurerm_firewall_policy_rule_collection_group", "first", {
                "priority": 0,
                "firewall_policy_id": "${azurerm_firewall_policy.main.id}",
                "network_rule_collection": [{"name": "net", "priority": 0, "rule": []}],
            }),
        )
        policy = compiler.compile_policy("azurerm_firewall_policy_main")
        assert policy is not None
        assert [(g.name, g.priority) for g in policy.groups] == [("first", 0), ("late", 100)]
        assert policy.groups[0].collections[0].priority == 0
