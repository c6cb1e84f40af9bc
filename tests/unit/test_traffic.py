"""Tests for rule evaluation and traffic simulation."""

from __future__ import annotations

from typing import Any

from azureguard.core.index import ResourceIndex
from azureguard.core.model import (
    INTERNET_NODE_ID,
    Access,
    Direction,
    FlowType,
    Resource,
    SecurityRule,
)
from azureguard.core.rules import RuleSetCompiler
from azureguard.core.topology import build_topology
from azureguard.core.traffic import (
    TrafficSimulator,
    evaluate_chain,
    infer_profile,
    port_matches,
    protocol_matches,
    simulate_flows,
)


def _res(
    rtype: str,
    name: str,
    attributes: dict[str, Any] | None = None,
    dependencies: list[str] | None = None,
) -> Resource:
    return Resource(
        type=rtype, name=name, attributes=attributes or {}, dependencies=dependencies or []
    )


def _rule(name: str, priority: int, access: Access, port: str, protocol: str = "*") -> SecurityRule:
    return SecurityRule(
        name=name,
        priority=priority,
        direction=Direction.OUTBOUND,
        access=access,
        protocol=protocol,
        destination_port_range=port,
    )


def _simulator(resources: list[Resource]) -> TrafficSimulator:
    index = ResourceIndex.build(resources)
    return TrafficSimulator(index, build_topology(index), RuleSetCompiler(index))


class TestPortMatching:
    def test_wildcard(self) -> None:
        assert port_matches("*", 8443)

    def test_exact(self) -> None:
        assert port_matches("443", 443)
        assert not port_matches("443", 80)

    def test_range(self) -> None:
        assert port_matches("1000-2000", 1500)
        assert port_matches("1000-2000", 1000)
        assert port_matches("1000-2000", 2000)
        assert not port_matches("1000-2000", 999)

    def test_malformed_range(self) -> None:
        assert not port_matches("a-b", 1)

    def test_protocol(self) -> None:
        assert protocol_matches("*", "Tcp")
        assert protocol_matches("TCP", "Tcp")
        assert not protocol_matches("Udp", "Tcp")


class TestEvaluateChain:
    def test_first_match_at_lowest_priority_wins(self) -> None:
        rules = [
            _rule("allow-all", 200, Access.ALLOW, "*"),
            _rule("deny-ssh", 100, Access.DENY, "22"),
        ]
        ssh = evaluate_chain(rules, 22)
        assert ssh.allowed is False
        assert ssh.rule_name == "deny-ssh"
        assert ssh.priority == 100

        https = evaluate_chain(rules, 443)
        assert https.allowed is True
        assert https.rule_name == "allow-all"

    def test_empty_chain_is_default_deny(self) -> None:
        decision = evaluate_chain([], 443)
        assert decision.allowed is False
        assert decision.rule_name == "DenyAllOutBound"
        assert decision.priority == 65500

    def test_inbound_default_name(self) -> None:
        assert evaluate_chain([], 80, direction=Direction.INBOUND).rule_name == "DenyAllInBound"

    def test_protocol_mismatch_skips_rule(self) -> None:
        rules = [_rule("udp-only", 100, Access.ALLOW, "*", protocol="Udp")]
        assert evaluate_chain(rules, 53, "Tcp").allowed is False

    def test_port_range_lists(self) -> None:
        rule = SecurityRule(
            name="web",
            priority=100,
            direction=Direction.OUTBOUND,
            access=Access.ALLOW,
            destination_port_ranges=["80", "8000-8100"],
        )
        assert evaluate_chain([rule], 8080).allowed
        assert not evaluate_chain([rule], 443).allowed


class TestInferProfile:
    def test_sql_target(self) -> None:
        profile = infer_profile("azurerm_linux_virtual_machine", "azurerm_mssql_server")
        assert profile is not None
        assert profile.ports == (1433,)
        assert profile.flow_type == FlowType.DATA

    def test_key_vault_is_control_flow(self) -> None:
        profile = infer_profile("azurerm_kubernetes_cluster", "azurerm_key_vault")
        assert profile is not None
        assert profile.flow_type == FlowType.CONTROL

    def test_unrecognized_pairs(self) -> None:
        assert infer_profile("azurerm_subnet", "azurerm_mssql_server") is None
        assert infer_profile("azurerm_linux_virtual_machine", "azurerm_subnet") is None


class TestSimulateEdge:
    def test_compute_to_database_without_nsg(self) -> None:
        simulator = _simulator([
            _res("azurerm_linux_virtual_machine", "app", dependencies=["azurerm_mssql_server_db"]),
            _res("azurerm_mssql_server", "db"),
        ])
        (flow,) = simulator.simulate()
        assert flow.source_id == "azurerm_linux_virtual_machine_app"
        assert flow.target_id == "azurerm_mssql_server_db"
        assert flow.ports == ["1433"]
        assert flow.allowed is True
        assert flow.deciding_rule is None
        assert flow.nsg_id is None

    def test_hub_spoke_flows(self, hub_spoke: list[Resource]) -> None:
        index = ResourceIndex.build(hub_spoke)
        flows = simulate_flows(index, build_topology(index), RuleSetCompiler(index))
        by_target = {f.target_id: f for f in flows}

        sql = by_target["azurerm_mssql_server_db"]
        assert sql.allowed is False
        assert sql.deciding_rule == "deny-sql-out"
        assert sql.nsg_id == "azurerm_network_security_group_app"

        vault = by_target["azurerm_key_vault_kv"]
        assert vault.allowed is True
        assert vault.deciding_rule == "allow-https-out"
        assert vault.flow_type == FlowType.CONTROL

        internet = by_target["azurerm_public_ip_web"]
        assert internet.source_id == INTERNET_NODE_ID
        assert internet.direction == Direction.INBOUND
        assert internet.implicit

    def test_ports_with_different_decisions_split(self) -> None:
        simulator = _simulator([
            _res("azurerm_network_security_group", "nsg", {
                "security_rule": [{
                    "name": "https",
                    "priority": 100,
                    "direction": "Outbound",
                    "access": "Allow",
                    "protocol": "Tcp",
                    "destination_port_range": "443",
                }],
            }),
            _res("azurerm_subnet", "s", {
                "network_security_group_id": "${azurerm_network_security_group.nsg.id}",
            }),
            _res("azurerm_network_interface", "n", {
                "ip_configuration": [{"subnet_id": "${azurerm_subnet.s.id}"}],
            }),
            _res("azurerm_linux_virtual_machine", "vm", {
                "network_interface_ids": ["${azurerm_network_interface.n.id}"],
            }, ["azurerm_servicebus_namespace_bus"]),
            _res("azurerm_servicebus_namespace", "bus"),
        ])
        flows = simulator.simulate_edge(
            "azurerm_linux_virtual_machine_vm", "azurerm_servicebus_namespace_bus"
        )
        decisions = {tuple(f.ports): (f.allowed, f.deciding_rule) for f in flows}
        assert decisions == {
            ("5671",): (False, "DenyAllOutBound"),
            ("443",): (True, "https"),
        }
        assert all(f.flow_type == FlowType.EVENT for f in flows)

    def test_subnet_outside_known_vnets_still_governs(self) -> None:
        simulator = _simulator([
            _res("azurerm_network_security_group", "deny", {
                "security_rule": [{
                    "name": "deny-sql",
                    "priority": 100,
                    "direction": "Outbound",
                    "access": "Deny",
                    "protocol": "Tcp",
                    "destination_port_range": 1433,
                }],
            }),
            _res("azurerm_subnet", "s", {"virtual_network_name": "vnet-in-other-module"}),
            _res("azurerm_subnet_network_security_group_association", "s", {
                "subnet_id": "${azurerm_subnet.s.id}",
                "network_security_group_id": "${azurerm_network_security_group.deny.id}",
            }),
            _res("azurerm_network_interface", "n", {
                "ip_configuration": [{"subnet_id": "${azurerm_subnet.s.id}"}],
            }),
            _res("azurerm_linux_virtual_machine", "vm", {
                "network_interface_ids": ["${azurerm_network_interface.n.id}"],
            }, ["azurerm_mssql_server_db"]),
            _res("azurerm_mssql_server", "db"),
        ])
        (flow,) = simulator.simulate_edge(
            "azurerm_linux_virtual_machine_vm", "azurerm_mssql_server_db"
        )
        assert flow.allowed is False
        assert flow.deciding_rule == "deny-sql"
        assert flow.nsg_id == "azurerm_network_security_group_deny"

    def test_unknown_endpoints(self) -> None:
        simulator = _simulator([_res("azurerm_linux_virtual_machine", "vm")])
        assert simulator.simulate_edge("azurerm_linux_virtual_machine_vm", "missing") == []


class TestCandidateEdges:
    def test_dependencies_deduplicated_and_resolved(self) -> None:
        simulator = _simulator([
            _res("azurerm_linux_virtual_machine", "vm", dependencies=[
                "azurerm_key_vault_kv",
                "azurerm_key_vault.kv",
                "azurerm_key_vault_kv",
                "azurerm_linux_virtual_machine_vm",
                "azurerm_storage_account_missing",
            ]),
            _res("azurerm_key_vault", "kv"),
        ])
        assert simulator.candidate_edges() == [
            ("azurerm_linux_virtual_machine_vm", "azurerm_key_vault_kv")
        ]


class TestPatternFlows:
    def test_aks_with_workload_identity_pulls_from_registry(self) -> None:
        simulator = _simulator([
            _res("azurerm_kubernetes_cluster", "aks", {"oidc_issuer_enabled": True}),
            _res("azurerm_container_registry", "acr"),
        ])
        (flow,) = simulator.pattern_flows()
        assert flow.label == "Pull Images"
        assert flow.ports == ["443"]
        assert flow.implicit

    def test_aks_without_workload_identity(self) -> None:
        simulator = _simulator([
            _res("azurerm_kubernetes_cluster", "aks"),
            _res("azurerm_container_registry", "acr"),
        ])
        assert simulator.pattern_flows() == []

    def test_app_telemetry(self) -> None:
        simulator = _simulator([
            _res("azurerm_linux_web_app", "api", {
                "app_settings": {"APPLICATIONINSIGHTS_CONNECTION_STRING": "InstrumentationKey=x"},
            }),
            _res("azurerm_application_insights", "ai"),
        ])
        (flow,) = simulator.pattern_flows()
        assert flow.label == "Telemetry"
        assert flow.target_id == "azurerm_application_insights_ai"

    def test_declared_edge_not_duplicated(self) -> None:
        simulator = _simulator([
            _res(
                "azurerm_kubernetes_cluster", "aks", {"workload_identity_enabled": True},
                ["azurerm_container_registry_acr"],
            ),
            _res("azurerm_container_registry", "acr"),
        ])
        flows = simulator.simulate()
        assert len(flows) == 1
        assert flows[0].label == "Pull"
        assert not flows[0].implicit
