"""Traffic simulator — port inference and priority-ordered NSG evaluation."""

from __future__ import annotations

from concurrent.futures import as_completed
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from collections.abc import Iterable
    from concurrent.futures import Executor

    from azureguard.core.index import ResourceIndex
    from azureguard.core.rules import RuleSetCompiler

from azureguard.core.attributes import get_path, truthy
from azureguard.core.model import (
    INTERNET_NODE_ID,
    Access,
    Direction,
    FlowType,
    NetworkTopology,
    Resource,
    SecurityRule,
    TrafficFlow,
)
from azureguard.core.topology import effective_nsg
from azureguard.logger import logger
from azureguard.policy.defaults import DEFAULT_DENY_INBOUND, DEFAULT_DENY_OUTBOUND


class PortProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    ports: tuple[int, ...]
    protocol: str = "Tcp"
    flow_type: FlowType = FlowType.DATA
    label: str = ""


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    rule_name: str | None = None
    priority: int | None = None


# Workload and ingress types that originate traffic toward their dependencies.
SOURCE_TYPES: frozenset[str] = frozenset({
    "azurerm_virtual_machine",
    "azurerm_linux_virtual_machine",
    "azurerm_windows_virtual_machine",
    "azurerm_linux_virtual_machine_scale_set",
    "azurerm_windows_virtual_machine_scale_set",
    "azurerm_app_service",
    "azurerm_linux_web_app",
    "azurerm_windows_web_app",
    "azurerm_function_app",
    "azurerm_linux_function_app",
    "azurerm_windows_function_app",
    "azurerm_kubernetes_cluster",
    "azurerm_container_group",
    "azurerm_container_app",
    "azurerm_application_gateway",
    "azurerm_api_management",
    "azurerm_lb",
})

TARGET_CATEGORIES: dict[str, str] = {
    "azurerm_sql_server": "sql",
    "azurerm_sql_database": "sql",
    "azurerm_mssql_server": "sql",
    "azurerm_mssql_database": "sql",
    "azurerm_mssql_managed_instance": "sql",
    "azurerm_postgresql_server": "postgresql",
    "azurerm_postgresql_flexible_server": "postgresql",
    "azurerm_mysql_server": "mysql",
    "azurerm_mysql_flexible_server": "mysql",
    "azurerm_mariadb_server": "mysql",
    "azurerm_cosmosdb_account": "cosmosdb",
    "azurerm_redis_cache": "cache",
    "azurerm_storage_account": "storage",
    "azurerm_key_vault": "secrets",
    "azurerm_container_registry": "registry",
    "azurerm_log_analytics_workspace": "monitoring",
    "azurerm_application_insights": "monitoring",
    "azurerm_servicebus_namespace": "messaging",
    "azurerm_eventhub_namespace": "messaging",
    "azurerm_app_service": "web",
    "azurerm_linux_web_app": "web",
    "azurerm_windows_web_app": "web",
    "azurerm_function_app": "web",
    "azurerm_linux_function_app": "web",
    "azurerm_windows_function_app": "web",
}

CATEGORY_PORTS: dict[str, PortProfile] = {
    "sql": PortProfile(ports=(1433,), label="SQL"),
    "postgresql": PortProfile(ports=(5432,), label="PostgreSQL"),
    "mysql": PortProfile(ports=(3306,), label="MySQL"),
    "cosmosdb": PortProfile(ports=(443,), label="Cosmos DB"),
    "cache": PortProfile(ports=(6379, 6380), label="Cache"),
    "storage": PortProfile(ports=(443,), label="Storage"),
    "secrets": PortProfile(ports=(443,), flow_type=FlowType.CONTROL, label="Secrets"),
    "registry": PortProfile(ports=(443,), label="Pull"),
    "monitoring": PortProfile(ports=(443,), label="Logs"),
    "messaging": PortProfile(ports=(5671, 443), flow_type=FlowType.EVENT, label="Events"),
    "web": PortProfile(ports=(80, 443), label="HTTP"),
}

_APPINSIGHTS_SETTINGS = ("APPINSIGHTS_INSTRUMENTATIONKEY", "APPLICATIONINSIGHTS_CONNECTION_STRING")


def infer_profile(source_type: str, target_type: str) -> PortProfile | None:
    """Ports, protocol and flow type for a (source, target) type pair, if recognized."""
    if source_type not in SOURCE_TYPES:
        return None
    category = TARGET_CATEGORIES.get(target_type)
    if category is None:
        return None
    return CATEGORY_PORTS[category]


# ---------------------------------------------------------------------------
# Rule evaluation
# ---------------------------------------------------------------------------


def protocol_matches(rule_protocol: str, protocol: str) -> bool:
    rp = rule_protocol.strip().lower()
    return rp in ("*", "any") or rp == protocol.strip().lower()


def port_matches(port_range: str, port: int) -> bool:
    """True if *port_range* is ``*``, equals *port*, or is a ``start-end`` range holding it."""
    port_range = port_range.strip()
    if port_range == "*":
        return True
    if "-" in port_range:
        start, _, end = port_range.partition("-")
        try:
            return int(start) <= port <= int(end)
        except ValueError:
            return False
    return port_range == str(port)


def evaluate_chain(
    rules: Iterable[SecurityRule],
    port: int,
    protocol: str = "Tcp",
    direction: Direction = Direction.OUTBOUND,
) -> Decision:
    """First matching rule in ascending priority decides; no match is a deny."""
    for rule in sorted(rules, key=lambda r: r.priority):
        if not protocol_matches(rule.protocol, protocol):
            continue
        if any(port_matches(port_range, port) for port_range in rule.destination_ports()):
            return Decision(
                allowed=rule.access == Access.ALLOW, rule_name=rule.name, priority=rule.priority
            )
    default = DEFAULT_DENY_OUTBOUND if direction == Direction.OUTBOUND else DEFAULT_DENY_INBOUND
    return Decision(allowed=False, rule_name=default, priority=65500)


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------


def flow_sort_key(flow: TrafficFlow) -> tuple[str, str, str, tuple[str, ...], str]:
    return (flow.source_id, flow.target_id, flow.protocol, tuple(flow.ports), flow.label)


def _uses_workload_identity(aks: Resource) -> bool:
    attrs = aks.attributes
    return truthy(attrs.get("oidc_issuer_enabled")) or truthy(
        attrs.get("workload_identity_enabled")
    )


def _is_app(rtype: str) -> bool:
    return "web_app" in rtype or "function_app" in rtype or rtype == "azurerm_app_service"


def _reports_telemetry(app: Resource) -> bool:
    return any(
        truthy(get_path(app.attributes, f"app_settings.{setting}"))
        for setting in _APPINSIGHTS_SETTINGS
    )


class TrafficSimulator:
    """Simulates traffic permission for each dependency edge."""

    def __init__(
        self,
        index: ResourceIndex,
        topology: NetworkTopology,
        compiler: RuleSetCompiler,
    ) -> None:
        self._index = index
        self._topology = topology
        self._compiler = compiler

    def candidate_edges(self) -> list[tuple[str, str]]:
        """(source, target) pairs from declared dependencies, deduplicated, key order."""
        edges: list[tuple[str, str]] = []
        seen: set[tuple[str, str]] = set()
        for resource in sorted(self._index, key=lambda r: r.key):
            for dep in resource.dependencies:
                target = (
                    dep if dep in self._index else self._index.resolve_reference(dep, fuzzy=False)
                )
                if target is None:
                    logger.debug("Dependency %s of %s not in resource set", dep, resource.key)
                    continue
                edge = (resource.key, target)
                if target == resource.key or edge in seen:
                    continue
                seen.add(edge)
                edges.append(edge)
        return edges

    def simulate_edge(self, source_key: str, target_key: str) -> list[TrafficFlow]:
        source = self._index.lookup(source_key)
        target = self._index.lookup(target_key)
        if source is None or target is None:
            return []
        profile = infer_profile(source.type, target.type)
        if profile is None:
            return []
        return self._evaluate(source, target, profile, profile.label, implicit=False)

    def _evaluate(
        self,
        source: Resource,
        target: Resource,
        profile: PortProfile,
        label: str,
        implicit: bool,
    ) -> list[TrafficFlow]:
        binding = effective_nsg(self._index, self._topology, source.key)
        chain = self._compiler.compile_rules(binding.nsg_id) if binding else None

        def flow(ports: list[int], allowed: bool, rule: str | None) -> TrafficFlow:
            return TrafficFlow(
                source_id=source.key,
                target_id=target.key,
                ports=[str(p) for p in ports],
                protocol=profile.protocol,
                flow_type=profile.flow_type,
                direction=Direction.OUTBOUND,
                allowed=allowed,
                deciding_rule=rule,
                nsg_id=binding.nsg_id if binding else None,
                label=label,
                implicit=implicit,
            )

        if chain is None:
            # No enforcing NSG: permitted, with no deciding rule.
            return [flow(list(profile.ports), True, None)]

        grouped: dict[tuple[bool, str | None], list[int]] = {}
        for port in profile.ports:
            decision = evaluate_chain(chain.outbound, port, profile.protocol)
            grouped.setdefault((decision.allowed, decision.rule_name), []).append(port)
        return [flow(ports, allowed, rule) for (allowed, rule), ports in grouped.items()]

    def edge_flows(self) -> list[TrafficFlow]:
        """Implicit flows: Internet reachability of public IPs."""
        return [
            TrafficFlow(
                source_id=INTERNET_NODE_ID,
                target_id=pip.key,
                ports=["*"],
                protocol="*",
                flow_type=FlowType.DATA,
                direction=Direction.INBOUND,
                allowed=True,
                label="Internet",
                implicit=True,
            )
            for pip in self._index.of_type("azurerm_public_ip")
        ]

    def pattern_flows(self, existing: Iterable[tuple[str, str]] = ()) -> list[TrafficFlow]:
        """Flows implied by configuration rather than declared dependencies."""
        skip = set(existing)
        flows: list[TrafficFlow] = []
        registries = self._index.of_type("azurerm_container_registry")
        for aks in self._index.of_type("azurerm_kubernetes_cluster"):
            if not _uses_workload_identity(aks):
                continue
            for acr in registries:
                if (aks.key, acr.key) in skip:
                    continue
                flows.extend(
                    self._evaluate(aks, acr, CATEGORY_PORTS["registry"], "Pull Images", True)
                )

        insights = self._index.of_type("azurerm_application_insights")
        for app in self._index:
            if not (_is_app(app.type) and _reports_telemetry(app)):
                continue
            for component in insights:
                if (app.key, component.key) in skip:
                    continue
                flows.extend(
                    self._evaluate(app, component, CATEGORY_PORTS["monitoring"], "Telemetry", True)
                )
        return flows

    def simulate(self, executor: Executor | None = None) -> list[TrafficFlow]:
        edges = self.candidate_edges()
        flows: list[TrafficFlow] = []
        if executor is None:
            for source, target in edges:
                flows.extend(self.simulate_edge(source, target))
        else:
            futures = [executor.submit(self.simulate_edge, s, t) for s, t in edges]
            for future in as_completed(futures):
                flows.extend(future.result())
        flows.extend(self.edge_flows())
        flows.extend(self.pattern_flows(edges))
        return sorted(flows, key=flow_sort_key)


def simulate_flows(
    index: ResourceIndex,
    topology: NetworkTopology,
    compiler: RuleSetCompiler,
) -> list[TrafficFlow]:
    return TrafficSimulator(index, topology, compiler).simulate()
