"""Canonical model — resources, rules, topology, flows, findings, postures."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

INTERNET_NODE_ID = "Internet"


class Severity(StrEnum):
    """Fixed total order: declaration order is most to least severe."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


SEVERITY_ORDER: list[Severity] = list(Severity)


def severity_rank(severity: Severity) -> int:
    return SEVERITY_ORDER.index(severity)


class FindingCategory(StrEnum):
    ENCRYPTION = "encryption"
    NETWORK = "network"
    IDENTITY = "identity"
    LOGGING = "logging"
    ACCESS_CONTROL = "access-control"
    DATA_PROTECTION = "data-protection"
    CONFIGURATION = "configuration"


class ComplianceStatus(StrEnum):
    COMPLIANT = "compliant"
    WARNING = "warning"
    NON_COMPLIANT = "non-compliant"


class Operator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    LESS_THAN = "less_than"
    GREATER_THAN = "greater_than"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class Direction(StrEnum):
    INBOUND = "Inbound"
    OUTBOUND = "Outbound"


class Access(StrEnum):
    ALLOW = "Allow"
    DENY = "Deny"


class FlowType(StrEnum):
    DATA = "data"
    CONTROL = "control"
    EVENT = "event"


class ReferenceKind(StrEnum):
    TYPED = "typed"  # matched a <type>.<local_name> fragment
    NAME = "name"  # matched by substring / name attribute fallback
    UNRESOLVED = "unresolved"


class CollectionKind(StrEnum):
    APPLICATION = "application"
    NETWORK = "network"
    NAT = "nat"


class ConnectionType(StrEnum):
    VPN = "VPN"
    EXPRESS_ROUTE = "ExpressRoute"
    VNET_PEERING = "VNetPeering"


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


class Resource(BaseModel):
    """A typed resource declaration with a free-form attribute bag."""

    model_config = ConfigDict(frozen=True)

    type: str
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return resource_key(self.type, self.name)


def resource_key(rtype: str, name: str) -> str:
    return f"{rtype}_{name}"


class Reference(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw: str
    kind: ReferenceKind
    resolved_key: str | None = None
    attribute_path: str = ""


# ---------------------------------------------------------------------------
# Rule sets
# ---------------------------------------------------------------------------


class SecurityRule(BaseModel):
    name: str
    priority: int = 100
    direction: Direction
    access: Access
    protocol: str = "*"
    source_port_range: str = "*"
    destination_port_range: str = "*"
    source_address_prefix: str = "*"
    destination_address_prefix: str = "*"
    source_port_ranges: list[str] = Field(default_factory=list)
    destination_port_ranges: list[str] = Field(default_factory=list)
    source_address_prefixes: list[str] = Field(default_factory=list)
    destination_address_prefixes: list[str] = Field(default_factory=list)
    description: str = ""
    origin: str = "inline"  # "inline", "platform", or the key of a separate rule resource

    def destination_ports(self) -> list[str]:
        if self.destination_port_ranges:
            return list(self.destination_port_ranges)
        return [self.destination_port_range]


class RuleChain(BaseModel):
    nsg_id: str
    name: str
    inbound: list[SecurityRule] = Field(default_factory=list)
    outbound: list[SecurityRule] = Field(default_factory=list)
    default_rules: list[SecurityRule] = Field(default_factory=list)

    def for_direction(self, direction: Direction) -> list[SecurityRule]:
        return self.inbound if direction == Direction.INBOUND else self.outbound


class FirewallRule(BaseModel):
    name: str
    protocols: list[str] = Field(default_factory=list)
    source_addresses: list[str] = Field(default_factory=list)
    source_ip_groups: list[str] = Field(default_factory=list)
    destination_addresses: list[str] = Field(default_factory=list)
    destination_ports: list[str] = Field(default_factory=list)
    destination_fqdns: list[str] = Field(default_factory=list)
    target_fqdns: list[str] = Field(default_factory=list)
    fqdn_tags: list[str] = Field(default_factory=list)
    translated_address: str | None = None
    translated_port: str | None = None
    description: str = ""


class RuleCollection(BaseModel):
    name: str
    kind: CollectionKind
    priority: int
    action: str
    rules: list[FirewallRule] = Field(default_factory=list)
    origin: str = ""


class RuleCollectionGroup(BaseModel):
    id: str
    name: str
    priority: int
    policy_id: str | None = None
    collections: list[RuleCollection] = Field(default_factory=list)


class FirewallRuleSet(BaseModel):
    firewall_id: str
    name: str
    policy_id: str | None = None
    threat_intel_mode: str = "Alert"
    collections: list[RuleCollection] = Field(default_factory=list)


class FirewallPolicyRuleSet(BaseModel):
    policy_id: str
    name: str
    base_policy_id: str | None = None
    threat_intel_mode: str = "Alert"
    groups: list[RuleCollectionGroup] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------


class Subnet(BaseModel):
    id: str
    name: str
    vnet_id: str | None = None
    address_prefix: str = ""
    address_prefixes: list[str] = Field(default_factory=list)
    nsg_id: str | None = None
    route_table_id: str | None = None
    service_endpoints: list[str] = Field(default_factory=list)
    delegations: list[str] = Field(default_factory=list)
    private_endpoint_network_policies: str = "Enabled"
    resources: list[str] = Field(default_factory=list)


class VNet(BaseModel):
    id: str
    name: str
    address_space: list[str] = Field(default_factory=list)
    location: str = "unknown"
    resource_group_id: str | None = None
    subnets: list[Subnet] = Field(default_factory=list)


class Peering(BaseModel):
    id: str
    name: str
    vnet_id: str | None = None
    remote_vnet_id: str = ""
    remote_vnet_key: str | None = None
    remote_vnet_name: str | None = None
    remote_address_space: list[str] | None = None
    allow_virtual_network_access: bool = True
    allow_forwarded_traffic: bool = False
    allow_gateway_transit: bool = False
    use_remote_gateways: bool = False
    state: str = "Connected"


class PrivateEndpoint(BaseModel):
    id: str
    name: str
    subnet_id: str = ""
    target_resource_id: str = ""
    target_key: str | None = None
    target_type: str = ""
    group_ids: list[str] = Field(default_factory=list)
    linked_dns_zones: list[str] = Field(default_factory=list)


class GatewayConnection(BaseModel):
    id: str
    name: str
    type: ConnectionType
    source_id: str = ""
    target_id: str = ""
    status: str = "Connected"


class VirtualNetworkGateway(BaseModel):
    id: str
    name: str
    gateway_type: str = "Vpn"
    vpn_type: str = "RouteBased"
    sku: str = ""
    active_active: bool = False
    enable_bgp: bool = False
    subnet_id: str | None = None
    public_ip_ids: list[str] = Field(default_factory=list)


class FrontendIp(BaseModel):
    name: str
    public_ip_id: str | None = None
    subnet_id: str | None = None
    private_ip_address: str | None = None


class LoadBalancingRule(BaseModel):
    name: str
    protocol: str = "Tcp"
    frontend_port: int | None = None
    backend_port: int | None = None
    probe_id: str | None = None


class HealthProbe(BaseModel):
    name: str
    protocol: str = "Tcp"
    port: int | None = None
    request_path: str | None = None


class LoadBalancer(BaseModel):
    id: str
    name: str
    sku: str = "Basic"
    frontend_ips: list[FrontendIp] = Field(default_factory=list)
    backend_pools: list[str] = Field(default_factory=list)
    probes: list[HealthProbe] = Field(default_factory=list)
    rules: list[LoadBalancingRule] = Field(default_factory=list)

    @property
    def is_public(self) -> bool:
        return any(f.public_ip_id for f in self.frontend_ips)


class ApplicationGateway(BaseModel):
    id: str
    name: str
    sku: str = ""
    tier: str = ""
    waf_enabled: bool = False
    waf_mode: str | None = None
    firewall_policy_id: str | None = None
    subnet_id: str | None = None
    public_ip_ids: list[str] = Field(default_factory=list)
    frontend_ports: list[int] = Field(default_factory=list)


class FirewallNode(BaseModel):
    id: str
    name: str
    sku_tier: str = "Standard"
    threat_intel_mode: str = "Alert"
    policy_id: str | None = None
    subnet_id: str | None = None
    public_ip_ids: list[str] = Field(default_factory=list)


class NsgBinding(BaseModel):
    """The NSG that governs a resource and where it is attached."""

    nsg_id: str
    scope: str  # "interface" or "subnet"
    via: str  # NIC or subnet key the NSG is attached to


class TopologySummary(BaseModel):
    vnet_count: int
    subnet_count: int
    peering_count: int
    private_endpoint_count: int
    gateway_count: int
    load_balancer_count: int
    application_gateway_count: int
    address_spaces: list[str] = Field(default_factory=list)


class NetworkTopology(BaseModel):
    vnets: list[VNet] = Field(default_factory=list)
    # subnets whose virtual network did not resolve
    unattached_subnets: list[Subnet] = Field(default_factory=list)
    peerings: list[Peering] = Field(default_factory=list)
    private_endpoints: list[PrivateEndpoint] = Field(default_factory=list)
    gateway_connections: list[GatewayConnection] = Field(default_factory=list)
    gateways: list[VirtualNetworkGateway] = Field(default_factory=list)
    load_balancers: list[LoadBalancer] = Field(default_factory=list)
    application_gateways: list[ApplicationGateway] = Field(default_factory=list)
    firewalls: list[FirewallNode] = Field(default_factory=list)
    interface_nsgs: dict[str, str] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (
            self.vnets
            or self.unattached_subnets
            or self.peerings
            or self.private_endpoints
            or self.gateway_connections
            or self.gateways
            or self.load_balancers
            or self.application_gateways
            or self.firewalls
        )

    def subnets(self) -> list[Subnet]:
        return [s for v in self.vnets for s in v.subnets] + self.unattached_subnets

    def subnet_by_id(self, subnet_id: str) -> Subnet | None:
        for subnet in self.subnets():
            if subnet.id == subnet_id:
                return subnet
        return None

    def subnet_for(self, resource_key: str) -> Subnet | None:
        """Subnet that lists *resource_key* as a member, first in VNet order."""
        for subnet in self.subnets():
            if resource_key in subnet.resources:
                return subnet
        return None

    def summary(self) -> TopologySummary:
        spaces: list[str] = []
        for vnet in self.vnets:
            spaces.extend(vnet.address_space)
        return TopologySummary(
            vnet_count=len(self.vnets),
            subnet_count=len(self.subnets()),
            peering_count=len(self.peerings),
            private_endpoint_count=len(self.private_endpoints),
            gateway_count=len(self.gateway_connections),
            load_balancer_count=len(self.load_balancers),
            application_gateway_count=len(self.application_gateways),
            address_spaces=spaces,
        )


# ---------------------------------------------------------------------------
# Traffic
# ---------------------------------------------------------------------------


class TrafficFlow(BaseModel):
    source_id: str
    target_id: str
    ports: list[str] = Field(default_factory=list)
    protocol: str = "Tcp"
    flow_type: FlowType = FlowType.DATA
    direction: Direction = Direction.OUTBOUND
    allowed: bool = True
    deciding_rule: str | None = None
    nsg_id: str | None = None
    label: str = ""
    implicit: bool = False


# ---------------------------------------------------------------------------
# Posture
# ---------------------------------------------------------------------------


class PostureRule(BaseModel):
    """One row of the declarative security rule table."""

    id: str
    resource_type: str
    attribute: str
    operator: Operator
    value: Any = None
    severity: Severity
    title: str
    description: str = ""
    remediation: str = ""
    category: FindingCategory | None = None
    compliance_frameworks: list[str] = Field(default_factory=list)


class Finding(BaseModel):
    id: str
    rule_id: str
    resource_id: str
    resource_type: str
    severity: Severity
    category: FindingCategory
    title: str
    description: str = ""
    attribute_path: str | None = None
    current_value: Any = None
    expected_value: Any = None
    remediation: str = ""
    impact: str = ""
    compliance_frameworks: list[str] = Field(default_factory=list)


class IdentityInfo(BaseModel):
    has_managed_identity: bool = False
    identity_type: str | None = None


class PrivateEndpointInfo(BaseModel):
    has_private_endpoint: bool = False
    private_endpoint_id: str | None = None
    private_endpoint_name: str | None = None
    subnet_id: str | None = None


class Posture(BaseModel):
    resource_id: str
    resource_type: str
    findings: list[Finding] = Field(default_factory=list)
    is_encrypted: bool = True
    has_public_endpoint: bool = False
    has_nsg: bool = True
    missing_encryption: list[str] = Field(default_factory=list)
    public_endpoints: list[str] = Field(default_factory=list)
    nsg_rules: list[SecurityRule] = Field(default_factory=list)
    identity: IdentityInfo = Field(default_factory=IdentityInfo)
    private_endpoint: PrivateEndpointInfo = Field(default_factory=PrivateEndpointInfo)
    score: int = 100
    grade: Severity = Severity.LOW
    compliance: ComplianceStatus = ComplianceStatus.COMPLIANT


class PostureSummary(BaseModel):
    total_resources: int = 0
    compliance_counts: dict[ComplianceStatus, int] = Field(default_factory=dict)
    severity_counts: dict[Severity, int] = Field(default_factory=dict)
    overall_score: int = 100


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class AdapterStats(BaseModel):
    total: int
    supported: int
    skipped: int


class AdapterOutput(BaseModel):
    """Returned by adapters. Contains only Resource records."""

    resources: list[Resource]
    stats: AdapterStats


class AnalysisResult(BaseModel):
    """Assembled at the end of a run; every field is derived from the input."""

    topology: NetworkTopology
    rule_chains: list[RuleChain] = Field(default_factory=list)
    firewalls: list[FirewallRuleSet] = Field(default_factory=list)
    firewall_policies: list[FirewallPolicyRuleSet] = Field(default_factory=list)
    flows: list[TrafficFlow] = Field(default_factory=list)
    postures: dict[str, Posture] = Field(default_factory=dict)
    summary: PostureSummary = Field(default_factory=PostureSummary)
    stats: AdapterStats = Field(
        default_factory=lambda: AdapterStats(total=0, supported=0, skipped=0)
    )
