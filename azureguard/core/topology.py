"""Topology builder — VNets, subnets, peerings, endpoints, gateways, balancers."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from azureguard.core.index import ResourceIndex

from azureguard.core.attributes import (
    as_list,
    as_str_list,
    blocks,
    first_block,
    get_path,
    text,
    to_int,
)
from azureguard.core.model import (
    ApplicationGateway,
    ConnectionType,
    FirewallNode,
    FrontendIp,
    GatewayConnection,
    HealthProbe,
    LoadBalancer,
    LoadBalancingRule,
    NetworkTopology,
    NsgBinding,
    Peering,
    PrivateEndpoint,
    Resource,
    Subnet,
    VirtualNetworkGateway,
    VNet,
)
from azureguard.logger import logger

VNET_TYPE = "azurerm_virtual_network"
SUBNET_TYPE = "azurerm_subnet"
NIC_TYPE = "azurerm_network_interface"
NSG_TYPE = "azurerm_network_security_group"
ROUTE_TABLE_TYPE = "azurerm_route_table"
SUBNET_NSG_ASSOCIATION = "azurerm_subnet_network_security_group_association"
SUBNET_ROUTE_TABLE_ASSOCIATION = "azurerm_subnet_route_table_association"
NIC_NSG_ASSOCIATION = "azurerm_network_interface_security_group_association"

# Linking resources carry subnet ids but are not members of the subnet.
_NON_MEMBER_TYPES: frozenset[str] = frozenset({
    SUBNET_TYPE,
    SUBNET_NSG_ASSOCIATION,
    SUBNET_ROUTE_TABLE_ASSOCIATION,
    "azurerm_subnet_nat_gateway_association",
    "azurerm_virtual_network",
})

# Top-level fields that may hold a subnet id directly or inside nested blocks.
_SUBNET_FIELDS: tuple[str, ...] = (
    "subnet_id",
    "ip_configuration",
    "virtual_network_subnet_id",
    "frontend_ip_configuration",
    "gateway_ip_configuration",
    "vnet_subnet_id",
)

_CONNECTION_TYPES: dict[str, ConnectionType] = {
    "ExpressRoute": ConnectionType.EXPRESS_ROUTE,
    "Vnet2Vnet": ConnectionType.VNET_PEERING,
}


def _subnet_candidates(value: Any) -> list[str]:
    """Subnet reference strings held by a scalar, mapping or list-of-mappings field."""
    found: list[str] = []
    for item in as_list(value):
        if isinstance(item, str):
            found.append(item)
        elif isinstance(item, Mapping):
            for key in ("subnet_id", "vnet_subnet_id"):
                ref = item.get(key)
                if isinstance(ref, str):
                    found.append(ref)
    return found


def subnet_references(resource: Resource) -> list[str]:
    attrs = resource.attributes
    refs: list[str] = []
    for field in _SUBNET_FIELDS:
        refs.extend(_subnet_candidates(attrs.get(field)))
    node_pool_subnet = get_path(attrs, "default_node_pool.vnet_subnet_id")
    if isinstance(node_pool_subnet, str):
        refs.append(node_pool_subnet)
    return refs


def _address_space(value: Any) -> list[str]:
    return as_str_list(value)


def _address_prefix(value: Any) -> str:
    if isinstance(value, list):
        return str(value[0]) if value else ""
    return text(value) or ""


def _ref_or_raw(index: ResourceIndex, value: Any, rtype: str) -> str:
    """Resolved key for a typed reference, else the raw string."""
    resolved = index.resolve_reference(value, rtype, fuzzy=False, exact_type=True)
    if resolved is not None:
        return resolved
    return text(value) or ""


class _TopologyBuilder:
    def __init__(self, index: ResourceIndex) -> None:
        self._index = index
        self._by_vnet: dict[str | None, list[Subnet]] | None = None

    def _resolve(self, value: Any, rtype: str, fuzzy: bool = True) -> str | None:
        return self._index.resolve_reference(value, rtype, fuzzy=fuzzy, exact_type=True)

    # -- subnets ---------------------------------------------------------------

    def _memberships(self) -> dict[str, list[str]]:
        members: dict[str, list[str]] = {}
        for resource in self._index:
            if resource.type in _NON_MEMBER_TYPES:
                continue
            seen: set[str] = set()
            for ref in subnet_references(resource):
                subnet_key = self._resolve(ref, SUBNET_TYPE)
                if subnet_key is None or subnet_key in seen:
                    continue
                seen.add(subnet_key)
                members.setdefault(subnet_key, []).append(resource.key)
        return members

    def _association_targets(self, assoc_type: str, field: str, rtype: str) -> dict[str, str]:
        targets: dict[str, str] = {}
        for assoc in self._index.of_type(assoc_type):
            subnet_key = self._resolve(assoc.attributes.get("subnet_id"), SUBNET_TYPE)
            if subnet_key is None:
                logger.debug("Association %s references no known subnet", assoc.key)
                continue
            target = self._resolve(assoc.attributes.get(field), rtype) or text(
                assoc.attributes.get(field)
            )
            if target:
                targets.setdefault(subnet_key, target)
        return targets

    def _subnets(self) -> dict[str | None, list[Subnet]]:
        if self._by_vnet is not None:
            return self._by_vnet
        members = self._memberships()
        nsg_assoc = self._association_targets(
            SUBNET_NSG_ASSOCIATION, "network_security_group_id", NSG_TYPE
        )
        rt_assoc = self._association_targets(
            SUBNET_ROUTE_TABLE_ASSOCIATION, "route_table_id", ROUTE_TABLE_TYPE
        )

        by_vnet: dict[str | None, list[Subnet]] = {}
        for resource in self._index.of_type(SUBNET_TYPE):
            attrs = resource.attributes
            vnet_key = self._resolve(attrs.get("virtual_network_name"), VNET_TYPE)
            if vnet_key is None:
                logger.debug("Subnet %s has no resolvable virtual network", resource.key)

            inline_nsg = attrs.get("network_security_group_id")
            inline_rt = attrs.get("route_table_id")
            prefixes = as_str_list(attrs.get("address_prefixes"))
            policies = attrs.get("private_endpoint_network_policies_enabled")
            if policies is None:
                policies = attrs.get("private_endpoint_network_policies")

            subnet = Subnet(
                id=resource.key,
                name=resource.name,
                vnet_id=vnet_key,
                address_prefix=_address_prefix(prefixes or attrs.get("address_prefix")),
                address_prefixes=prefixes or as_str_list(attrs.get("address_prefix")),
                nsg_id=nsg_assoc.get(resource.key)
                or self._resolve(inline_nsg, NSG_TYPE)
                or text(inline_nsg),
                route_table_id=rt_assoc.get(resource.key)
                or self._resolve(inline_rt, ROUTE_TABLE_TYPE)
                or text(inline_rt),
                service_endpoints=as_str_list(attrs.get("service_endpoints")),
                delegations=[
                    d["name"] for d in blocks(attrs.get("delegation")) if text(d.get("name"))
                ],
                private_endpoint_network_policies=_endpoint_policies(policies),
                resources=members.get(resource.key, []),
            )
            by_vnet.setdefault(vnet_key, []).append(subnet)
        self._by_vnet = by_vnet
        return by_vnet

    def unattached_subnets(self) -> list[Subnet]:
        """Subnets whose virtual network is not part of the input."""
        return self._subnets().get(None, [])

    def vnets(self) -> list[VNet]:
        subnets = self._subnets()
        vnets: list[VNet] = []
        for resource in self._index.of_type(VNET_TYPE):
            attrs = resource.attributes
            vnets.append(
                VNet(
                    id=resource.key,
                    name=resource.name,
                    address_space=_address_space(attrs.get("address_space")),
                    location=text(attrs.get("location")) or "unknown",
                    resource_group_id=self._resolve(
                        attrs.get("resource_group_name"), "azurerm_resource_group", fuzzy=False
                    ),
                    subnets=subnets.get(resource.key, []),
                )
            )
        return vnets

    # -- peerings and connections ----------------------------------------------

    def peerings(self) -> list[Peering]:
        peerings: list[Peering] = []
        for resource in self._index.of_type("azurerm_virtual_network_peering"):
            attrs = resource.attributes
            remote_raw = text(attrs.get("remote_virtual_network_id")) or ""
            # Only typed references count: remote VNets outside this set keep the raw id.
            remote_key = self._resolve(remote_raw, VNET_TYPE, fuzzy=False)
            remote = self._index.lookup(remote_key) if remote_key else None
            peerings.append(
                Peering(
                    id=resource.key,
                    name=resource.name,
                    vnet_id=self._resolve(attrs.get("virtual_network_name"), VNET_TYPE),
                    remote_vnet_id=remote_raw,
                    remote_vnet_key=remote.key if remote else None,
                    remote_vnet_name=remote.name if remote else None,
                    remote_address_space=(
                        _address_space(remote.attributes.get("address_space")) if remote else None
                    ),
                    allow_virtual_network_access=attrs.get("allow_virtual_network_access")
                    is not False,
                    allow_forwarded_traffic=attrs.get("allow_forwarded_traffic") is True,
                    allow_gateway_transit=attrs.get("allow_gateway_transit") is True,
                    use_remote_gateways=attrs.get("use_remote_gateways") is True,
                )
            )
        return peerings

    def private_endpoints(self) -> list[PrivateEndpoint]:
        endpoints: list[PrivateEndpoint] = []
        for resource in self._index.of_type("azurerm_private_endpoint"):
            attrs = resource.attributes
            psc = first_block(attrs.get("private_service_connection")) or {}
            target_raw = (
                text(psc.get("private_connection_resource_id"))
                or text(psc.get("private_connection_resource_alias"))
                or ""
            )
            target_key = self._index.resolve_reference(target_raw)
            target_type = self._index.infer_type(target_raw)
            if target_type is None and target_key is not None:
                target = self._index.lookup(target_key)
                target_type = target.type if target else None

            zones: list[str] = []
            for group in blocks(attrs.get("private_dns_zone_group")):
                for zone in as_str_list(group.get("private_dns_zone_ids")):
                    zones.append(_ref_or_raw(self._index, zone, "azurerm_private_dns_zone"))

            endpoints.append(
                PrivateEndpoint(
                    id=resource.key,
                    name=resource.name,
                    subnet_id=_ref_or_raw(self._index, attrs.get("subnet_id"), SUBNET_TYPE),
                    target_resource_id=target_raw,
                    target_key=target_key,
                    target_type=target_type or "",
                    group_ids=as_str_list(psc.get("subresource_names")),
                    linked_dns_zones=zones,
                )
            )
        return endpoints

    def gateway_connections(self) -> list[GatewayConnection]:
        connections: list[GatewayConnection] = []
        for resource in self._index:
            attrs = resource.attributes
            if resource.type == "azurerm_virtual_network_gateway_connection":
                ctype = _CONNECTION_TYPES.get(text(attrs.get("type")) or "", ConnectionType.VPN)
                target_raw = (
                    attrs.get("peer_virtual_network_gateway_id")
                    or attrs.get("express_route_circuit_id")
                    or attrs.get("local_network_gateway_id")
                )
                connections.append(
                    GatewayConnection(
                        id=resource.key,
                        name=resource.name,
                        type=ctype,
                        source_id=_ref_or_raw(
                            self._index,
                            attrs.get("virtual_network_gateway_id"),
                            "azurerm_virtual_network_gateway",
                        ),
                        target_id=self._index.resolve_reference(target_raw, fuzzy=False)
                        or text(target_raw)
                        or "",
                    )
                )
            elif resource.type == "azurerm_express_route_circuit":
                connections.append(
                    GatewayConnection(
                        id=resource.key,
                        name=resource.name,
                        type=ConnectionType.EXPRESS_ROUTE,
                        source_id=resource.key,
                        target_id=text(attrs.get("service_provider_name")) or "Provider",
                    )
                )
        return connections

    def gateways(self) -> list[VirtualNetworkGateway]:
        gateways: list[VirtualNetworkGateway] = []
        for resource in self._index.of_type("azurerm_virtual_network_gateway"):
            attrs = resource.attributes
            configs = blocks(attrs.get("ip_configuration"))
            subnet_ref = configs[0].get("subnet_id") if configs else None
            gateways.append(
                VirtualNetworkGateway(
                    id=resource.key,
                    name=resource.name,
                    gateway_type=text(attrs.get("type")) or "Vpn",
                    vpn_type=text(attrs.get("vpn_type")) or "RouteBased",
                    sku=text(attrs.get("sku")) or "",
                    active_active=attrs.get("active_active") is True,
                    enable_bgp=attrs.get("enable_bgp") is True,
                    subnet_id=self._resolve(subnet_ref, SUBNET_TYPE),
                    public_ip_ids=self._public_ips(configs),
                )
            )
        return gateways

    def _public_ips(self, configs: list[Mapping[str, Any]]) -> list[str]:
        ips: list[str] = []
        for config in configs:
            raw = config.get("public_ip_address_id")
            if isinstance(raw, str) and raw:
                ips.append(_ref_or_raw(self._index, raw, "azurerm_public_ip"))
        return ips

    # -- load balancing --------------------------------------------------------

    def _children_of(
        self, rtype: str, parent_field: str, parent_type: str
    ) -> dict[str, list[Resource]]:
        children: dict[str, list[Resource]] = {}
        for child in self._index.of_type(rtype):
            parent = self._resolve(child.attributes.get(parent_field), parent_type)
            if parent is not None:
                children.setdefault(parent, []).append(child)
        return children

    def load_balancers(self) -> list[LoadBalancer]:
        pools = self._children_of(
            "azurerm_lb_backend_address_pool", "loadbalancer_id", "azurerm_lb"
        )
        probes = self._children_of("azurerm_lb_probe", "loadbalancer_id", "azurerm_lb")
        rules = self._children_of("azurerm_lb_rule", "loadbalancer_id", "azurerm_lb")

        balancers: list[LoadBalancer] = []
        for resource in self._index.of_type("azurerm_lb"):
            attrs = resource.attributes
            frontends = [
                FrontendIp(
                    name=text(f.get("name")) or "frontend",
                    public_ip_id=(
                        _ref_or_raw(self._index, f.get("public_ip_address_id"), "azurerm_public_ip")
                        or None
                    ),
                    subnet_id=self._resolve(f.get("subnet_id"), SUBNET_TYPE),
                    private_ip_address=text(f.get("private_ip_address")),
                )
                for f in blocks(attrs.get("frontend_ip_configuration"))
            ]
            balancers.append(
                LoadBalancer(
                    id=resource.key,
                    name=resource.name,
                    sku=text(attrs.get("sku")) or "Basic",
                    frontend_ips=frontends,
                    backend_pools=[p.key for p in pools.get(resource.key, [])],
                    probes=[
                        HealthProbe(
                            name=text(p.attributes.get("name")) or p.name,
                            protocol=text(p.attributes.get("protocol")) or "Tcp",
                            port=to_int(p.attributes.get("port")),
                            request_path=text(p.attributes.get("request_path")),
                        )
                        for p in probes.get(resource.key, [])
                    ],
                    rules=[
                        LoadBalancingRule(
                            name=text(r.attributes.get("name")) or r.name,
                            protocol=text(r.attributes.get("protocol")) or "Tcp",
                            frontend_port=to_int(r.attributes.get("frontend_port")),
                            backend_port=to_int(r.attributes.get("backend_port")),
                            probe_id=self._resolve(
                                r.attributes.get("probe_id"), "azurerm_lb_probe"
                            ),
                        )
                        for r in rules.get(resource.key, [])
                    ],
                )
            )
        return balancers

    def application_gateways(self) -> list[ApplicationGateway]:
        gateways: list[ApplicationGateway] = []
        for resource in self._index.of_type("azurerm_application_gateway"):
            attrs = resource.attributes
            sku = first_block(attrs.get("sku")) or {}
            waf = first_block(attrs.get("waf_configuration"))
            gateway_ip = first_block(attrs.get("gateway_ip_configuration")) or {}
            gateways.append(
                ApplicationGateway(
                    id=resource.key,
                    name=resource.name,
                    sku=text(sku.get("name")) or "",
                    tier=text(sku.get("tier")) or "",
                    waf_enabled=bool(waf and waf.get("enabled") is not False),
                    waf_mode=text(waf.get("firewall_mode")) if waf else None,
                    firewall_policy_id=self._resolve(
                        attrs.get("firewall_policy_id"), "azurerm_web_application_firewall_policy"
                    )
                    or text(attrs.get("firewall_policy_id")),
                    subnet_id=self._resolve(gateway_ip.get("subnet_id"), SUBNET_TYPE),
                    public_ip_ids=self._public_ips(blocks(attrs.get("frontend_ip_configuration"))),
                    frontend_ports=[
                        port
                        for port in (
                            to_int(p.get("port")) for p in blocks(attrs.get("frontend_port"))
                        )
                        if port is not None
                    ],
                )
            )
        return gateways

    def firewalls(self) -> list[FirewallNode]:
        firewalls: list[FirewallNode] = []
        for resource in self._index.of_type("azurerm_firewall"):
            attrs = resource.attributes
            configs = blocks(attrs.get("ip_configuration"))
            subnet_ref = configs[0].get("subnet_id") if configs else None
            firewalls.append(
                FirewallNode(
                    id=resource.key,
                    name=resource.name,
                    sku_tier=text(attrs.get("sku_tier")) or "Standard",
                    threat_intel_mode=text(attrs.get("threat_intel_mode")) or "Alert",
                    policy_id=self._resolve(
                        attrs.get("firewall_policy_id"), "azurerm_firewall_policy"
                    ),
                    subnet_id=self._resolve(subnet_ref, SUBNET_TYPE),
                    public_ip_ids=self._public_ips(configs),
                )
            )
        return firewalls

    # -- interface-level NSGs ----------------------------------------------------

    def interface_nsgs(self) -> dict[str, str]:
        bindings: dict[str, str] = {}
        for assoc in self._index.of_type(NIC_NSG_ASSOCIATION):
            nic = self._resolve(assoc.attributes.get("network_interface_id"), NIC_TYPE)
            nsg = self._resolve(assoc.attributes.get("network_security_group_id"), NSG_TYPE)
            if nic and nsg:
                bindings.setdefault(nic, nsg)
        for nic in self._index.of_type(NIC_TYPE):
            if nic.key in bindings:
                continue
            nsg = self._resolve(nic.attributes.get("network_security_group_id"), NSG_TYPE)
            if nsg:
                bindings[nic.key] = nsg
        return dict(sorted(bindings.items()))


def _endpoint_policies(value: Any) -> str:
    if value is False or (isinstance(value, str) and value.lower() == "disabled"):
        return "Disabled"
    return "Enabled"


def build_topology(index: ResourceIndex) -> NetworkTopology:
    """Derive the full network topology from *index*. Never raises on bad input."""
    builder = _TopologyBuilder(index)
    topology = NetworkTopology(
        vnets=builder.vnets(),
        unattached_subnets=builder.unattached_subnets(),
        peerings=builder.peerings(),
        private_endpoints=builder.private_endpoints(),
        gateway_connections=builder.gateway_connections(),
        gateways=builder.gateways(),
        load_balancers=builder.load_balancers(),
        application_gateways=builder.application_gateways(),
        firewalls=builder.firewalls(),
        interface_nsgs=builder.interface_nsgs(),
    )
    logger.debug(
        "Topology: %d vnet(s), %d subnet(s), %d peering(s), %d private endpoint(s)",
        len(topology.vnets),
        len(topology.subnets()),
        len(topology.peerings),
        len(topology.private_endpoints),
    )
    return topology


def network_interfaces_of(index: ResourceIndex, key: str) -> list[str]:
    """NIC keys attached to *key* through ``network_interface_ids``."""
    resource = index.lookup(key)
    if resource is None:
        return []
    nics: list[str] = []
    for raw in as_str_list(resource.attributes.get("network_interface_ids")):
        nic = index.resolve_reference(raw, NIC_TYPE, exact_type=True)
        if nic is not None and nic not in nics:
            nics.append(nic)
    return nics


def effective_nsg(index: ResourceIndex, topology: NetworkTopology, key: str) -> NsgBinding | None:
    """The NSG that governs *key*: interface level first, then subnet level."""
    resource = index.lookup(key)
    if resource is None:
        return None

    nics = [key] if resource.type == NIC_TYPE else network_interfaces_of(index, key)
    for nic in nics:
        nsg = topology.interface_nsgs.get(nic)
        if nsg:
            return NsgBinding(nsg_id=nsg, scope="interface", via=nic)

    for member in [key, *nics]:
        subnet = topology.subnet_for(member)
        if subnet is not None and subnet.nsg_id:
            return NsgBinding(nsg_id=subnet.nsg_id, scope="subnet", via=subnet.id)
    return None
