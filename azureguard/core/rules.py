"""Rule-set compiler — NSG rule chains, firewall collections, policy groups."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

    from azureguard.core.index import ResourceIndex

from azureguard.core.attributes import as_str_list, blocks, text, to_int
from azureguard.core.model import (
    Access,
    CollectionKind,
    Direction,
    FirewallPolicyRuleSet,
    FirewallRule,
    FirewallRuleSet,
    Resource,
    RuleChain,
    RuleCollection,
    RuleCollectionGroup,
    SecurityRule,
    resource_key,
)
from azureguard.logger import logger
from azureguard.policy.defaults import DEFAULT_NSG_RULES

NSG_TYPE = "azurerm_network_security_group"
NSG_RULE_TYPE = "azurerm_network_security_rule"
FIREWALL_TYPE = "azurerm_firewall"
FIREWALL_POLICY_TYPE = "azurerm_firewall_policy"
POLICY_GROUP_TYPE = "azurerm_firewall_policy_rule_collection_group"

CLASSIC_COLLECTION_TYPES: dict[str, CollectionKind] = {
    "azurerm_firewall_application_rule_collection": CollectionKind.APPLICATION,
    "azurerm_firewall_network_rule_collection": CollectionKind.NETWORK,
    "azurerm_firewall_nat_rule_collection": CollectionKind.NAT,
}

_POLICY_COLLECTION_BLOCKS: tuple[tuple[str, CollectionKind], ...] = (
    ("application_rule_collection", CollectionKind.APPLICATION),
    ("network_rule_collection", CollectionKind.NETWORK),
    ("nat_rule_collection", CollectionKind.NAT),
)

_DEFAULT_PRIORITY = 100


def _direction(value: Any) -> Direction:
    if isinstance(value, str) and value.lower() == "outbound":
        return Direction.OUTBOUND
    return Direction.INBOUND


def _access(value: Any) -> Access:
    if isinstance(value, str) and value.lower() == "deny":
        return Access.DENY
    return Access.ALLOW


def _scalar_str(value: Any) -> str:
    """Port or prefix field as text; numbers are accepted, anything else is ``*``."""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return text(value) or "*"


def normalize_security_rule(raw: Mapping[str, Any], origin: str = "inline") -> SecurityRule:
    """Normalize an inline block or a separate rule resource's attributes."""
    return SecurityRule(
        name=text(raw.get("name")) or "unnamed",
        priority=to_int(raw.get("priority"), _DEFAULT_PRIORITY),
        direction=_direction(raw.get("direction")),
        access=_access(raw.get("access")),
        protocol=text(raw.get("protocol")) or "*",
        source_port_range=_scalar_str(raw.get("source_port_range")),
        destination_port_range=_scalar_str(raw.get("destination_port_range")),
        source_address_prefix=_scalar_str(raw.get("source_address_prefix")),
        destination_address_prefix=_scalar_str(raw.get("destination_address_prefix")),
        source_port_ranges=as_str_list(raw.get("source_port_ranges")),
        destination_port_ranges=as_str_list(raw.get("destination_port_ranges")),
        source_address_prefixes=as_str_list(raw.get("source_address_prefixes")),
        destination_address_prefixes=as_str_list(raw.get("destination_address_prefixes")),
        description=text(raw.get("description")) or "",
        origin=origin,
    )


def _by_priority(rules: list[SecurityRule]) -> list[SecurityRule]:
    # sorted() is stable: equal priorities keep declaration order
    return sorted(rules, key=lambda r: r.priority)


class RuleSetCompiler:
    """Compiles ordered rule sets per security boundary.

    Compiled NSG chains are memoized; the compiler is safe to share between
    worker threads once built.
    """

    def __init__(
        self,
        index: ResourceIndex,
        default_rules: Sequence[SecurityRule] = DEFAULT_NSG_RULES,
    ) -> None:
        self._index = index
        self._default_rules = list(default_rules)
        self._chains: dict[str, RuleChain | None] = {}
        self._lock = threading.Lock()
        self._separate_rules = self._group_separate_rules()

    @property
    def default_rules(self) -> list[SecurityRule]:
        return list(self._default_rules)

    def _group_separate_rules(self) -> dict[str, list[Resource]]:
        grouped: dict[str, list[Resource]] = {}
        for rule in self._index.of_type(NSG_RULE_TYPE):
            nsg_key = self._index.resolve_reference(
                rule.attributes.get("network_security_group_name"), NSG_TYPE, exact_type=True
            )
            if nsg_key is None:
                logger.debug("NSG rule %s references no known security group", rule.key)
                continue
            grouped.setdefault(nsg_key, []).append(rule)
        return grouped

    def _nsg_key(self, nsg: str) -> str | None:
        if nsg in self._index:
            return nsg
        candidate = resource_key(NSG_TYPE, nsg)
        if candidate in self._index:
            return candidate
        return self._index.resolve_reference(nsg, NSG_TYPE, exact_type=True)

    # -- NSGs ----------------------------------------------------------------

    def compile_rules(self, nsg: str) -> RuleChain | None:
        """Rule chain for an NSG given by key, local name or reference text."""
        key = self._nsg_key(nsg)
        if key is None:
            return None
        with self._lock:
            if key in self._chains:
                return self._chains[key]
        chain = self._compile_chain(key)
        with self._lock:
            self._chains.setdefault(key, chain)
            return self._chains[key]

    def _compile_chain(self, key: str) -> RuleChain | None:
        group = self._index.lookup(key)
        if group is None or group.type != NSG_TYPE:
            return None
        rules = [normalize_security_rule(b) for b in blocks(group.attributes.get("security_rule"))]
        for separate in self._separate_rules.get(key, []):
            rules.append(normalize_security_rule(separate.attributes, origin=separate.key))

        return RuleChain(
            nsg_id=key,
            name=text(group.attributes.get("name")) or group.name,
            inbound=_by_priority([r for r in rules if r.direction == Direction.INBOUND]),
            outbound=_by_priority([r for r in rules if r.direction == Direction.OUTBOUND]),
            default_rules=list(self._default_rules),
        )

    def compile_all(self) -> list[RuleChain]:
        chains = [self.compile_rules(nsg.key) for nsg in self._index.of_type(NSG_TYPE)]
        return sorted((c for c in chains if c is not None), key=lambda c: c.nsg_id)

    # -- Classic firewall rule collections -------------------------------------

    def compile_firewall(self, firewall: str) -> FirewallRuleSet | None:
        key = firewall if firewall in self._index else self._index.resolve_reference(
            firewall, FIREWALL_TYPE, exact_type=True
        )
        resource = self._index.lookup(key) if key else None
        if resource is None or resource.type != FIREWALL_TYPE:
            return None

        collections: list[RuleCollection] = []
        for ctype, kind in CLASSIC_COLLECTION_TYPES.items():
            for coll in self._index.of_type(ctype):
                target = self._index.resolve_reference(
                    coll.attributes.get("azure_firewall_name"), FIREWALL_TYPE, exact_type=True
                )
                if target != resource.key:
                    continue
                collections.append(
                    RuleCollection(
                        name=text(coll.attributes.get("name")) or coll.name,
                        kind=kind,
                        priority=to_int(coll.attributes.get("priority"), _DEFAULT_PRIORITY),
                        action=text(coll.attributes.get("action")) or _default_action(kind),
                        rules=[
                            _firewall_rule(r, kind) for r in blocks(coll.attributes.get("rule"))
                        ],
                        origin=coll.key,
                    )
                )
        collections.sort(key=lambda c: (c.priority, c.name))

        attrs = resource.attributes
        return FirewallRuleSet(
            firewall_id=resource.key,
            name=text(attrs.get("name")) or resource.name,
            policy_id=self._index.resolve_reference(
                attrs.get("firewall_policy_id"), FIREWALL_POLICY_TYPE, exact_type=True
            )
            or text(attrs.get("firewall_policy_id")),
            threat_intel_mode=text(attrs.get("threat_intel_mode")) or "Alert",
            collections=collections,
        )

    def compile_firewalls(self) -> list[FirewallRuleSet]:
        compiled = [self.compile_firewall(fw.key) for fw in self._index.of_type(FIREWALL_TYPE)]
        return sorted((f for f in compiled if f is not None), key=lambda f: f.firewall_id)

    # -- Firewall policies -----------------------------------------------------

    def compile_policy(self, policy: str) -> FirewallPolicyRuleSet | None:
        key = policy if policy in self._index else self._index.resolve_reference(
            policy, FIREWALL_POLICY_TYPE, exact_type=True
        )
        resource = self._index.lookup(key) if key else None
        if resource is None or resource.type != FIREWALL_POLICY_TYPE:
            return None

        groups: list[RuleCollectionGroup] = []
        for group in self._index.of_type(POLICY_GROUP_TYPE):
            target = self._index.resolve_reference(
                group.attributes.get("firewall_policy_id"), FIREWALL_POLICY_TYPE, exact_type=True
            )
            if target != resource.key:
                continue
            groups.append(self._policy_group(group, resource.key))
        groups.sort(key=lambda g: (g.priority, g.name))

        attrs = resource.attributes
        base = attrs.get("base_policy_id")
        return FirewallPolicyRuleSet(
            policy_id=resource.key,
            name=text(attrs.get("name")) or resource.name,
            base_policy_id=self._index.resolve_reference(
                base, FIREWALL_POLICY_TYPE, exact_type=True
            )
            or text(base),
            threat_intel_mode=text(attrs.get("threat_intelligence_mode")) or "Alert",
            groups=groups,
        )

    def _policy_group(self, group: Resource, policy_key: str) -> RuleCollectionGroup:
        collections: list[RuleCollection] = []
        for block_name, kind in _POLICY_COLLECTION_BLOCKS:
            for coll in blocks(group.attributes.get(block_name)):
                collections.append(
                    RuleCollection(
                        name=text(coll.get("name")) or block_name,
                        kind=kind,
                        priority=to_int(coll.get("priority"), _DEFAULT_PRIORITY),
                        action=text(coll.get("action")) or _default_action(kind),
                        rules=[_firewall_rule(r, kind) for r in blocks(coll.get("rule"))],
                        origin=group.key,
                    )
                )
        collections.sort(key=lambda c: (c.priority, c.name))
        return RuleCollectionGroup(
            id=group.key,
            name=text(group.attributes.get("name")) or group.name,
            priority=to_int(group.attributes.get("priority"), _DEFAULT_PRIORITY),
            policy_id=policy_key,
            collections=collections,
        )

    def compile_policies(self) -> list[FirewallPolicyRuleSet]:
        compiled = [
            self.compile_policy(p.key) for p in self._index.of_type(FIREWALL_POLICY_TYPE)
        ]
        return sorted((p for p in compiled if p is not None), key=lambda p: p.policy_id)


def _default_action(kind: CollectionKind) -> str:
    return "Dnat" if kind == CollectionKind.NAT else "Allow"


def _protocols(raw: Mapping[str, Any], kind: CollectionKind) -> list[str]:
    if kind == CollectionKind.APPLICATION:
        found: list[str] = []
        for key in ("protocol", "protocols"):
            for proto in blocks(raw.get(key)):
                ptype = text(proto.get("type")) or "*"
                port = proto.get("port")
                found.append(f"{ptype}:{port}" if port is not None else ptype)
        return found
    return as_str_list(raw.get("protocols"))


def _firewall_rule(raw: Mapping[str, Any], kind: CollectionKind) -> FirewallRule:
    destination_addresses = as_str_list(raw.get("destination_addresses"))
    if not destination_addresses:
        # policy NAT rules carry a single destination_address
        destination_addresses = as_str_list(raw.get("destination_address"))
    translated_port = raw.get("translated_port")
    return FirewallRule(
        name=text(raw.get("name")) or "unnamed",
        protocols=_protocols(raw, kind),
        source_addresses=as_str_list(raw.get("source_addresses")),
        source_ip_groups=as_str_list(raw.get("source_ip_groups")),
        destination_addresses=destination_addresses,
        destination_ports=as_str_list(raw.get("destination_ports")),
        destination_fqdns=as_str_list(raw.get("destination_fqdns")),
        target_fqdns=as_str_list(raw.get("target_fqdns")),
        fqdn_tags=as_str_list(raw.get("fqdn_tags") or raw.get("destination_fqdn_tags")),
        translated_address=text(raw.get("translated_address")),
        translated_port=str(translated_port) if translated_port is not None else None,
        description=text(raw.get("description")) or "",
    )
