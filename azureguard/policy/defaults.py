"""Platform default tables — NSG default rules and severity weights.

These are immutable defaults; the compiler and scorer receive them as
constructor arguments so alternate tables can be injected.
"""

from __future__ import annotations

from types import MappingProxyType

from azureguard.core.model import Access, Direction, SecurityRule, Severity

DEFAULT_DENY_OUTBOUND = "DenyAllOutBound"
DEFAULT_DENY_INBOUND = "DenyAllInBound"


def _platform_rule(
    name: str,
    priority: int,
    direction: Direction,
    access: Access,
    source: str,
    destination: str,
) -> SecurityRule:
    return SecurityRule(
        name=name,
        priority=priority,
        direction=direction,
        access=access,
        source_address_prefix=source,
        destination_address_prefix=destination,
        origin="platform",
    )


DEFAULT_NSG_RULES: tuple[SecurityRule, ...] = (
    _platform_rule(
        "AllowVnetInBound", 65000, Direction.INBOUND, Access.ALLOW,
        "VirtualNetwork", "VirtualNetwork",
    ),
    _platform_rule(
        "AllowAzureLoadBalancerInBound", 65001, Direction.INBOUND, Access.ALLOW,
        "AzureLoadBalancer", "*",
    ),
    _platform_rule(DEFAULT_DENY_INBOUND, 65500, Direction.INBOUND, Access.DENY, "*", "*"),
    _platform_rule(
        "AllowVnetOutBound", 65000, Direction.OUTBOUND, Access.ALLOW,
        "VirtualNetwork", "VirtualNetwork",
    ),
    _platform_rule(
        "AllowInternetOutBound", 65001, Direction.OUTBOUND, Access.ALLOW, "*", "Internet",
    ),
    _platform_rule(DEFAULT_DENY_OUTBOUND, 65500, Direction.OUTBOUND, Access.DENY, "*", "*"),
)

SEVERITY_WEIGHTS: MappingProxyType[Severity, int] = MappingProxyType({
    Severity.CRITICAL: 100,
    Severity.HIGH: 75,
    Severity.MEDIUM: 50,
    Severity.LOW: 25,
    Severity.INFO: 10,
})

SEVERITY_IMPACT: MappingProxyType[Severity, str] = MappingProxyType({
    Severity.CRITICAL: "Immediate risk of data breach or system compromise. Fix immediately.",
    Severity.HIGH: "Significant security risk that should be addressed promptly.",
    Severity.MEDIUM: "Moderate risk that should be addressed in the near term.",
    Severity.LOW: "Minor risk or best practice recommendation.",
    Severity.INFO: "Informational finding for awareness.",
})
