"""Posture scorer — declarative rule table, type-specific checks, scoring."""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import as_completed
from numbers import Real
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from concurrent.futures import Executor

    from azureguard.core.index import ResourceIndex

from azureguard.core.attributes import (
    ABSENT,
    as_str_list,
    blocks,
    first_block,
    get_path,
    is_absent,
    text,
    truthy,
)
from azureguard.core.model import (
    ComplianceStatus,
    Finding,
    FindingCategory,
    IdentityInfo,
    NetworkTopology,
    NsgBinding,
    Operator,
    Posture,
    PostureRule,
    PrivateEndpointInfo,
    Resource,
    SecurityRule,
    Severity,
    severity_rank,
)
from azureguard.core.rules import RuleSetCompiler
from azureguard.core.topology import build_topology, effective_nsg
from azureguard.logger import logger
from azureguard.policy.defaults import SEVERITY_IMPACT, SEVERITY_WEIGHTS
from azureguard.policy.security_rules import SECURITY_RULES

VM_TYPES: frozenset[str] = frozenset({
    "azurerm_linux_virtual_machine",
    "azurerm_windows_virtual_machine",
    "azurerm_virtual_machine",
})

GEO_REDUNDANT_REPLICATION: frozenset[str] = frozenset({"GRS", "RAGRS", "GZRS", "RAGZRS"})

# Category keywords, checked in order against the lower-cased attribute path.
_CATEGORY_KEYWORDS: tuple[tuple[FindingCategory, tuple[str, ...]], ...] = (
    (FindingCategory.ENCRYPTION, ("encrypt", "tls", "ssl")),
    (FindingCategory.NETWORK, ("network", "public", "ip", "firewall")),
    (FindingCategory.IDENTITY, ("identity", "rbac", "admin", "aad")),
    (FindingCategory.LOGGING, ("log", "audit", "diagnostic")),
    (FindingCategory.ACCESS_CONTROL, ("access", "auth")),
    (FindingCategory.DATA_PROTECTION, ("purge", "soft_delete", "retention")),
)


def _make_id(rule_id: str, resource_id: str) -> str:
    raw = f"{rule_id}:{resource_id}"
    return hashlib.sha256(raw.encode()).hexdigest()[:12]


def category_for(rule: PostureRule) -> FindingCategory:
    if rule.category is not None:
        return rule.category
    attr = rule.attribute.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(k in attr for k in keywords):
            return category
    return FindingCategory.CONFIGURATION


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _present(value: Any) -> bool:
    # Terraform plans render an unset block as an empty list.
    return not is_absent(value) and value != [] and value != {}


def _strict_equal(value: Any, expected: Any) -> bool:
    if isinstance(value, bool) or isinstance(expected, bool):
        return isinstance(value, bool) and isinstance(expected, bool) and value is expected
    return value == expected


def evaluate_operator(operator: Operator, value: Any, expected: Any) -> bool:
    """True when the rule fires. Type mismatches never fire."""
    if operator == Operator.EXISTS:
        return _present(value)
    if operator == Operator.NOT_EXISTS:
        return not _present(value)
    if operator == Operator.EQUALS:
        return not is_absent(value) and _strict_equal(value, expected)
    if operator == Operator.NOT_EQUALS:
        return is_absent(value) or not _strict_equal(value, expected)
    if operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
        if isinstance(value, str):
            found = str(expected) in value
        elif isinstance(value, list):
            found = expected in value
        else:
            logger.debug("%s skipped: %r is not a string or list", operator, value)
            return False
        return found if operator == Operator.CONTAINS else not found
    if operator in (Operator.LESS_THAN, Operator.GREATER_THAN):
        if not (_is_number(value) and _is_number(expected)):
            logger.debug("%s skipped: %r is not numeric", operator, value)
            return False
        return value < expected if operator == Operator.LESS_THAN else value > expected
    return False


def grade_for(findings: Sequence[Finding]) -> Severity:
    if not findings:
        return Severity.LOW
    return min((f.severity for f in findings), key=severity_rank)


def compliance_for(grade: Severity) -> ComplianceStatus:
    if grade in (Severity.CRITICAL, Severity.HIGH):
        return ComplianceStatus.NON_COMPLIANT
    if grade == Severity.MEDIUM:
        return ComplianceStatus.WARNING
    return ComplianceStatus.COMPLIANT


def score_for(findings: Sequence[Finding], weights: Mapping[Severity, int]) -> int:
    deduction = sum(weights.get(f.severity, 0) for f in findings)
    return max(0, 100 - min(100, deduction))


# ---------------------------------------------------------------------------
# Type-specific checks
# ---------------------------------------------------------------------------

Check = Callable[[Resource, "PostureScorer"], "Finding | None"]

_TYPE_CHECKS: dict[str, list[Check]] = {}


def _check(*types: str) -> Callable[[Check], Check]:
    def register(fn: Check) -> Check:
        for rtype in types:
            _TYPE_CHECKS.setdefault(rtype, []).append(fn)
        return fn

    return register


def _finding(
    rule_id: str,
    resource: Resource,
    severity: Severity,
    category: FindingCategory,
    title: str,
    description: str,
    remediation: str,
    attribute_path: str | None = None,
    current_value: Any = None,
    expected_value: Any = None,
) -> Finding:
    return Finding(
        id=_make_id(rule_id, resource.key),
        rule_id=rule_id,
        resource_id=resource.key,
        resource_type=resource.type,
        severity=severity,
        category=category,
        title=title,
        description=description,
        attribute_path=attribute_path,
        current_value=current_value,
        expected_value=expected_value,
        remediation=remediation,
        impact=SEVERITY_IMPACT[severity],
    )


@_check("azurerm_storage_account")
def _check_storage_private_endpoint(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if scorer.private_endpoint_for(resource.key) is not None:
        return None
    return _finding(
        "storage-no-private-endpoint", resource, Severity.MEDIUM, FindingCategory.NETWORK,
        "No private endpoint",
        "Storage account is not connected via private endpoint.",
        "Create a private endpoint for the storage account",
    )


@_check("azurerm_storage_account")
def _check_storage_cmk(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if truthy(resource.attributes.get("customer_managed_key")):
        return None
    return _finding(
        "storage-no-cmk", resource, Severity.LOW, FindingCategory.ENCRYPTION,
        "No customer-managed keys",
        "Storage account uses Microsoft-managed keys instead of customer-managed.",
        "Configure customer_managed_key for enhanced key control",
        attribute_path="customer_managed_key",
    )


@_check("azurerm_storage_account")
def _check_storage_versioning(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if truthy(get_path(resource.attributes, "blob_properties.versioning_enabled")):
        return None
    return _finding(
        "storage-no-versioning", resource, Severity.LOW, FindingCategory.DATA_PROTECTION,
        "Blob versioning disabled",
        "Blob versioning is not enabled for data protection.",
        "Enable blob_properties.versioning_enabled = true",
        attribute_path="blob_properties.versioning_enabled",
    )


@_check("azurerm_storage_account")
def _check_storage_geo_replication(resource: Resource, scorer: PostureScorer) -> Finding | None:
    replication = text(resource.attributes.get("account_replication_type"))
    if replication is None or replication.upper() not in GEO_REDUNDANT_REPLICATION:
        return None
    return _finding(
        "storage-geo-replication", resource, Severity.INFO, FindingCategory.DATA_PROTECTION,
        "Geo-redundant replication",
        f"Storage account replicates data to a paired region ({replication}). "
        "Data leaves the primary region and storage cost roughly doubles.",
        "Confirm geo-replication is required; otherwise use LRS or ZRS",
        attribute_path="account_replication_type",
        current_value=replication,
    )


@_check("azurerm_kubernetes_cluster")
def _check_aks_aad(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if truthy(resource.attributes.get("azure_active_directory_role_based_access_control")):
        return None
    return _finding(
        "aks-no-aad", resource, Severity.MEDIUM, FindingCategory.IDENTITY,
        "No Azure AD integration",
        "AKS cluster is not integrated with Azure AD for authentication.",
        "Add azure_active_directory_role_based_access_control block",
        attribute_path="azure_active_directory_role_based_access_control",
    )


@_check("azurerm_kubernetes_cluster")
def _check_aks_defender(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if truthy(resource.attributes.get("microsoft_defender")):
        return None
    return _finding(
        "aks-no-defender", resource, Severity.MEDIUM, FindingCategory.CONFIGURATION,
        "Microsoft Defender not enabled",
        "Microsoft Defender for Containers is not enabled.",
        "Add microsoft_defender block with log_analytics_workspace_id",
        attribute_path="microsoft_defender",
    )


@_check("azurerm_kubernetes_cluster")
def _check_aks_secrets_store(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if truthy(resource.attributes.get("key_vault_secrets_provider")):
        return None
    return _finding(
        "aks-no-secrets-store", resource, Severity.LOW, FindingCategory.CONFIGURATION,
        "Secrets Store CSI Driver not enabled",
        "Azure Key Vault Secrets Store CSI Driver is not enabled.",
        "Add key_vault_secrets_provider block",
        attribute_path="key_vault_secrets_provider",
    )


@_check("azurerm_mssql_server", "azurerm_sql_server")
def _check_sql_tde(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if resource.attributes.get("transparent_data_encryption_enabled") is not False:
        return None
    return _finding(
        "sql-no-tde", resource, Severity.HIGH, FindingCategory.ENCRYPTION,
        "Transparent Data Encryption disabled",
        "TDE is disabled, data at rest is not encrypted.",
        "Set transparent_data_encryption_enabled = true",
        attribute_path="transparent_data_encryption_enabled",
        current_value=False,
        expected_value=True,
    )


@_check("azurerm_mssql_server", "azurerm_sql_server")
def _check_sql_threat_detection(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if truthy(resource.attributes.get("threat_detection_policy")):
        return None
    return _finding(
        "sql-no-threat-detection", resource, Severity.MEDIUM, FindingCategory.CONFIGURATION,
        "Threat detection not configured",
        "Advanced Threat Protection is not enabled.",
        "Add threat_detection_policy block",
        attribute_path="threat_detection_policy",
    )


@_check("azurerm_key_vault")
def _check_keyvault_diagnostics(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if scorer.has_diagnostic_settings(resource.key):
        return None
    return _finding(
        "keyvault-no-diagnostics", resource, Severity.MEDIUM, FindingCategory.LOGGING,
        "No diagnostic settings",
        "Key Vault access is not being logged.",
        "Configure diagnostic settings to log all access",
    )


@_check("azurerm_key_vault")
def _check_keyvault_broad_permissions(resource: Resource, scorer: PostureScorer) -> Finding | None:
    for policy in blocks(resource.attributes.get("access_policy")):
        for field in ("secret_permissions", "key_permissions", "certificate_permissions"):
            if "all" in (p.lower() for p in as_str_list(policy.get(field))):
                return _finding(
                    "keyvault-broad-permissions", resource, Severity.MEDIUM,
                    FindingCategory.ACCESS_CONTROL,
                    "Overly broad access policy",
                    'Access policy grants "all" permissions.',
                    "Use least-privilege access policies",
                    attribute_path=f"access_policy.{field}",
                )
    return None


@_check(*sorted(VM_TYPES))
def _check_vm_boot_diagnostics(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if truthy(resource.attributes.get("boot_diagnostics")):
        return None
    return _finding(
        "vm-no-boot-diagnostics", resource, Severity.LOW, FindingCategory.LOGGING,
        "Boot diagnostics disabled",
        "VM boot diagnostics are not enabled for troubleshooting.",
        "Add boot_diagnostics block",
        attribute_path="boot_diagnostics",
    )


@_check(*sorted(VM_TYPES))
def _check_vm_nsg(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if scorer.nsg_binding(resource.key) is not None:
        return None
    return _finding(
        "vm-no-nsg", resource, Severity.HIGH, FindingCategory.NETWORK,
        "No NSG associated",
        "VM network interface has no NSG for traffic filtering.",
        "Associate an NSG with the network interface or subnet",
    )


@_check("azurerm_linux_virtual_machine")
def _check_vm_password_auth(resource: Resource, scorer: PostureScorer) -> Finding | None:
    if resource.attributes.get("disable_password_authentication") is not False:
        return None
    return _finding(
        "vm-password-auth", resource, Severity.MEDIUM, FindingCategory.IDENTITY,
        "Password authentication enabled",
        "Linux VM allows password authentication instead of SSH keys only.",
        "Set disable_password_authentication = true and use SSH keys",
        attribute_path="disable_password_authentication",
        current_value=False,
        expected_value=True,
    )


# ---------------------------------------------------------------------------
# Derived posture attributes
# ---------------------------------------------------------------------------


def is_encrypted(resource: Resource) -> bool:
    attrs = resource.attributes
    rtype = resource.type
    if rtype == "azurerm_storage_account":
        return attrs.get("enable_https_traffic_only") is not False
    if rtype in ("azurerm_mssql_database", "azurerm_sql_database"):
        return attrs.get("transparent_data_encryption_enabled") is not False
    if rtype in ("azurerm_cosmosdb_account", "azurerm_key_vault"):
        return True
    if rtype == "azurerm_managed_disk":
        return "disk_encryption_set_id" in attrs or "encryption_settings" in attrs
    return attrs.get("encryption_enabled") is not False


def has_public_endpoint(resource: Resource) -> bool:
    attrs = resource.attributes
    if resource.type == "azurerm_storage_account":
        rules = first_block(attrs.get("network_rules"))
        restricted = rules is not None and rules.get("default_action") == "Deny"
        return attrs.get("public_network_access_enabled") is not False and not restricted
    if resource.type == "azurerm_kubernetes_cluster":
        return attrs.get("private_cluster_enabled") is not True
    # Every other type, including unknown ones, is public unless disabled.
    return attrs.get("public_network_access_enabled") is not False


def missing_encryption(resource: Resource) -> list[str]:
    attrs = resource.attributes
    missing: list[str] = []
    if resource.type == "azurerm_storage_account":
        if attrs.get("enable_https_traffic_only") is False:
            missing.append("HTTPS traffic only")
        if not truthy(attrs.get("infrastructure_encryption_enabled")):
            missing.append("Infrastructure encryption")
        if not truthy(attrs.get("customer_managed_key")):
            missing.append("Customer-managed keys")
    elif resource.type in ("azurerm_mssql_database", "azurerm_sql_database"):
        if attrs.get("transparent_data_encryption_enabled") is False:
            missing.append("Transparent Data Encryption")
    elif resource.type == "azurerm_key_vault":
        if not truthy(attrs.get("purge_protection_enabled")):
            missing.append("Purge protection")
    elif resource.type in ("azurerm_linux_virtual_machine", "azurerm_windows_virtual_machine"):
        if not truthy(attrs.get("encryption_at_host_enabled")):
            missing.append("Encryption at host")
        if not truthy(get_path(attrs, "os_disk.disk_encryption_set_id")):
            missing.append("OS disk encryption with CMK")
    return missing


_APP_TYPES = frozenset({
    "azurerm_app_service",
    "azurerm_linux_web_app",
    "azurerm_windows_web_app",
    "azurerm_function_app",
    "azurerm_linux_function_app",
    "azurerm_windows_function_app",
})


def public_endpoints(resource: Resource) -> list[str]:
    attrs = resource.attributes
    display = text(attrs.get("name")) or resource.name
    if resource.type == "azurerm_storage_account":
        fields = ("primary_blob_endpoint", "primary_file_endpoint", "primary_web_endpoint")
        return [attrs[f] for f in fields if text(attrs.get(f))]
    if resource.type in _APP_TYPES:
        return [f"https://{display}.azurewebsites.net"]
    if resource.type == "azurerm_container_registry":
        return [f"{display}.azurecr.io"]
    return []


def identity_info(resource: Resource) -> IdentityInfo:
    identity = resource.attributes.get("identity")
    if not truthy(identity):
        return IdentityInfo(has_managed_identity=False)
    block = first_block(identity) or {}
    raw_type = text(block.get("type")) or ""
    identity_type: str | None = None
    if "SystemAssigned" in raw_type and "UserAssigned" in raw_type:
        identity_type = "SystemAssigned, UserAssigned"
    elif raw_type in ("SystemAssigned", "UserAssigned"):
        identity_type = raw_type
    return IdentityInfo(has_managed_identity=True, identity_type=identity_type)


class PostureScorer:
    """Scores resources against a rule table plus type-specific checks."""

    def __init__(
        self,
        index: ResourceIndex,
        topology: NetworkTopology | None = None,
        compiler: RuleSetCompiler | None = None,
        rules: Sequence[PostureRule] = SECURITY_RULES,
        severity_weights: Mapping[Severity, int] = SEVERITY_WEIGHTS,
        required_tags: Sequence[str] = (),
    ) -> None:
        self._index = index
        self._topology = topology if topology is not None else build_topology(index)
        self._compiler = compiler if compiler is not None else RuleSetCompiler(index)
        self._weights = dict(severity_weights)
        self._required_tags = list(required_tags)
        self._rules_by_type: dict[str, list[PostureRule]] = {}
        for rule in rules:
            self._rules_by_type.setdefault(rule.resource_type, []).append(rule)
        self._endpoints = {
            pe.target_key: pe for pe in reversed(self._topology.private_endpoints) if pe.target_key
        }
        self._diagnostics = {
            key
            for setting in index.of_type("azurerm_monitor_diagnostic_setting")
            if (key := index.resolve_reference(setting.attributes.get("target_resource_id")))
        }

    # -- lookups used by type-specific checks --------------------------------

    def private_endpoint_for(self, key: str) -> PrivateEndpointInfo | None:
        endpoint = self._endpoints.get(key)
        if endpoint is None:
            return None
        return PrivateEndpointInfo(
            has_private_endpoint=True,
            private_endpoint_id=endpoint.id,
            private_endpoint_name=endpoint.name,
            subnet_id=endpoint.subnet_id or None,
        )

    def has_diagnostic_settings(self, key: str) -> bool:
        return key in self._diagnostics

    def nsg_binding(self, key: str) -> NsgBinding | None:
        return effective_nsg(self._index, self._topology, key)

    def has_nsg(self, resource: Resource) -> bool:
        if resource.type == "azurerm_network_interface":
            return resource.key in self._topology.interface_nsgs
        if resource.type == "azurerm_subnet":
            subnet = self._topology.subnet_by_id(resource.key)
            return bool(subnet and subnet.nsg_id) or _present(
                resource.attributes.get("network_security_group_id")
            )
        if resource.type in VM_TYPES:
            return self.nsg_binding(resource.key) is not None
        return True

    def nsg_rules(self, resource: Resource) -> list[SecurityRule]:
        if resource.type != "azurerm_network_security_group":
            return []
        chain = self._compiler.compile_rules(resource.key)
        if chain is None:
            return []
        return [*chain.inbound, *chain.outbound]

    # -- scoring ---------------------------------------------------------------

    def _rule_findings(self, resource: Resource) -> list[Finding]:
        findings: list[Finding] = []
        for rule in self._rules_by_type.get(resource.type, []):
            value = get_path(resource.attributes, rule.attribute)
            if not evaluate_operator(rule.operator, value, rule.value):
                continue
            findings.append(
                Finding(
                    id=_make_id(rule.id, resource.key),
                    rule_id=rule.id,
                    resource_id=resource.key,
                    resource_type=resource.type,
                    severity=rule.severity,
                    category=category_for(rule),
                    title=rule.title,
                    description=rule.description,
                    attribute_path=rule.attribute,
                    current_value=None if value is ABSENT else value,
                    expected_value=rule.value,
                    remediation=rule.remediation,
                    impact=SEVERITY_IMPACT[rule.severity],
                    compliance_frameworks=list(rule.compliance_frameworks),
                )
            )
        return findings

    def _tag_finding(self, resource: Resource) -> Finding | None:
        # Only top-level, taggable resources declare a location.
        if not self._required_tags or "location" not in resource.attributes:
            return None
        tags = dict(resource.tags)
        attr_tags = resource.attributes.get("tags")
        if isinstance(attr_tags, Mapping):
            tags.update({str(k): str(v) for k, v in attr_tags.items()})
        missing = [t for t in self._required_tags if t not in tags]
        if not missing:
            return None
        return _finding(
            "missing-required-tags", resource, Severity.LOW, FindingCategory.CONFIGURATION,
            "Required tags missing",
            f"Resource is missing required tag(s): {', '.join(missing)}.",
            "Add the missing tags to the resource",
            attribute_path="tags",
            current_value=sorted(tags),
            expected_value=list(self._required_tags),
        )

    def score(self, resource: Resource) -> Posture:
        findings = self._rule_findings(resource)
        for check in _TYPE_CHECKS.get(resource.type, []):
            finding = check(resource, self)
            if finding is not None:
                findings.append(finding)
        tag_finding = self._tag_finding(resource)
        if tag_finding is not None:
            findings.append(tag_finding)

        grade = grade_for(findings)
        return Posture(
            resource_id=resource.key,
            resource_type=resource.type,
            findings=findings,
            is_encrypted=is_encrypted(resource),
            has_public_endpoint=has_public_endpoint(resource),
            has_nsg=self.has_nsg(resource),
            missing_encryption=missing_encryption(resource),
            public_endpoints=public_endpoints(resource),
            nsg_rules=self.nsg_rules(resource),
            identity=identity_info(resource),
            private_endpoint=self.private_endpoint_for(resource.key) or PrivateEndpointInfo(),
            score=score_for(findings, self._weights),
            grade=grade,
            compliance=compliance_for(grade),
        )

    def score_all(self, executor: Executor | None = None) -> dict[str, Posture]:
        resources = list(self._index)
        postures: dict[str, Posture] = {}
        if executor is None:
            for resource in resources:
                postures[resource.key] = self.score(resource)
        else:
            futures = {executor.submit(self.score, r): r.key for r in resources}
            for future in as_completed(futures):
                postures[futures[future]] = future.result()
        return dict(sorted(postures.items()))
