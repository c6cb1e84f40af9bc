"""Declarative security rule table for Azure resources.

Based on the Azure Security Benchmark, CIS benchmarks and common practice. A
rule fires when its operator evaluates true against the attribute at
``attribute`` (dot-separated path) on a resource of ``resource_type``.
"""

from __future__ import annotations

from typing import Any

from azureguard.core.model import Operator, PostureRule, Severity

_EQ = Operator.EQUALS
_NE = Operator.NOT_EQUALS
_LT = Operator.LESS_THAN
_MISSING = Operator.NOT_EXISTS


def _rule(
    rule_id: str,
    resource_type: str,
    attribute: str,
    operator: Operator,
    value: Any,
    severity: Severity,
    title: str,
    description: str,
    remediation: str,
    frameworks: list[str],
) -> PostureRule:
    return PostureRule(
        id=rule_id,
        resource_type=resource_type,
        attribute=attribute,
        operator=operator,
        value=value,
        severity=severity,
        title=title,
        description=description,
        remediation=remediation,
        compliance_frameworks=frameworks,
    )


SECURITY_RULES: tuple[PostureRule, ...] = (
    # Storage accounts
    _rule(
        "storage-public-access", "azurerm_storage_account",
        "allow_nested_items_to_be_public", _EQ, True, Severity.HIGH,
        "Public blob access enabled",
        "Storage account allows public access to blobs. This can expose sensitive data.",
        "Set allow_nested_items_to_be_public = false", ["CIS", "NIST"],
    ),
    _rule(
        "storage-min-tls", "azurerm_storage_account",
        "min_tls_version", _NE, "TLS1_2", Severity.MEDIUM,
        "TLS version below 1.2",
        "Storage account accepts connections with TLS versions older than 1.2.",
        'Set min_tls_version = "TLS1_2"', ["CIS", "PCI-DSS"],
    ),
    _rule(
        "storage-https-only", "azurerm_storage_account",
        "enable_https_traffic_only", _NE, True, Severity.HIGH,
        "HTTPS not enforced",
        "Storage account allows non-HTTPS traffic.",
        "Set enable_https_traffic_only = true", ["CIS", "NIST", "PCI-DSS"],
    ),
    _rule(
        "storage-network-rules", "azurerm_storage_account",
        "network_rules", _MISSING, None, Severity.HIGH,
        "No network rules configured",
        "Storage account has no network restrictions. Anyone can access it.",
        'Add network_rules block with default_action = "Deny"', ["CIS", "NIST"],
    ),
    _rule(
        "storage-infrastructure-encryption", "azurerm_storage_account",
        "infrastructure_encryption_enabled", _NE, True, Severity.LOW,
        "Infrastructure encryption disabled",
        "Double encryption at infrastructure level is not enabled.",
        "Set infrastructure_encryption_enabled = true", ["NIST"],
    ),
    # SQL Server
    _rule(
        "sql-public-access", "azurerm_mssql_server",
        "public_network_access_enabled", _EQ, True, Severity.HIGH,
        "Public network access enabled",
        "SQL Server is accessible from the public internet.",
        "Set public_network_access_enabled = false and use private endpoints",
        ["CIS", "NIST", "PCI-DSS"],
    ),
    _rule(
        "sql-min-tls", "azurerm_mssql_server",
        "minimum_tls_version", _NE, "1.2", Severity.MEDIUM,
        "TLS version below 1.2",
        "SQL Server accepts connections with TLS versions older than 1.2.",
        'Set minimum_tls_version = "1.2"', ["CIS", "PCI-DSS"],
    ),
    _rule(
        "sql-aad-admin", "azurerm_mssql_server",
        "azuread_administrator", _MISSING, None, Severity.MEDIUM,
        "No Azure AD administrator",
        "SQL Server has no Azure AD administrator configured.",
        "Add azuread_administrator block", ["CIS"],
    ),
    # Key Vault
    _rule(
        "keyvault-purge-protection", "azurerm_key_vault",
        "purge_protection_enabled", _NE, True, Severity.MEDIUM,
        "Purge protection disabled",
        "Key Vault can be permanently deleted, losing all secrets.",
        "Set purge_protection_enabled = true", ["CIS", "NIST"],
    ),
    _rule(
        "keyvault-soft-delete", "azurerm_key_vault",
        "soft_delete_retention_days", _LT, 7, Severity.LOW,
        "Short soft delete retention",
        "Key Vault soft delete retention is less than 7 days.",
        "Set soft_delete_retention_days >= 7", ["CIS"],
    ),
    _rule(
        "keyvault-rbac", "azurerm_key_vault",
        "enable_rbac_authorization", _NE, True, Severity.LOW,
        "RBAC authorization not enabled",
        "Key Vault uses access policies instead of RBAC.",
        "Set enable_rbac_authorization = true", ["NIST"],
    ),
    _rule(
        "keyvault-network-acls", "azurerm_key_vault",
        "network_acls", _MISSING, None, Severity.MEDIUM,
        "No network ACLs configured",
        "Key Vault has no network restrictions.",
        'Add network_acls block with default_action = "Deny"', ["CIS"],
    ),
    # Kubernetes (AKS)
    _rule(
        "aks-private-cluster", "azurerm_kubernetes_cluster",
        "private_cluster_enabled", _NE, True, Severity.MEDIUM,
        "Not a private cluster",
        "AKS cluster API server is publicly accessible.",
        "Set private_cluster_enabled = true", ["CIS", "NIST"],
    ),
    _rule(
        "aks-rbac", "azurerm_kubernetes_cluster",
        "role_based_access_control_enabled", _NE, True, Severity.HIGH,
        "RBAC not enabled",
        "AKS cluster does not have Kubernetes RBAC enabled.",
        "Set role_based_access_control_enabled = true", ["CIS", "NIST"],
    ),
    _rule(
        "aks-azure-policy", "azurerm_kubernetes_cluster",
        "azure_policy_enabled", _NE, True, Severity.LOW,
        "Azure Policy not enabled",
        "AKS cluster does not have Azure Policy add-on enabled.",
        "Set azure_policy_enabled = true", ["CIS"],
    ),
    _rule(
        "aks-managed-identity", "azurerm_kubernetes_cluster",
        "identity", _MISSING, None, Severity.MEDIUM,
        "No managed identity",
        "AKS cluster is using service principal instead of managed identity.",
        'Add identity block with type = "SystemAssigned"', ["NIST"],
    ),
    _rule(
        "aks-network-policy", "azurerm_kubernetes_cluster",
        "network_profile.network_policy", _MISSING, None, Severity.MEDIUM,
        "No network policy",
        "AKS cluster has no network policy configured.",
        'Set network_profile.network_policy = "azure" or "calico"', ["CIS"],
    ),
    # App Service
    _rule(
        "appservice-https-only", "azurerm_linux_web_app",
        "https_only", _NE, True, Severity.HIGH,
        "HTTPS not enforced",
        "App Service allows non-HTTPS traffic.",
        "Set https_only = true", ["CIS", "PCI-DSS"],
    ),
    _rule(
        "appservice-min-tls", "azurerm_linux_web_app",
        "site_config.minimum_tls_version", _NE, "1.2", Severity.MEDIUM,
        "TLS version below 1.2",
        "App Service accepts TLS versions older than 1.2.",
        'Set site_config.minimum_tls_version = "1.2"', ["CIS", "PCI-DSS"],
    ),
    _rule(
        "appservice-ftps", "azurerm_linux_web_app",
        "site_config.ftps_state", _EQ, "AllAllowed", Severity.MEDIUM,
        "FTP allowed",
        "App Service allows unencrypted FTP connections.",
        'Set site_config.ftps_state = "FtpsOnly" or "Disabled"', ["CIS"],
    ),
    _rule(
        "appservice-identity", "azurerm_linux_web_app",
        "identity", _MISSING, None, Severity.LOW,
        "No managed identity",
        "App Service has no managed identity configured.",
        'Add identity block with type = "SystemAssigned"', ["NIST"],
    ),
    # Virtual machines
    _rule(
        "vm-managed-identity", "azurerm_linux_virtual_machine",
        "identity", _MISSING, None, Severity.LOW,
        "No managed identity",
        "Virtual machine has no managed identity configured.",
        'Add identity block with type = "SystemAssigned"', ["NIST"],
    ),
    _rule(
        "vm-encryption-at-host", "azurerm_linux_virtual_machine",
        "encryption_at_host_enabled", _NE, True, Severity.MEDIUM,
        "Host encryption disabled",
        "Virtual machine does not have encryption at host enabled.",
        "Set encryption_at_host_enabled = true", ["CIS", "NIST"],
    ),
    _rule(
        "vm-disk-encryption", "azurerm_linux_virtual_machine",
        "os_disk.disk_encryption_set_id", _MISSING, None, Severity.MEDIUM,
        "No disk encryption set",
        "VM OS disk is not using customer-managed encryption keys.",
        "Set os_disk.disk_encryption_set_id to a disk encryption set", ["CIS", "PCI-DSS"],
    ),
    # Container Registry
    _rule(
        "acr-admin-disabled", "azurerm_container_registry",
        "admin_enabled", _EQ, True, Severity.MEDIUM,
        "Admin account enabled",
        "Container Registry has admin account enabled.",
        "Set admin_enabled = false and use Azure AD authentication", ["CIS"],
    ),
    _rule(
        "acr-public-access", "azurerm_container_registry",
        "public_network_access_enabled", _EQ, True, Severity.MEDIUM,
        "Public network access enabled",
        "Container Registry is accessible from the public internet.",
        "Set public_network_access_enabled = false", ["CIS"],
    ),
    _rule(
        "acr-content-trust", "azurerm_container_registry",
        "trust_policy", _MISSING, None, Severity.LOW,
        "Content trust not enabled",
        "Container Registry does not have content trust (image signing) enabled.",
        "Add trust_policy block with enabled = true", ["CIS"],
    ),
    # Cosmos DB
    _rule(
        "cosmosdb-public-access", "azurerm_cosmosdb_account",
        "public_network_access_enabled", _EQ, True, Severity.MEDIUM,
        "Public network access enabled",
        "Cosmos DB is accessible from the public internet.",
        "Set public_network_access_enabled = false", ["CIS"],
    ),
    _rule(
        "cosmosdb-local-auth", "azurerm_cosmosdb_account",
        "local_authentication_disabled", _NE, True, Severity.MEDIUM,
        "Local authentication enabled",
        "Cosmos DB allows key-based authentication.",
        "Set local_authentication_disabled = true", ["CIS"],
    ),
    # Redis Cache
    _rule(
        "redis-min-tls", "azurerm_redis_cache",
        "minimum_tls_version", _NE, "1.2", Severity.MEDIUM,
        "TLS version below 1.2",
        "Redis Cache accepts TLS versions older than 1.2.",
        'Set minimum_tls_version = "1.2"', ["CIS", "PCI-DSS"],
    ),
    _rule(
        "redis-ssl-only", "azurerm_redis_cache",
        "enable_non_ssl_port", _EQ, True, Severity.HIGH,
        "Non-SSL port enabled",
        "Redis Cache allows non-SSL connections.",
        "Set enable_non_ssl_port = false", ["CIS", "PCI-DSS"],
    ),
    _rule(
        "redis-public-access", "azurerm_redis_cache",
        "public_network_access_enabled", _EQ, True, Severity.MEDIUM,
        "Public network access enabled",
        "Redis Cache is accessible from the public internet.",
        "Set public_network_access_enabled = false", ["CIS"],
    ),
    # PostgreSQL
    _rule(
        "postgresql-ssl", "azurerm_postgresql_server",
        "ssl_enforcement_enabled", _NE, True, Severity.HIGH,
        "SSL not enforced",
        "PostgreSQL server allows non-SSL connections.",
        "Set ssl_enforcement_enabled = true", ["CIS", "PCI-DSS"],
    ),
    _rule(
        "postgresql-min-tls", "azurerm_postgresql_server",
        "ssl_minimal_tls_version_enforced", _NE, "TLS1_2", Severity.MEDIUM,
        "TLS version below 1.2",
        "PostgreSQL server accepts TLS versions older than 1.2.",
        'Set ssl_minimal_tls_version_enforced = "TLS1_2"', ["CIS", "PCI-DSS"],
    ),
    _rule(
        "postgresql-public-access", "azurerm_postgresql_server",
        "public_network_access_enabled", _EQ, True, Severity.MEDIUM,
        "Public network access enabled",
        "PostgreSQL server is accessible from the public internet.",
        "Set public_network_access_enabled = false", ["CIS"],
    ),
    # MySQL
    _rule(
        "mysql-ssl", "azurerm_mysql_server",
        "ssl_enforcement_enabled", _NE, True, Severity.HIGH,
        "SSL not enforced",
        "MySQL server allows non-SSL connections.",
        "Set ssl_enforcement_enabled = true", ["CIS", "PCI-DSS"],
    ),
    _rule(
        "mysql-min-tls", "azurerm_mysql_server",
        "ssl_minimal_tls_version_enforced", _NE, "TLS1_2", Severity.MEDIUM,
        "TLS version below 1.2",
        "MySQL server accepts TLS versions older than 1.2.",
        'Set ssl_minimal_tls_version_enforced = "TLS1_2"', ["CIS", "PCI-DSS"],
    ),
    _rule(
        "mysql-public-access", "azurerm_mysql_server",
        "public_network_access_enabled", _EQ, True, Severity.MEDIUM,
        "Public network access enabled",
        "MySQL server is accessible from the public internet.",
        "Set public_network_access_enabled = false", ["CIS"],
    ),
    # Network security rules
    _rule(
        "nsg-allow-all-inbound", "azurerm_network_security_rule",
        "source_address_prefix", _EQ, "*", Severity.HIGH,
        "Allow all inbound traffic",
        "NSG rule allows traffic from any source.",
        "Restrict source_address_prefix to specific IP ranges", ["CIS", "NIST"],
    ),
    _rule(
        "nsg-rdp-open", "azurerm_network_security_rule",
        "destination_port_range", _EQ, "3389", Severity.CRITICAL,
        "RDP port open",
        "NSG rule exposes RDP port (3389) which is commonly attacked.",
        "Use Azure Bastion or restrict RDP access to specific IPs", ["CIS", "NIST", "PCI-DSS"],
    ),
    _rule(
        "nsg-ssh-open", "azurerm_network_security_rule",
        "destination_port_range", _EQ, "22", Severity.HIGH,
        "SSH port open",
        "NSG rule exposes SSH port (22) which is commonly attacked.",
        "Use Azure Bastion or restrict SSH access to specific IPs", ["CIS", "NIST"],
    ),
    # Application Gateway
    _rule(
        "appgw-waf", "azurerm_application_gateway",
        "waf_configuration", _MISSING, None, Severity.MEDIUM,
        "WAF not enabled",
        "Application Gateway does not have WAF (Web Application Firewall) enabled.",
        "Add waf_configuration block or use firewall_policy_id", ["CIS", "NIST"],
    ),
    # Service Bus
    _rule(
        "servicebus-local-auth", "azurerm_servicebus_namespace",
        "local_auth_enabled", _EQ, True, Severity.MEDIUM,
        "Local authentication enabled",
        "Service Bus allows SAS key authentication.",
        "Set local_auth_enabled = false and use managed identity", ["CIS"],
    ),
    _rule(
        "servicebus-public-access", "azurerm_servicebus_namespace",
        "public_network_access_enabled", _EQ, True, Severity.MEDIUM,
        "Public network access enabled",
        "Service Bus is accessible from the public internet.",
        "Set public_network_access_enabled = false", ["CIS"],
    ),
    # Event Hub
    _rule(
        "eventhub-local-auth", "azurerm_eventhub_namespace",
        "local_authentication_enabled", _EQ, True, Severity.MEDIUM,
        "Local authentication enabled",
        "Event Hub allows SAS key authentication.",
        "Set local_authentication_enabled = false and use managed identity", ["CIS"],
    ),
    _rule(
        "eventhub-public-access", "azurerm_eventhub_namespace",
        "public_network_access_enabled", _EQ, True, Severity.MEDIUM,
        "Public network access enabled",
        "Event Hub is accessible from the public internet.",
        "Set public_network_access_enabled = false", ["CIS"],
    ),
)


def rules_for_type(
    rules: tuple[PostureRule, ...] | list[PostureRule], resource_type: str
) -> list[PostureRule]:
    return [r for r in rules if r.resource_type == resource_type]


def rules_by_severity(
    rules: tuple[PostureRule, ...] | list[PostureRule],
) -> dict[Severity, list[PostureRule]]:
    grouped: dict[Severity, list[PostureRule]] = {sev: [] for sev in Severity}
    for rule in rules:
        grouped[rule.severity].append(rule)
    return grouped


def resource_types_with_rules(rules: tuple[PostureRule, ...] | list[PostureRule]) -> list[str]:
    return sorted({r.resource_type for r in rules})
