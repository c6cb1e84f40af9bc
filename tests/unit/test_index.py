"""Tests for ResourceIndex lookup and reference resolution."""

from __future__ import annotations

from typing import Any

from azureguard.core.index import ResourceIndex, reference_fragments
from azureguard.core.model import ReferenceKind, Resource


def _res(rtype: str, name: str, attributes: dict[str, Any] | None = None) -> Resource:
    return Resource(type=rtype, name=name, attributes=attributes or {})


def _index() -> ResourceIndex:
    return ResourceIndex.build([
        _res("azurerm_virtual_network", "hub", {"name": "vnet-hub"}),
        _res(
            "azurerm_subnet", "app",
            {"virtual_network_name": "${azurerm_virtual_network.hub.name}"},
        ),
        _res("azurerm_lb", "web"),
        _res("azurerm_lb_probe", "web", {"loadbalancer_id": "${azurerm_lb.web.id}"}),
    ])


class TestFragments:
    def test_extracts_type_and_name(self) -> None:
        assert reference_fragments("${azurerm_subnet.app.id}") == [("azurerm_subnet", "app")]

    def test_multiple_fragments_in_order(self) -> None:
        text = "${azurerm_subnet.a.id}/${azuread_group.ops.object_id}"
        assert reference_fragments(text) == [("azurerm_subnet", "a"), ("azuread_group", "ops")]

    def test_ignores_unknown_providers(self) -> None:
        assert reference_fragments("${aws_vpc.main.id}") == []


class TestLookup:
    def test_len_contains_and_keys(self) -> None:
        index = _index()
        assert len(index) == 4
        assert "azurerm_subnet_app" in index
        assert index.keys()[0] == "azurerm_virtual_network_hub"

    def test_duplicate_key_keeps_first(self) -> None:
        index = ResourceIndex.build([
            _res("azurerm_subnet", "a", {"name": "first"}),
            _res("azurerm_subnet", "a", {"name": "second"}),
        ])
        assert len(index) == 1
        resource = index.lookup("azurerm_subnet_a")
        assert resource is not None
        assert resource.attributes["name"] == "first"

    def test_of_type(self) -> None:
        assert [r.key for r in _index().of_type("azurerm_lb")] == ["azurerm_lb_web"]


class TestResolveReference:
    def test_typed_reference(self) -> None:
        ref = _index().reference("${azurerm_virtual_network.hub.name}", "azurerm_virtual_network")
        assert ref.kind == ReferenceKind.TYPED
        assert ref.resolved_key == "azurerm_virtual_network_hub"

    def test_exact_key(self) -> None:
        assert _index().resolve_reference("azurerm_subnet_app") == "azurerm_subnet_app"

    def test_name_fallback(self) -> None:
        ref = _index().reference("vnet-hub", "azurerm_virtual_network")
        assert ref.kind == ReferenceKind.NAME
        assert ref.resolved_key == "azurerm_virtual_network_hub"

    def test_no_fuzzy_leaves_plain_names_unresolved(self) -> None:
        index = _index()
        assert index.resolve_reference("vnet-hub", "azurerm_virtual_network", fuzzy=False) is None

    def test_unresolved(self) -> None:
        ref = _index().reference("/subscriptions/x/vnets/other", "azurerm_virtual_network")
        assert ref.kind == ReferenceKind.UNRESOLVED
        assert ref.resolved_key is None

    def test_non_string_is_none(self) -> None:
        index = _index()
        assert index.resolve_reference(None) is None
        assert index.resolve_reference(42) is None
        assert index.resolve_reference("") is None

    def test_prefix_match_accepts_longer_types(self) -> None:
        # Without exact_type the prefix also accepts azurerm_lb_probe.
        key = _index().resolve_reference("web", "azurerm_lb")
        assert key in ("azurerm_lb_web", "azurerm_lb_probe_web")

    def test_exact_type_rejects_longer_types(self) -> None:
        index = _index()
        probe = "${azurerm_lb_probe.web.id}"
        balancer = "${azurerm_lb.web.id}"
        assert index.resolve_reference(probe, "azurerm_lb", fuzzy=False, exact_type=True) is None
        assert index.resolve_reference(balancer, "azurerm_lb", exact_type=True) == "azurerm_lb_web"

    def test_attribute_path_is_attached(self) -> None:
        ref = _index().reference("${azurerm_lb.web.id}", attribute_path="loadbalancer_id")
        assert ref.attribute_path == "loadbalancer_id"
        assert ref.resolved_key == "azurerm_lb_web"

    def test_infer_type(self) -> None:
        index = _index()
        assert index.infer_type("${azurerm_key_vault.kv.id}") == "azurerm_key_vault"
        assert index.infer_type("plain") is None


class TestCollectedReferences:
    def test_references_of(self) -> None:
        refs = _index().references_of("azurerm_lb_probe_web")
        assert len(refs) == 1
        assert refs[0].resolved_key == "azurerm_lb_web"
        assert refs[0].attribute_path == "loadbalancer_id"

    def test_unknown_target_is_unresolved(self) -> None:
        index = ResourceIndex.build([
            _res("azurerm_subnet", "a", {"route_table_id": "${azurerm_route_table.rt.id}"})
        ])
        refs = index.references_of("azurerm_subnet_a")
        assert refs[0].kind == ReferenceKind.UNRESOLVED
        assert refs[0].resolved_key is None
