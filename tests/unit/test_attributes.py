"""Tests for attribute-bag path lookup and normalization helpers."""

from __future__ import annotations

from azureguard.core.attributes import (
    ABSENT,
    as_str_list,
    blocks,
    get_path,
    is_absent,
    iter_strings,
    to_int,
    truthy,
)


class TestGetPath:
    def test_nested_mapping(self) -> None:
        attrs = {"network_profile": {"network_policy": "azure"}}
        assert get_path(attrs, "network_profile.network_policy") == "azure"

    def test_block_list_descends_into_first_element(self) -> None:
        attrs = {"network_profile": [{"network_policy": "calico"}]}
        assert get_path(attrs, "network_profile.network_policy") == "calico"

    def test_numeric_segment_indexes_list(self) -> None:
        attrs = {"ip_configuration": [{"name": "a"}, {"name": "b"}]}
        assert get_path(attrs, "ip_configuration.1.name") == "b"

    def test_missing_segment_is_absent(self) -> None:
        assert get_path({"a": {}}, "a.b") is ABSENT
        assert get_path({"a": "scalar"}, "a.b") is ABSENT
        assert get_path({"a": []}, "a.b") is ABSENT

    def test_index_out_of_range_is_absent(self) -> None:
        assert get_path({"a": [1]}, "a.3") is ABSENT

    def test_explicit_null_is_returned(self) -> None:
        value = get_path({"a": None}, "a")
        assert value is None
        assert is_absent(value)


class TestNormalization:
    def test_absent_is_falsy(self) -> None:
        assert not ABSENT
        assert repr(ABSENT) == "ABSENT"

    def test_as_str_list_wraps_scalars(self) -> None:
        assert as_str_list("10.0.0.0/16") == ["10.0.0.0/16"]
        assert as_str_list(None) == []
        assert as_str_list([1, None, "x"]) == ["1", "x"]

    def test_blocks_keeps_only_mappings(self) -> None:
        assert blocks({"a": 1}) == [{"a": 1}]
        assert blocks([{"a": 1}, "x", 3]) == [{"a": 1}]
        assert blocks(ABSENT) == []

    def test_truthy_on_blocks(self) -> None:
        assert truthy([{}])
        assert not truthy([])
        assert not truthy({})
        assert not truthy("")
        assert not truthy(None)
        assert truthy(True)
        assert not truthy(False)

    def test_to_int(self) -> None:
        assert to_int("100") == 100
        assert to_int(" 42 ") == 42
        assert to_int("abc", 7) == 7
        assert to_int(True, 1) == 1
        assert to_int(None) is None


class TestIterStrings:
    def test_yields_paths_in_sorted_key_order(self) -> None:
        attrs = {"b": "y", "a": ["x", {"c": "z"}], "n": 3}
        assert list(iter_strings(attrs)) == [("a.0", "x"), ("a.1.c", "z"), ("b", "y")]
