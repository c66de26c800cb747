"""
Tests for canonical cache key construction.
"""

from __future__ import annotations

import pytest

from tiercache.cache.keys import build_key, build_query_key


class TestBuildKey:
    """Test build_key canonicalization."""

    def test_parameter_order_does_not_matter(self) -> None:
        assert build_key("usage", {"b": 2, "a": 1}) == build_key("usage", {"a": 1, "b": 2})

    def test_sorted_and_joined(self) -> None:
        assert build_key("usage", {"b": 2, "a": 1}) == "usage:a=1&b=2"

    def test_no_params_is_namespace(self) -> None:
        assert build_key("packages") == "packages"
        assert build_key("packages", {}) == "packages"

    def test_values_are_percent_encoded(self) -> None:
        assert build_key("search", {"q": "a b&c=d"}) == "search:q=a%20b%26c%3Dd"

    def test_reserved_characters_replaced(self) -> None:
        """Characters illegal in store paths become underscores."""
        key = build_key("ns", {"v": "1.5", "k.x": "a#b$c[d]"})
        assert key == "ns:k_x=a%23b%24c%5Bd%5D&v=1_5"
        assert "." not in key.split(":", 1)[1]

    def test_unreserved_marks_kept(self) -> None:
        assert build_key("ns", {"v": "a-b_c~d*e'f(g)!"}) == "ns:v=a-b_c~d*e'f(g)!"

    def test_value_stringification(self) -> None:
        key = build_key("ns", {"flag": True, "off": False, "none": None, "ids": [1, 2]})
        assert key == "ns:flag=true&ids=1%2C2&none=&off=false"

    def test_iccid_key(self) -> None:
        assert build_key("sim_usage", {"iccid": "8985200012345678901"}) == (
            "sim_usage:iccid=8985200012345678901"
        )


class TestBuildQueryKey:
    """Test build_query_key for query-key arrays."""

    def test_string_passthrough(self) -> None:
        assert build_query_key("packages:country=FR") == "packages:country=FR"

    def test_namespace_only(self) -> None:
        assert build_query_key(["packages"]) == "packages"

    def test_parts_become_params(self) -> None:
        assert build_query_key(["usage", "abc", 2]) == "usage:params=abc%2C2"

    def test_empty_sequence_rejected(self) -> None:
        with pytest.raises(ValueError):
            build_query_key([])
