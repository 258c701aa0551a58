"""Tests for stable serialization and change detection."""

import math

import pytest

from club_sync.core.hashing import (
    ChangeDetector,
    compute_hash,
    compute_source_hash,
    normalize_value,
    stable_serialize,
)
from club_sync.errors import SerializationError


class TestStableSerialize:
    """Test deterministic serialization."""

    def test_key_order_does_not_matter(self) -> None:
        """Objects with the same entries serialize identically."""
        a = {"b": 1, "a": {"y": 2, "x": 3}}
        b = {"a": {"x": 3, "y": 2}, "b": 1}
        assert stable_serialize(a) == stable_serialize(b)
        assert stable_serialize(a) == '{"a":{"x":3,"y":2},"b":1}'

    def test_array_order_is_kept(self) -> None:
        """Arrays are ordered data and must not be sorted."""
        assert compute_hash({"teams": ["A", "B"]}) != compute_hash({"teams": ["B", "A"]})

    def test_none_equals_absent(self) -> None:
        """A key holding None hashes like a missing key."""
        assert compute_hash({"a": 1, "b": None}) == compute_hash({"a": 1})

    def test_nested_none_dropped(self) -> None:
        assert stable_serialize({"a": {"b": None, "c": [1, None]}}) == '{"a":{"c":[1,null]}}'

    def test_unicode_is_not_escaped(self) -> None:
        assert stable_serialize({"name": "Zoë"}) == '{"name":"Zoë"}'

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    def test_non_finite_numbers_rejected(self, value: float) -> None:
        with pytest.raises(SerializationError, match="Non-finite"):
            stable_serialize({"score": value})

    def test_non_string_keys_rejected(self) -> None:
        with pytest.raises(SerializationError, match="Non-string key"):
            stable_serialize({1: "one"})

    def test_unsupported_type_rejected(self) -> None:
        with pytest.raises(SerializationError, match="set"):
            stable_serialize({"tags": {"a", "b"}})


class TestSourceHash:
    """Test entity hashes."""

    def test_hash_is_sha256_hex(self) -> None:
        digest = compute_source_hash(("M001",), {"name": "Anna"})
        assert len(digest) == 64
        int(digest, 16)

    def test_key_is_part_of_hash(self) -> None:
        """Equal payloads under different keys are different entities."""
        payload = {"name": "Anna"}
        assert compute_source_hash(("M001",), payload) != compute_source_hash(("M002",), payload)

    def test_hash_is_stable_across_calls(self) -> None:
        payload = {"email": "a@example.org", "teams": ["JO11-1"], "phone": None}
        assert compute_source_hash(("M001",), payload) == compute_source_hash(
            ("M001",), dict(reversed(list(payload.items())))
        )


class TestChangeDetector:
    """Test field-level comparison."""

    def test_changed_fields(self) -> None:
        detector = ChangeDetector(["email", "mobile", "phone"])
        old = {"email": "a@example.org", "mobile": "0611", "phone": None}
        new = {"email": "a@example.org", "mobile": "0622", "phone": "010"}

        assert detector.changed_fields(old, new) == {
            "mobile": ("0611", "0622"),
            "phone": (None, "010"),
        }

    def test_blank_and_missing_are_equal(self) -> None:
        detector = ChangeDetector(["email", "mobile"])
        assert detector.changed_fields({"email": " "}, {"mobile": None}) == {}
        assert detector.fields_hash({"email": ""}) == detector.fields_hash({})

    def test_untracked_fields_ignored(self) -> None:
        detector = ChangeDetector(["email"])
        assert detector.fields_hash({"email": "x", "name": "A"}) == detector.fields_hash(
            {"email": "x", "name": "B"}
        )

    def test_normalize_value(self) -> None:
        assert normalize_value("  a  ") == "a"
        assert normalize_value("") is None
        assert normalize_value(False) is False
