"""Tests for canonicalization and request fingerprints."""

import enum
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import BaseModel

from bulwark.core.hashing import canonical_json, canonicalize, compute_hash, fingerprint


class Color(enum.Enum):
    RED = "red"


@dataclass
class Point:
    x: float
    y: float


class Filter(BaseModel):
    field: str
    value: int


class TestComputeHash:
    def test_deterministic(self):
        assert compute_hash("a", 1) == compute_hash("a", 1)

    def test_order_dependent(self):
        assert compute_hash("a", "b") != compute_hash("b", "a")

    def test_length(self):
        assert len(compute_hash("x")) == 64
        assert len(compute_hash("x", length=16)) == 16


class TestCanonicalize:
    def test_dict_keys_sorted(self):
        assert canonical_json(canonicalize({"b": 1, "a": 2})) == '{"a":2,"b":1}'

    def test_float_precision(self):
        assert canonicalize(1.0000000001) == 1.0
        assert canonicalize(0.1234567, precision=3) == 0.123

    def test_negative_zero(self):
        assert canonical_json(canonicalize(-0.0)) == "0.0"
        assert canonical_json(canonicalize(-0.0000001)) == "0.0"

    def test_non_finite_floats(self):
        assert canonicalize(float("nan")) == "NaN"
        assert canonicalize(float("-inf")) == "-Infinity"

    def test_tuple_and_list_equal(self):
        assert canonicalize((1, 2)) == canonicalize([1, 2])

    def test_sets_sorted(self):
        assert canonicalize({3, 1, 2}) == [1, 2, 3]

    def test_aware_datetime_normalized_to_utc(self):
        eastern = timezone(timedelta(hours=-5))
        local = datetime(2026, 1, 1, 7, 0, tzinfo=eastern)
        utc = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        assert canonicalize(local) == canonicalize(utc)

    def test_enum_bytes_dataclass_model(self):
        assert canonicalize(Color.RED) == "red"
        assert canonicalize(b"\x01\xff") == "01ff"
        assert canonicalize(Point(1.0, 2.5)) == {"x": 1.0, "y": 2.5}
        assert canonicalize(Filter(field="status", value=3)) == {"field": "status", "value": 3}

    def test_decimal_matches_float(self):
        assert canonicalize(Decimal("0.3")) == canonicalize(0.3)
        assert canonical_json(canonicalize({"price": Decimal("19.990")})) == '{"price":19.99}'

    def test_bool_not_treated_as_int(self):
        assert canonicalize(True) is True

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            canonicalize(object())


class TestFingerprint:
    def test_logically_equal_requests_match(self):
        a = fingerprint("issue.search", {"jql": "project = ABC", "limit": 50, "score": 0.1 + 0.2})
        b = fingerprint("issue.search", {"score": 0.3, "limit": 50, "jql": "project = ABC"})
        assert a == b

    def test_operation_name_matters(self):
        assert fingerprint("issue.get", {"key": "A"}) != fingerprint("issue.delete", {"key": "A"})

    def test_payload_matters(self):
        assert fingerprint("issue.get", {"key": "A"}) != fingerprint("issue.get", {"key": "B"})
