# ============================================================================
# JSON FILTER TESTS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Tests - Recursive JSON search
# PURPOSE: Verify conditions, nested matches and result shape
# CREATED: 18 OCT 2026
# ============================================================================
"""
JSON Filter Tests

Run with:
    pytest tests/test_filter.py -v
"""

import pytest

from core.errors import TypeMismatchError
from orchestrator.engine.filter import filter_result, search_json


DEVICES = {
    "site": "north",
    "devices": [
        {"id": "d1", "status": "offline", "load": 12, "tags": ["edge"]},
        {"id": "d2", "status": "online", "load": 80, "tags": []},
        {
            "id": "d3",
            "status": "offline",
            "load": 55,
            "children": [{"id": "d3-a", "status": "offline", "load": 3}],
        },
    ],
}


def _ids(matches):
    return [m["id"] for m in matches]


class TestConditions:

    def test_equals(self):
        assert _ids(search_json(DEVICES, "status", "=", "offline")) == ["d1", "d3", "d3-a"]

    def test_not_equals(self):
        assert _ids(search_json(DEVICES, "status", "!=", "offline")) == ["d2"]

    def test_greater_and_less(self):
        assert _ids(search_json(DEVICES, "load", ">", 50)) == ["d2", "d3"]
        assert _ids(search_json(DEVICES, "load", "<", "10")) == ["d3-a"]

    def test_contains_list_and_string(self):
        assert _ids(search_json(DEVICES, "tags", "contains", "edge")) == ["d1"]
        assert _ids(search_json(DEVICES, "id", "contains", "-")) == ["d3-a"]

    def test_starts_with(self):
        assert _ids(search_json(DEVICES, "id", "startsWith", "d3")) == ["d3", "d3-a"]

    def test_number_never_equals_string(self):
        assert search_json(DEVICES, "load", "=", "12") == []

    def test_unsupported_condition(self):
        with pytest.raises(TypeMismatchError):
            search_json(DEVICES, "status", "~", "x")

    def test_non_numeric_threshold(self):
        with pytest.raises(TypeMismatchError):
            search_json(DEVICES, "load", ">", "many")


class TestResultShape:

    def test_found(self):
        result = filter_result(search_json(DEVICES, "status", "=", "offline"))
        assert result["found"] is True
        assert result["count"] == 3

    def test_not_found(self):
        assert filter_result(search_json([], "status", "=", "offline")) == {
            "found": False,
            "count": 0,
            "results": [],
        }

    def test_scalar_source(self):
        assert search_json(42, "status", "=", "offline") == []
