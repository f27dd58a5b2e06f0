"""
Tests for recursive payload traversal.
"""
from utils.payload import format_path, get_field, scan, transform


def test_format_path():
    assert format_path("", "name") == "name"
    assert format_path("guardian", "name") == "guardian.name"
    assert format_path("phones", 0) == "phones[0]"
    assert format_path("", 2) == "[2]"


def test_scan_returns_first_flagged_leaf():
    payload = {
        "students": [
            {"name": "Ann"},
            {"name": "FLAG", "notes": "FLAG"},
        ],
        "later": "FLAG",
    }

    assert scan(payload, lambda value: value == "FLAG") == "students[1].name"


def test_scan_ignores_scalars():
    payload = {"count": 3, "ratio": 0.5, "ok": False, "missing": None}
    assert scan(payload, lambda value: True) is None


def test_scan_top_level_list():
    assert scan(["a", "b", "x"], lambda value: value == "x") == "[2]"


def test_scan_reports_only_first_hit():
    seen = []

    def check(value):
        seen.append(value)
        return value == "b"

    scan({"a": "a", "b": "b", "c": "c"}, check)

    assert seen == ["a", "b"]


def test_transform_rebuilds_tree():
    payload = {"name": "ann", "tags": ["x", 1, None], "nested": {"flag": True, "city": "pune"}}

    result = transform(payload, str.upper)

    assert result == {"name": "ANN", "tags": ["X", 1, None], "nested": {"flag": True, "city": "PUNE"}}
    assert payload["name"] == "ann"


def test_transform_scalar_passthrough():
    assert transform(5, str.upper) == 5
    assert transform(None, str.upper) is None
    assert transform("a", str.upper) == "A"


def test_get_field_tolerates_non_dict():
    assert get_field({"id": 4}, "id") == 4
    assert get_field(["id"], "id") is None
    assert get_field(None, "id") is None
