"""Tests for Row."""

import pytest

from managed_db.row import Row


def test_named_and_positional_access():
    row = Row(["id", "name"], [1, "a"])
    assert row["name"] == "a"
    assert row[0] == 1
    assert row.keys() == ["id", "name"]
    assert row.values() == [1, "a"]
    assert list(row) == [1, "a"]
    assert len(row) == 2


def test_missing_column():
    with pytest.raises(KeyError):
        Row(["id"], [1])["nope"]


def test_mismatched_lengths():
    with pytest.raises(ValueError):
        Row(["id", "name"], [1])


def test_to_dict_converts_nested_rows():
    inner = Row(["x"], [1])
    row = Row(["id", "point", "points"], [1, inner, [inner]])
    assert row.to_dict() == {"id": 1, "point": {"x": 1}, "points": [{"x": 1}]}


def test_equality_and_hash():
    assert Row(["a"], [1]) == Row(["a"], [1])
    assert Row(["a"], [1]) != Row(["b"], [1])
    assert len({Row(["a"], [1]), Row(["a"], [1])}) == 1
    assert repr(Row(["a"], [1])) == "Row(a=1)"
