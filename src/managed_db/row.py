"""Result row supporting both named and positional access."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Any


class Row:
    """A decoded result row.

    Columns can be read by name (``row["id"]``) or position (``row[0]``).
    Iterating yields the values in column order. Duplicate column names
    resolve to the first occurrence for named access.
    """

    __slots__ = ("_fields", "_values")

    def __init__(self, fields: Sequence[str], values: Sequence[Any]) -> None:
        """Initialize with column names and decoded values of equal length."""
        if len(fields) != len(values):
            raise ValueError(f"Row has {len(fields)} fields but {len(values)} values")
        self._fields = tuple(fields)
        self._values = tuple(values)

    def __getitem__(self, key: str | int) -> Any:
        """Get a column value by name or position."""
        if isinstance(key, str):
            try:
                return self._values[self._fields.index(key)]
            except ValueError:
                raise KeyError(key) from None
        return self._values[key]

    def keys(self) -> list[str]:
        """Return column names."""
        return list(self._fields)

    def values(self) -> list[Any]:
        """Return column values."""
        return list(self._values)

    def to_dict(self) -> dict[str, Any]:
        """Return a plain dict, converting nested struct rows as well."""
        return {
            name: _plain(value) for name, value in zip(self._fields, self._values, strict=True)
        }

    def __iter__(self) -> Iterator[Any]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Row):
            return NotImplemented
        return self._fields == other._fields and self._values == other._values

    def __hash__(self) -> int:
        return hash((self._fields, self._values))

    def __repr__(self) -> str:
        cols = ", ".join(f"{n}={v!r}" for n, v in zip(self._fields, self._values, strict=True))
        return f"Row({cols})"


def _plain(value: Any) -> Any:
    if isinstance(value, Row):
        return value.to_dict()
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value
