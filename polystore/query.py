"""
Structured filter algebra.

Callers hand repositories either a Filter or a plain mapping:

    {"platform": "twitter"}                       equality
    {"timestamp": {"gte": start, "lte": end}}     range
    {"classification.topics": {"in": [...]}}      set membership
    {"text": {"contains": "vaccine"}}             case-insensitive substring

Mappings are parsed once at the repository boundary into a tuple of
Conditions. Each backend then translates the conditions into its own
query model (Mongo match document, Cypher WHERE clause); the key-value
backend evaluates them in-process with Filter.matches().
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from polystore.errors import InvalidFilter
from polystore.models import DEFAULT_FIND_LIMIT, FindOptions, Record, SortOrder

_MISSING = object()


class Operator(str, enum.Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    CONTAINS = "contains"


@dataclass(frozen=True)
class Condition:
    field: str
    op: Operator
    value: Any

    def matches(self, record: Mapping[str, Any]) -> bool:
        actual = get_path(record, self.field, _MISSING)
        op = self.op

        if op is Operator.EQ:
            if actual is _MISSING:
                return self.value is None
            return actual == self.value
        if op is Operator.NE:
            if actual is _MISSING:
                return self.value is not None
            return actual != self.value
        if actual is _MISSING or actual is None:
            return False
        if op is Operator.IN:
            if isinstance(actual, (list, tuple)):
                # List fields match when any element is in the set
                return any(item in self.value for item in actual)
            return actual in self.value
        if op is Operator.CONTAINS:
            if isinstance(actual, str):
                return str(self.value).lower() in actual.lower()
            if isinstance(actual, (list, tuple, set)):
                return self.value in actual
            return False
        try:
            if op is Operator.GT:
                return actual > self.value
            if op is Operator.GTE:
                return actual >= self.value
            if op is Operator.LT:
                return actual < self.value
            if op is Operator.LTE:
                return actual <= self.value
        except TypeError:
            # Incomparable types never match a range predicate
            return False
        return False


@dataclass(frozen=True)
class Filter:
    """Conjunction of conditions. An empty Filter matches every record."""
    conditions: tuple[Condition, ...] = ()

    @classmethod
    def parse(cls, raw: "Filter | Mapping[str, Any] | None") -> "Filter":
        if raw is None:
            return cls()
        if isinstance(raw, Filter):
            return raw
        if not isinstance(raw, Mapping):
            raise InvalidFilter(f"Filter must be a mapping, got {type(raw).__name__}")

        conditions: list[Condition] = []
        for name, spec in raw.items():
            if not isinstance(name, str) or not name:
                raise InvalidFilter(f"Filter field names must be non-empty strings, got {name!r}")
            if isinstance(spec, Mapping) and spec and all(
                isinstance(k, str) and k.lstrip("$") in _OPERATOR_NAMES for k in spec
            ):
                for op_name, value in spec.items():
                    conditions.append(_make_condition(name, op_name.lstrip("$"), value))
            elif isinstance(spec, Mapping) and any(
                isinstance(k, str) and k.startswith("$") for k in spec
            ):
                bad = [k for k in spec if k.lstrip("$") not in _OPERATOR_NAMES]
                raise InvalidFilter(f"Unknown filter operator(s) for '{name}': {bad}")
            else:
                conditions.append(Condition(name, Operator.EQ, spec))
        return cls(tuple(conditions))

    def matches(self, record: Mapping[str, Any]) -> bool:
        return all(c.matches(record) for c in self.conditions)

    def __bool__(self) -> bool:
        return bool(self.conditions)

    def __iter__(self):
        return iter(self.conditions)


_OPERATOR_NAMES = {op.value for op in Operator}


def _make_condition(name: str, op_name: str, value: Any) -> Condition:
    op = Operator(op_name)
    if op is Operator.IN:
        if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
            raise InvalidFilter(f"'in' on '{name}' needs a list of values, got {value!r}")
        value = list(value)
    return Condition(name, op, value)


def get_path(record: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Dot-path lookup: get_path({"a": {"b": 1}}, "a.b") == 1."""
    current: Any = record
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return default
    return current


def _sort_key(value: Any):
    # None first ascending; keep everything else comparable among itself
    return (value is not None, value if value is not None else 0)


def apply_find_options(
    records: list[Record],
    options: FindOptions | None,
    default_limit: int = DEFAULT_FIND_LIMIT,
) -> list[Record]:
    """Sort, skip and limit in-process for backends without native paging."""
    options = options or FindOptions()
    result = list(records)
    # Stable sort applied from the least significant key up
    for name, order in reversed(options.sort):
        result.sort(
            key=lambda r, n=name: _sort_key(get_path(r, n)),
            reverse=order is SortOrder.DESC,
        )
    if options.skip:
        result = result[options.skip:]
    return result[: options.resolved_limit(default_limit)]
