"""Store-agnostic filter predicates.

Every predicate is a plain value object that a document store can translate
into an equality / membership / containment query. ``matches`` evaluates the
same predicate against an in-memory record and is what the tests rely on to
check visibility properties without a database.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any


def _value(record: Any, field: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(field)
    return getattr(record, field, None)


@dataclass(frozen=True, slots=True)
class MatchAll:
    def matches(self, record: Any) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Equal:
    field: str
    value: Any

    def matches(self, record: Any) -> bool:
        return _value(record, self.field) == self.value


@dataclass(frozen=True, slots=True)
class In:
    """Scalar field is one of ``values``; a null field never matches."""

    field: str
    values: tuple[Any, ...]

    def matches(self, record: Any) -> bool:
        value = _value(record, self.field)
        return value is not None and value in self.values


@dataclass(frozen=True, slots=True)
class Overlaps:
    """List field shares at least one element with ``values``."""

    field: str
    values: tuple[Any, ...]

    def matches(self, record: Any) -> bool:
        value = _value(record, self.field) or ()
        return any(item in self.values for item in value)


@dataclass(frozen=True, slots=True)
class IsNotNull:
    field: str

    def matches(self, record: Any) -> bool:
        return _value(record, self.field) is not None


@dataclass(frozen=True, slots=True)
class AtLeast:
    field: str
    value: Any

    def matches(self, record: Any) -> bool:
        value = _value(record, self.field)
        return value is not None and value >= self.value


@dataclass(frozen=True, slots=True)
class AtMost:
    field: str
    value: Any

    def matches(self, record: Any) -> bool:
        value = _value(record, self.field)
        return value is not None and value <= self.value


@dataclass(frozen=True, slots=True)
class Contains:
    """Case-insensitive substring match on a text field."""

    field: str
    value: str

    def matches(self, record: Any) -> bool:
        value = _value(record, self.field)
        return isinstance(value, str) and self.value.lower() in value.lower()


@dataclass(frozen=True, slots=True)
class AllOf:
    clauses: tuple[Predicate, ...]

    def matches(self, record: Any) -> bool:
        return all(clause.matches(record) for clause in self.clauses)


@dataclass(frozen=True, slots=True)
class AnyOf:
    clauses: tuple[Predicate, ...]

    def matches(self, record: Any) -> bool:
        return any(clause.matches(record) for clause in self.clauses)


Predicate = MatchAll | Equal | In | Overlaps | IsNotNull | AtLeast | AtMost | Contains | AllOf | AnyOf


def all_of(*clauses: Predicate) -> Predicate:
    kept = tuple(clause for clause in clauses if not isinstance(clause, MatchAll))
    if not kept:
        return MatchAll()
    if len(kept) == 1:
        return kept[0]
    return AllOf(kept)


def any_of(*clauses: Predicate) -> Predicate:
    if any(isinstance(clause, MatchAll) for clause in clauses):
        return MatchAll()
    if len(clauses) == 1:
        return clauses[0]
    return AnyOf(tuple(clauses))


def in_(field: str, values: Iterable[Any]) -> In:
    return In(field, tuple(values))


def overlaps(field: str, values: Iterable[Any]) -> Overlaps:
    return Overlaps(field, tuple(values))
