"""
Composable, null-safe boolean predicates over FHIR resource graphs.

A Pattern is an ordered list of conditions. Each condition extracts a value
from the target, applies its missing-value policy when the extraction comes
back absent or of the wrong type, and otherwise evaluates a nested evaluable
against the extracted value. The booleans are reduced with AND (default) or OR.

    specimen_ok = pattern(lambda p: p
        .check(lambda s: resolve(s, "status").map(lambda v: v == "available"))
        .none_of(lambda s: resolve(s, "extension"), lambda ext: ext
            .check(lambda e: resolve(e, "url").map(lambda u: u == CATEGORY_URL))))
"""
from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Present:
    value: Any

    def map(self, fn: Callable[[Any], Any]) -> "Extraction":
        return lift(fn(self.value))


@dataclass(frozen=True)
class Absent:
    def map(self, fn: Callable[[Any], Any]) -> "Extraction":
        return self


@dataclass(frozen=True)
class TypeMismatch:
    expected: type | tuple[type, ...]
    actual: type

    def map(self, fn: Callable[[Any], Any]) -> "Extraction":
        return self


Extraction = Union[Present, Absent, TypeMismatch]
ABSENT = Absent()


def lift(value: Any, expected: type | tuple[type, ...] | None = None) -> Extraction:
    """Normalise a raw extractor result into an Extraction."""
    if isinstance(value, (Absent, TypeMismatch)):
        return value
    if isinstance(value, Present):
        value = value.value
    if value is None:
        return ABSENT
    if expected is not None and not isinstance(value, expected):
        return TypeMismatch(expected, type(value))
    return Present(value)


def resolve(obj: Any, *steps: str | int) -> Extraction:
    """
    Walk mapping keys, attributes and list indexes without raising.

    resolve(specimen, "collection", "quantity", "value") is ABSENT as soon as any
    step is missing.
    """
    current = obj
    for step in steps:
        if current is None:
            return ABSENT
        if isinstance(step, int):
            if not isinstance(current, Sequence) or isinstance(current, (str, bytes)):
                return TypeMismatch(Sequence, type(current))
            if not -len(current) <= step < len(current):
                return ABSENT
            current = current[step]
        elif isinstance(current, Mapping):
            current = current.get(step)
        else:
            current = getattr(current, step, None)
    return lift(current)


class MissingPolicy(Enum):
    FAIL = False
    PASS = True


class Evaluable(Protocol[T]):
    def evaluate(self, target: T) -> bool: ...


class Reducers:
    @staticmethod
    def AND(results: list[bool]) -> bool:
        return all(results)

    @staticmethod
    def OR(results: list[bool]) -> bool:
        return any(results)


@dataclass(frozen=True)
class Condition:
    extractor: Callable[[Any], Extraction]
    evaluable: Evaluable
    missing: MissingPolicy = MissingPolicy.FAIL

    def apply(self, target: Any) -> bool:
        extracted = self.extractor(target)
        if not isinstance(extracted, Present):
            return self.missing.value
        return self.evaluable.evaluate(extracted.value)


class _Truth:
    def evaluate(self, target: Any) -> bool:
        return bool(target)


class _Negation:
    def __init__(self, evaluable: Evaluable):
        self._evaluable = evaluable

    def evaluate(self, target: Any) -> bool:
        return not self._evaluable.evaluate(target)


class _Quantifier:
    def __init__(self, element: Evaluable, reducer: Callable[[list[bool]], bool], empty: bool, negate: bool = False):
        self._element = element
        self._reducer = reducer
        self._empty = empty
        self._negate = negate

    def evaluate(self, collection: Iterable[Any]) -> bool:
        results = [self._element.evaluate(item) != self._negate for item in collection]
        if not results:
            return self._empty
        return self._reducer(results)


_TRUTH = _Truth()


def _identity(target: Any) -> Extraction:
    return Present(target)


def _collection(extractor: Callable[[Any], Any]) -> Callable[[Any], Extraction]:
    def extract(target: Any) -> Extraction:
        extracted = lift(extractor(target))
        # omitted repeating elements are empty, not missing
        if isinstance(extracted, Absent):
            return Present(())
        if isinstance(extracted, Present) and (
            isinstance(extracted.value, (str, bytes, Mapping)) or not isinstance(extracted.value, Iterable)
        ):
            return TypeMismatch(Iterable, type(extracted.value))
        return extracted

    return extract


SubBlock = Union[Callable[["Pattern[Any]"], Any], Evaluable]


class Pattern(Generic[T]):
    def __init__(self, reducer: Callable[[list[bool]], bool] = Reducers.AND):
        self._reducer = reducer
        self.conditions: list[Condition] = []

    def _add(self, extractor: Callable[[Any], Extraction], evaluable: Evaluable, missing: MissingPolicy) -> Pattern[T]:
        self.conditions.append(Condition(extractor, evaluable, missing))
        return self

    def check(self, predicate: Callable[[T], Any]) -> Pattern[T]:
        """Leaf condition on the target itself. Absent or mistyped values fail."""
        return self._add(lambda target: lift(predicate(target)), _TRUTH, MissingPolicy.FAIL)

    def check_if_exists(self, predicate: Callable[[T], Any]) -> Pattern[T]:
        """Like check, but an absent value counts as satisfied."""
        return self._add(lambda target: lift(predicate(target)), _TRUTH, MissingPolicy.PASS)

    def path(
        self,
        extractor: Callable[[T], Any],
        sub_block: SubBlock,
        of_type: type | tuple[type, ...] | None = None,
    ) -> Pattern[T]:
        return self._add(lambda target: lift(extractor(target), of_type), _build(sub_block), MissingPolicy.FAIL)

    def if_path_exists(
        self,
        extractor: Callable[[T], Any],
        sub_block: SubBlock,
        of_type: type | tuple[type, ...] | None = None,
    ) -> Pattern[T]:
        return self._add(lambda target: lift(extractor(target), of_type), _build(sub_block), MissingPolicy.PASS)

    def any_of(self, extractor: Callable[[T], Any], sub_block: SubBlock) -> Pattern[T]:
        """Some element of the extracted collection matches sub_block.

        sub_block is built once and reused for every element. A built pattern
        holds no per-target state, so this is the same as building one per element.
        """
        quantifier = _Quantifier(_build(sub_block), Reducers.OR, empty=False)
        return self._add(_collection(extractor), quantifier, MissingPolicy.FAIL)

    def all_of(self, extractor: Callable[[T], Any], sub_block: SubBlock) -> Pattern[T]:
        quantifier = _Quantifier(_build(sub_block), Reducers.AND, empty=True)
        return self._add(_collection(extractor), quantifier, MissingPolicy.FAIL)

    def none_of(self, extractor: Callable[[T], Any], sub_block: SubBlock) -> Pattern[T]:
        quantifier = _Quantifier(_build(sub_block), Reducers.AND, empty=True, negate=True)
        return self._add(_collection(extractor), quantifier, MissingPolicy.FAIL)

    def and_(self, sub_block: SubBlock) -> Pattern[T]:
        return self._add(_identity, _build(sub_block, Reducers.AND), MissingPolicy.FAIL)

    def or_(self, sub_block: SubBlock) -> Pattern[T]:
        return self._add(_identity, _build(sub_block, Reducers.OR), MissingPolicy.FAIL)

    def not_(self, evaluable: SubBlock) -> Pattern[T]:
        return self._add(_identity, _Negation(_build(evaluable)), MissingPolicy.FAIL)

    def evaluate(self, target: T) -> bool:
        if not self.conditions:
            return True
        return self._reducer([condition.apply(target) for condition in self.conditions])


def pattern(sub_block: Callable[[Pattern[Any]], Any], reducer: Callable[[list[bool]], bool] = Reducers.AND) -> Pattern[Any]:
    built = Pattern(reducer)
    sub_block(built)
    return built


def _build(sub_block: SubBlock, reducer: Callable[[list[bool]], bool] = Reducers.AND) -> Evaluable:
    if hasattr(sub_block, "evaluate"):
        return sub_block
    return pattern(sub_block, reducer)
