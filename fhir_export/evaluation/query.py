from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from fhir_export.core.errors import CriteriaConfigError
from fhir_export.fhir.validators import is_resource_type

_RESOURCE_TYPE_RE = re.compile(r"^[A-Z][A-Za-z]+$")


def resource_type_of(expression: str) -> str:
    """The FHIR resource type an expression targets: its first path segment."""
    return expression.strip().split(".", 1)[0].strip()


def validate_resource_type(expression: str) -> str:
    resource_type = resource_type_of(expression)
    if not _RESOURCE_TYPE_RE.match(resource_type):
        raise CriteriaConfigError(f"Expression does not start with a FHIR resource type [expr={expression}]")
    if not is_resource_type(resource_type):
        raise CriteriaConfigError(f"Unknown FHIR resource type '{resource_type}' [expr={expression}]")
    return resource_type


def substitute(expression: str, values: Mapping[str, str]) -> str:
    """Replace $name placeholders in a single pass, longest names first."""
    if not values:
        return expression
    names = sorted(values, key=len, reverse=True)
    placeholder = re.compile(r"\$(" + "|".join(re.escape(name) for name in names) + r")")
    return placeholder.sub(lambda m: values[m.group(1)], expression)


@dataclass(frozen=True)
class AndClause:
    or_clauses: tuple[OrClause, ...] = ()
    expressions: tuple[str, ...] = ()

    def substitute(self, values: Mapping[str, str]) -> AndClause:
        return AndClause(
            tuple(clause.substitute(values) for clause in self.or_clauses),
            tuple(substitute(expr, values) for expr in self.expressions),
        )

    def involved_resource_types(self) -> set[str]:
        types = {resource_type_of(expr) for expr in self.expressions}
        for clause in self.or_clauses:
            types |= clause.involved_resource_types()
        return types

    @classmethod
    def from_json(cls, node) -> AndClause:
        children, expressions = _partition(node, OrClause, "AndClause")
        return cls(tuple(children), tuple(expressions))


@dataclass(frozen=True)
class OrClause:
    and_clauses: tuple[AndClause, ...] = ()
    expressions: tuple[str, ...] = ()

    def substitute(self, values: Mapping[str, str]) -> OrClause:
        return OrClause(
            tuple(clause.substitute(values) for clause in self.and_clauses),
            tuple(substitute(expr, values) for expr in self.expressions),
        )

    def involved_resource_types(self) -> set[str]:
        types = {resource_type_of(expr) for expr in self.expressions}
        for clause in self.and_clauses:
            types |= clause.involved_resource_types()
        return types

    @classmethod
    def from_json(cls, node) -> OrClause:
        children, expressions = _partition(node, AndClause, "OrClause")
        return cls(tuple(children), tuple(expressions))


def _partition(node, child_cls, name: str):
    if not isinstance(node, list):
        raise CriteriaConfigError(f"Expected an array for {name}, got {type(node).__name__}")
    children = []
    expressions = []
    for item in node:
        if isinstance(item, str):
            validate_resource_type(item)
            expressions.append(item)
        elif isinstance(item, list):
            children.append(child_cls.from_json(item))
        else:
            raise CriteriaConfigError(f"Unexpected node type '{type(item).__name__}' for {name}")
    return children, expressions


@dataclass(frozen=True)
class Query:
    description: str | None = None
    constants: Mapping[str, str] = field(default_factory=dict)
    variables: Mapping[str, str] = field(default_factory=dict)
    criteria: AndClause = field(default_factory=AndClause)

    def __post_init__(self):
        duplicates = set(self.constants) & set(self.variables)
        if duplicates:
            raise CriteriaConfigError(
                f"Constant and variable identifiers have to be unique [duplicates={sorted(duplicates)}]"
            )

    def with_constants_inserted(self) -> Query:
        return Query(self.description, {}, self.variables, self.criteria.substitute(self.constants))

    def with_variables_inserted(self, values: Mapping[str, str]) -> Query:
        return Query(self.description, self.constants, {}, self.criteria.substitute(values))

    def involved_resource_types(self) -> set[str]:
        return {resource_type_of(expr) for expr in self.variables.values()} | self.criteria.involved_resource_types()


def _reject_duplicate_keys(pairs):
    result = {}
    for key, value in pairs:
        if key in result:
            raise CriteriaConfigError(f"Duplicate key '{key}' in criteria document")
        result[key] = value
    return result


def _string_map(document: dict, key: str) -> dict[str, str]:
    value = document.get(key) or {}
    if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
        raise CriteriaConfigError(f"'{key}' must be an object mapping names to strings")
    return value


def parse_query(document: dict) -> Query:
    if not isinstance(document, dict):
        raise CriteriaConfigError("Criteria document must be a JSON object")
    if "criteria" not in document:
        raise CriteriaConfigError("Criteria document has no 'criteria' entry")
    variables = _string_map(document, "variables")
    for expression in variables.values():
        validate_resource_type(expression)
    description = document.get("description")
    if description is not None and not isinstance(description, str):
        raise CriteriaConfigError("'description' must be a string")
    return Query(
        description=description,
        constants=_string_map(document, "constants"),
        variables=variables,
        criteria=AndClause.from_json(document["criteria"]),
    )


def parse_query_json(text: str) -> Query:
    try:
        document = json.loads(text, object_pairs_hook=_reject_duplicate_keys)
    except json.JSONDecodeError as exc:
        raise CriteriaConfigError(f"Criteria document is not valid JSON: {exc}") from exc
    return parse_query(document)


def load_query(path: str | Path) -> Query:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise CriteriaConfigError(f"Failed to read criteria file @ {path}: {exc}") from exc
    return parse_query_json(text)
