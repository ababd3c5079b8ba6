from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import date
from decimal import Decimal

from fhirpathpy import evaluate as fhirpath_evaluate
from fhirpathpy.models import models

from fhir_export.core.errors import (
    AmbiguousResourceTypeError,
    ExpressionEvaluationError,
    UnsupportedValueError,
    VariableResolutionError,
)
from fhir_export.evaluation.query import AndClause, OrClause, Query, resource_type_of, substitute

_FHIR_DATE_RE = re.compile(r"^\d{4}(-(0[1-9]|1[0-2])(-(0[1-9]|[12]\d|3[01]))?)?$")


def format_variable(value) -> str:
    """Render a resolved variable for literal substitution. Only dates are supported."""
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")
    # FHIRPath date values come back either as raw strings or as typed date nodes
    if not isinstance(value, (bool, int, float, Decimal, Mapping, list)) and _FHIR_DATE_RE.match(str(value)):
        return str(value)
    raise UnsupportedValueError(f"Type {type(value).__name__} is currently not supported [value={value!r}]")


def to_boolean(results: list) -> bool:
    if not results:
        return False
    if len(results) == 1 and isinstance(results[0], bool):
        return results[0]
    return True


class CriteriaEvaluationService:
    def __init__(self, query: Query, fhir_version: str = "r4"):
        self.query = query
        self._model = models[fhir_version]
        # constant placeholders may also appear in variable expressions
        self._variables = {name: substitute(expr, query.constants) for name, expr in query.variables.items()}

    def involved_resource_types(self) -> set[str]:
        return self.query.involved_resource_types()

    def retrieve(self, resource: dict, expression: str) -> list:
        return fhirpath_evaluate(resource, expression, {}, self._model)

    def evaluate(self, resources: Iterable[dict]) -> bool:
        bound = self._bind(resources)
        variables = self._resolve_variables(bound)
        criteria = self.query.criteria.substitute(variables).substitute(self.query.constants)
        return self._evaluate_and(criteria, bound)

    def _bind(self, resources: Iterable[dict]) -> dict[str, dict]:
        bound: dict[str, dict] = {}
        for resource in resources:
            resource_type = resource.get("resourceType")
            if resource_type in bound:
                raise AmbiguousResourceTypeError(
                    f"Provided FHIR resources have to have a unique FHIR resource type [duplicate={resource_type}]"
                )
            bound[resource_type] = resource
        return bound

    def _resolve_variables(self, bound: dict[str, dict]) -> dict[str, str]:
        resolved = {}
        for name, expression in self._variables.items():
            resource_type = resource_type_of(expression)
            resource = bound.get(resource_type)
            if resource is None:
                raise VariableResolutionError(
                    f"Cannot resolve variable {name}. No such resource [type={resource_type}, expr={expression}]"
                )
            try:
                results = self.retrieve(resource, expression)
            except Exception as exc:
                raise VariableResolutionError(f"Failed to resolve variable {name} [expr={expression}]: {exc}") from exc
            if not results:
                raise VariableResolutionError(
                    f"Cannot resolve variable {name}. No such elements in resource [expr={expression}]"
                )
            resolved[name] = format_variable(results[0])
        return resolved

    def _evaluate_and(self, clause: AndClause, bound: dict[str, dict]) -> bool:
        return all(self._evaluate_expression(expr, bound) for expr in clause.expressions) and all(
            self._evaluate_or(child, bound) for child in clause.or_clauses
        )

    def _evaluate_or(self, clause: OrClause, bound: dict[str, dict]) -> bool:
        # each half is vacuously true when empty; the halves are ORed
        leaves = not clause.expressions or any(self._evaluate_expression(expr, bound) for expr in clause.expressions)
        return leaves or not clause.and_clauses or any(self._evaluate_and(child, bound) for child in clause.and_clauses)

    def _evaluate_expression(self, expression: str, bound: dict[str, dict]) -> bool:
        resource_type = resource_type_of(expression)
        resource = bound.get(resource_type)
        if resource is None:
            raise ExpressionEvaluationError(expression, f"Missing resource of type '{resource_type}'")
        try:
            return to_boolean(self.retrieve(resource, expression))
        except Exception as exc:
            raise ExpressionEvaluationError(
                expression, str(exc), resource_type=resource_type, resource_id=resource.get("id")
            ) from exc
