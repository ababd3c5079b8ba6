from datetime import date, datetime

import pytest

from fhir_export.core.errors import (
    AmbiguousResourceTypeError,
    ExpressionEvaluationError,
    UnsupportedValueError,
    VariableResolutionError,
)
from fhir_export.evaluation.query import parse_query
from fhir_export.evaluation.service import CriteriaEvaluationService, format_variable, to_boolean

PATIENT = {"resourceType": "Patient", "id": "p1", "active": True, "birthDate": "1990-05-01"}
SPECIMEN = {"resourceType": "Specimen", "id": "s1", "status": "available"}
CONSENT = {"resourceType": "Consent", "id": "c1", "status": "active"}


def _service(criteria, constants=None, variables=None):
    return CriteriaEvaluationService(
        parse_query({"constants": constants or {}, "variables": variables or {}, "criteria": criteria})
    )


def test_and_clause_requires_all_leaves():
    service = _service(["Patient.active = true", "Specimen.status = 'available'"])
    assert service.evaluate([PATIENT, SPECIMEN]) is True
    assert service.evaluate([{**PATIENT, "active": False}, SPECIMEN]) is False


def test_or_clause_accepts_any_leaf_or_child():
    service = _service([["Specimen.status = 'unavailable'", ["Patient.active = true"]]])
    assert service.evaluate([PATIENT, SPECIMEN]) is True
    assert service.evaluate([{**PATIENT, "active": False}, SPECIMEN]) is False


def test_empty_or_clause_is_vacuously_true():
    service = _service(["Patient.active = true", []])
    assert service.evaluate([PATIENT]) is True


def test_or_clause_halves_are_vacuous_when_empty():
    leaves_only = _service([["Patient.active = false"]])
    assert leaves_only.evaluate([PATIENT]) is True

    children_only = _service([[["Patient.active = false"]]])
    assert children_only.evaluate([PATIENT]) is True


def test_constants_are_substituted():
    service = _service(["Consent.status = $status"], constants={"status": "'active'"})
    assert service.evaluate([CONSENT]) is True
    assert service.evaluate([{**CONSENT, "status": "rejected"}]) is False


def test_variables_are_resolved_and_substituted():
    service = _service(["Patient.birthDate = @$birth"], variables={"birth": "Patient.birthDate"})
    assert service.evaluate([PATIENT]) is True


def test_variable_without_resource_fails():
    service = _service(["Specimen.exists()"], variables={"birth": "Patient.birthDate"})
    with pytest.raises(VariableResolutionError):
        service.evaluate([SPECIMEN])


def test_variable_without_value_fails():
    service = _service(["Specimen.exists()"], variables={"birth": "Patient.birthDate"})
    patient = {k: v for k, v in PATIENT.items() if k != "birthDate"}
    with pytest.raises(VariableResolutionError):
        service.evaluate([SPECIMEN, patient])


def test_variable_of_unsupported_type_fails():
    service = _service(["Specimen.exists()"], variables={"flag": "Patient.active"})
    with pytest.raises(UnsupportedValueError):
        service.evaluate([SPECIMEN, PATIENT])


def test_duplicate_resource_types_are_ambiguous():
    service = _service(["Patient.active = true"])
    with pytest.raises(AmbiguousResourceTypeError):
        service.evaluate([PATIENT, {**PATIENT, "id": "p2"}])


def test_leaf_without_resource_carries_expression():
    service = _service(["Consent.status = 'active'"])
    with pytest.raises(ExpressionEvaluationError) as info:
        service.evaluate([PATIENT])
    assert info.value.expression == "Consent.status = 'active'"


def test_involved_resource_types():
    service = _service(["Consent.status = 'active'"], variables={"birth": "Patient.birthDate"})
    assert service.involved_resource_types() == {"Consent", "Patient"}


def test_format_variable():
    assert format_variable(date(2020, 2, 3)) == "2020-02-03"
    assert format_variable(datetime(2020, 2, 3, 10, 0)) == "2020-02-03"
    assert format_variable("2020-02-03") == "2020-02-03"
    for value in (True, 2020, "2020-02-03T10:00:00Z", {"a": 1}):
        with pytest.raises(UnsupportedValueError):
            format_variable(value)


def test_to_boolean():
    assert to_boolean([]) is False
    assert to_boolean([False]) is False
    assert to_boolean([True]) is True
    assert to_boolean(["x"]) is True
    assert to_boolean([False, False]) is True
