from fhir_export.evaluation.pattern import ABSENT, Pattern, Present, Reducers, TypeMismatch, lift, pattern, resolve
from fhir_export.evaluation.patterns import identifier_type_pattern, physical_specimen_pattern


def _positive(p):
    p.check(lambda v: v > 0)


def test_empty_pattern_accepts_everything():
    assert Pattern().evaluate(None) is True
    assert Pattern(Reducers.OR).evaluate({"anything": 1}) is True


def test_all_of_is_vacuously_true():
    p = pattern(lambda p: p.all_of(lambda xs: xs, _positive))
    assert p.evaluate([]) is True
    assert p.evaluate([1, 2]) is True
    assert p.evaluate([1, -1]) is False


def test_none_of_is_vacuously_true():
    p = pattern(lambda p: p.none_of(lambda xs: xs, _positive))
    assert p.evaluate([]) is True
    assert p.evaluate([-1, -2]) is True
    assert p.evaluate([-1, 3]) is False


def test_element_pattern_is_built_once_and_judges_each_element():
    built = []

    def element(p):
        built.append(p)
        p.check(lambda v: v > 0)

    p = pattern(lambda p: p.all_of(lambda xs: xs, element))
    assert p.evaluate([1, 2, 3]) is True
    assert p.evaluate([3, -1, 2]) is False
    assert p.evaluate([5]) is True
    assert len(built) == 1


def test_any_of_is_false_on_empty_collection():
    p = pattern(lambda p: p.any_of(lambda xs: xs, _positive))
    assert p.evaluate([]) is False
    assert p.evaluate([-1, 3]) is True


def test_absent_collection_counts_as_empty():
    p = pattern(lambda p: p.all_of(lambda r: resolve(r, "extension"), _positive))
    assert p.evaluate({}) is True
    q = pattern(lambda p: p.any_of(lambda r: resolve(r, "extension"), _positive))
    assert q.evaluate({}) is False


def test_non_collection_is_a_type_mismatch():
    p = pattern(lambda p: p.all_of(lambda r: resolve(r, "code"), _positive))
    assert p.evaluate({"code": "abc"}) is False


def test_check_fails_closed_on_missing_path():
    x = {"y": None}
    p = pattern(lambda p: p.check(lambda t: resolve(t, "y", "z").map(lambda z: z > 0)))
    assert p.evaluate(x) is False
    assert p.evaluate({"y": {"z": 5}}) is True


def test_check_if_exists_passes_on_missing_path():
    x = {"y": None}
    p = pattern(lambda p: p.check_if_exists(lambda t: resolve(t, "y", "z").map(lambda z: z > 0)))
    assert p.evaluate(x) is True
    assert p.evaluate({"y": {"z": -5}}) is False


def test_path_and_if_path_exists():
    sub = lambda p: p.check(lambda q: resolve(q, "value").map(lambda v: v > 1))
    strict = pattern(lambda p: p.path(lambda s: resolve(s, "quantity"), sub))
    lenient = pattern(lambda p: p.if_path_exists(lambda s: resolve(s, "quantity"), sub))
    assert strict.evaluate({}) is False
    assert lenient.evaluate({}) is True
    assert strict.evaluate({"quantity": {"value": 2}}) is True
    assert lenient.evaluate({"quantity": {"value": 0}}) is False


def test_path_of_type_mismatch_follows_missing_policy():
    sub = lambda p: p.check(lambda q: True)
    strict = pattern(lambda p: p.path(lambda s: resolve(s, "quantity"), sub, of_type=dict))
    lenient = pattern(lambda p: p.if_path_exists(lambda s: resolve(s, "quantity"), sub, of_type=dict))
    assert strict.evaluate({"quantity": "12 ml"}) is False
    assert lenient.evaluate({"quantity": "12 ml"}) is True


def test_or_and_not_composition():
    p = pattern(
        lambda p: p.or_(lambda o: o.check(lambda v: v < 0).check(lambda v: v > 10)).not_(
            lambda n: n.check(lambda v: v == 42)
        )
    )
    assert p.evaluate(-3) is True
    assert p.evaluate(11) is True
    assert p.evaluate(5) is False
    assert p.evaluate(42) is False


def test_or_reducer_at_top_level():
    p = Pattern(Reducers.OR).check(lambda v: v == 1).check(lambda v: v == 2)
    assert p.evaluate(2) is True
    assert p.evaluate(3) is False


def test_conditions_keep_insertion_order():
    p = Pattern().check(lambda v: True).check_if_exists(lambda v: None)
    assert [c.missing.name for c in p.conditions] == ["FAIL", "PASS"]


def test_lift_and_resolve():
    assert lift(None) is ABSENT
    assert lift(3) == Present(3)
    assert isinstance(lift("3", int), TypeMismatch)
    assert resolve({"a": [{"b": 1}]}, "a", 0, "b") == Present(1)
    assert resolve({"a": []}, "a", 0) is ABSENT
    assert isinstance(resolve({"a": "text"}, "a", 0), TypeMismatch)


def test_physical_specimen_pattern_rejects_aliquot_groups():
    aliquot_group = {
        "resourceType": "Specimen",
        "extension": [
            {
                "url": "https://fhir.centraxx.de/extension/sampleCategory",
                "valueCoding": {"system": "https://fhir.centraxx.de/system/sampleCategory", "code": "ALIQUOTGROUP"},
            }
        ],
    }
    master = {
        "resourceType": "Specimen",
        "extension": [
            {
                "url": "https://fhir.centraxx.de/extension/sampleCategory",
                "valueCoding": {"system": "https://fhir.centraxx.de/system/sampleCategory", "code": "MASTER"},
            }
        ],
    }
    gate = physical_specimen_pattern()
    assert gate.evaluate(aliquot_group) is False
    assert gate.evaluate(master) is True
    assert gate.evaluate({"resourceType": "Specimen"}) is True


def test_identifier_type_pattern():
    matches = identifier_type_pattern("http://terminology.hl7.org/CodeSystem/v2-0203", "MR")
    mr = {"type": {"coding": [{"system": "http://terminology.hl7.org/CodeSystem/v2-0203", "code": "MR"}]}, "value": "1"}
    other = {"type": {"coding": [{"system": "http://terminology.hl7.org/CodeSystem/v2-0203", "code": "PI"}]}}
    assert matches.evaluate(mr) is True
    assert matches.evaluate(other) is False
    assert matches.evaluate({"value": "untyped"}) is False
