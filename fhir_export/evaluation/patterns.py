from fhir_export.evaluation.pattern import Pattern, pattern, resolve

SAMPLE_CATEGORY_EXTENSION = "https://fhir.centraxx.de/extension/sampleCategory"
SAMPLE_CATEGORY_SYSTEM = "https://fhir.centraxx.de/system/sampleCategory"
ALIQUOT_GROUP_CODE = "ALIQUOTGROUP"


def _equals(expected):
    return lambda value: value == expected


def physical_specimen_pattern() -> Pattern[dict]:
    # Aliquot groups do not represent real physical samples.
    return pattern(
        lambda specimen: specimen.none_of(
            lambda s: resolve(s, "extension"),
            lambda ext: ext.check(lambda e: resolve(e, "url").map(_equals(SAMPLE_CATEGORY_EXTENSION))).path(
                lambda e: resolve(e, "valueCoding"),
                lambda coding: coding.check(lambda c: resolve(c, "system").map(_equals(SAMPLE_CATEGORY_SYSTEM))).check(
                    lambda c: resolve(c, "code").map(_equals(ALIQUOT_GROUP_CODE))
                ),
                of_type=dict,
            ),
        )
    )


def identifier_type_pattern(system: str, code: str) -> Pattern[dict]:
    return pattern(
        lambda identifier: identifier.any_of(
            lambda i: resolve(i, "type", "coding"),
            lambda coding: coding.check(lambda c: resolve(c, "system").map(_equals(system))).check(
                lambda c: resolve(c, "code").map(_equals(code))
            ),
        )
    )
