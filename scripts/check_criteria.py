"""Validate a criteria file and optionally evaluate it against FHIR resources on disk.

    python scripts/check_criteria.py config/criteria.json [resource.json ...]
"""
import json
import sys

from fhir_export.core.errors import CriteriaConfigError, CriteriaEvaluationError
from fhir_export.evaluation.query import load_query
from fhir_export.evaluation.service import CriteriaEvaluationService


def main(argv: list[str]) -> int:
    if not argv:
        print(__doc__)
        return 2
    try:
        query = load_query(argv[0])
    except CriteriaConfigError as exc:
        print(f"invalid: {exc}")
        return 1
    print(f"ok: {query.description or argv[0]}")
    print(f"resource types: {', '.join(sorted(query.involved_resource_types()))}")

    if len(argv) > 1:
        resources = []
        for path in argv[1:]:
            with open(path, encoding="utf-8") as handle:
                resources.append(json.load(handle))
        try:
            result = CriteriaEvaluationService(query).evaluate(resources)
        except CriteriaEvaluationError as exc:
            print(f"evaluation failed: {exc}")
            return 1
        print(f"result: {result}")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
