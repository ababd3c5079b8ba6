import importlib
from functools import lru_cache

from fhir.resources.R4B.resource import Resource


@lru_cache(maxsize=None)
def model_class(resource_type: str) -> type[Resource] | None:
    """The fhir.resources R4B model for a resource type name, None if there is none."""
    try:
        module = importlib.import_module(f"fhir.resources.R4B.{resource_type.lower()}")
    except ImportError:
        return None
    klass = getattr(module, resource_type, None)
    if not isinstance(klass, type) or not issubclass(klass, Resource):
        return None
    return klass


def is_resource_type(resource_type: str) -> bool:
    return model_class(resource_type) is not None


def validate_resource(raw: dict, resource_type: str) -> dict:
    klass = model_class(resource_type)
    if klass is None:
        raise ValueError(f"Unknown FHIR resource type '{resource_type}'")
    if raw.get("resourceType") != resource_type:
        raise ValueError(f"Expected resourceType '{resource_type}', got '{raw.get('resourceType')}'")
    klass.model_validate(raw)
    # downstream FHIRPath evaluation works on the raw JSON
    return raw
