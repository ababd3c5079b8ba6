from fhir_export.core.errors import ConfigurationError

DATA_ABSENT_REASON_URL = "http://hl7.org/fhir/StructureDefinition/data-absent-reason"


def parse_token(token: str, what: str = "identifier") -> tuple[str, str]:
    """Split a FHIR search style "<system>|<value>" token."""
    system, sep, value = (token or "").partition("|")
    system, value = system.strip(), value.strip()
    if not sep or not system or not value or "|" in value:
        raise ConfigurationError(f"Invalid {what} token '{token}', expected '<system>|<value>'")
    return system, value


def parse_identifier_token(token: str) -> dict:
    system, value = parse_token(token)
    return {"system": system, "value": value}


def data_absent_extension(reason: str = "unknown") -> dict:
    return {"url": DATA_ABSENT_REASON_URL, "valueCode": reason}


def absent_reference(resource_type: str, reason: str) -> dict:
    return {"type": resource_type, "extension": [data_absent_extension(reason)]}
