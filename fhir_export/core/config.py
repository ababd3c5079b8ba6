import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


# FHIR server the linked resources are read from
FHIR_BASE_URL = os.getenv("FHIR_BASE_URL", "http://localhost:8080/fhir")
REQUEST_TIMEOUT_SECS = float(os.getenv("REQUEST_TIMEOUT_SECS", "30"))
FHIR_VALIDATE_RESOURCES = _env_bool("FHIR_VALIDATE_RESOURCES", True)

# Basic auth wins over OAuth2 when both are configured.
FHIR_BASIC_USERNAME = os.getenv("FHIR_BASIC_USERNAME")
FHIR_BASIC_PASSWORD = os.getenv("FHIR_BASIC_PASSWORD")
FHIR_OAUTH_TOKEN_URL = os.getenv("FHIR_OAUTH_TOKEN_URL")
FHIR_OAUTH_GRANT_TYPE = os.getenv("FHIR_OAUTH_GRANT_TYPE", "client_credentials")
FHIR_OAUTH_CLIENT_ID = os.getenv("FHIR_OAUTH_CLIENT_ID")
FHIR_OAUTH_CLIENT_SECRET = os.getenv("FHIR_OAUTH_CLIENT_SECRET")
FHIR_OAUTH_USERNAME = os.getenv("FHIR_OAUTH_USERNAME")
FHIR_OAUTH_PASSWORD = os.getenv("FHIR_OAUTH_PASSWORD")
FHIR_OAUTH_REFRESH_TOKEN = os.getenv("FHIR_OAUTH_REFRESH_TOKEN")

# Clinical source database polled for changed rows
SOURCE_DB_URL = os.getenv("SOURCE_DB_URL", "postgresql+psycopg2://postgres:postgres@db:5432/centraxx")
SOURCE_QUERY_FILE = os.getenv(
    "SOURCE_QUERY_FILE", str(Path(__file__).resolve().parent.parent / "etl" / "sql" / "changes.sql")
)

# Resource type resolved for each column of a change row
ENTITY_RESOURCE_TYPE = os.getenv("ENTITY_RESOURCE_TYPE", "Specimen")
PARENT_RESOURCE_TYPE = os.getenv("PARENT_RESOURCE_TYPE", "Patient")
LINK_RESOURCE_TYPE = os.getenv("LINK_RESOURCE_TYPE", "Consent")
# Types whose changes must be visible within the same run are never cached.
UNCACHED_RESOURCE_TYPES = _env_list("UNCACHED_RESOURCE_TYPES", "Consent")

CRITERIA_FILE = os.getenv("CRITERIA_FILE", "config/criteria.json")

SCHEDULE_CRON = os.getenv("SCHEDULE_CRON", "* * * * *")
# ISO local date-time, e.g. "2024-01-01T00:00:00". Only used when no recovery record exists.
SCHEDULE_CATCHUP_FROM = os.getenv("SCHEDULE_CATCHUP_FROM")

RECOVERY_DIR = os.getenv("RECOVERY_DIR", "data")
RECOVERY_FILE = Path(RECOVERY_DIR) / "recovery.json"

BUNDLE_SIZE_LIMIT = int(os.getenv("BUNDLE_SIZE_LIMIT", "100"))
GROUP_TIMEOUT_SECS = float(os.getenv("GROUP_TIMEOUT_SECS", "10"))
WORKER_COUNT = int(os.getenv("WORKER_COUNT", "4"))

OBJECT_STORE = os.getenv("OBJECT_STORE", "s3")  # s3 | local
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL")
S3_BUCKET = os.getenv("S3_BUCKET", "specimen-bundles")
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY")
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY")
S3_REGION = os.getenv("S3_REGION", "us-east-1")
EXPORT_DIR = os.getenv("EXPORT_DIR", "exports")

# "<system>|<value>" of the organisation managing the exported specimens
MANAGING_ORG = os.getenv("MANAGING_ORG", "https://medic.uksh.de/identifier/organization|biobank")
# FHIRPath evaluated on the Patient to pick the identifier used as Specimen subject
PATIENT_REFERENCE_IDENTIFIER = os.getenv("PATIENT_REFERENCE_IDENTIFIER")
# "<system>|<code>" of the identifier type used as Specimen subject when no FHIRPath is configured
PATIENT_IDENTIFIER_TYPE = os.getenv("PATIENT_IDENTIFIER_TYPE")
EXCLUDE_ALIQUOT_GROUPS = _env_bool("EXCLUDE_ALIQUOT_GROUPS", True)

SPECIMEN_FULL_URL_BASE = os.getenv(
    "SPECIMEN_FULL_URL_BASE", "https://medic.uksh.de/identifier/biobank/centraxx/specimen/oid"
)
CONSENT_IDENTIFIER_SYSTEM = os.getenv(
    "CONSENT_IDENTIFIER_SYSTEM", "https://medic.uksh.de/identifier/biobank/centraxx/consent"
)
CONSENT_EXTENSION_URL = os.getenv(
    "CONSENT_EXTENSION_URL", "https://medic.uksh.de/fhir/StructureDefinition/ext-specimen-consent-identifier"
)
MANAGING_ORG_EXTENSION_URL = os.getenv(
    "MANAGING_ORG_EXTENSION_URL",
    "https://www.medizininformatik-initiative.de/fhir/ext/modul-biobank/StructureDefinition/VerwaltendeOrganisation",
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _env_bool("LOG_JSON", False)

API_ENABLED = _env_bool("API_ENABLED", True)
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
