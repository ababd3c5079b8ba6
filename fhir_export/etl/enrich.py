from __future__ import annotations

import copy
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

from fhir_export.core import config
from fhir_export.core.logging import log
from fhir_export.etl.aggregator import OutputGroup
from fhir_export.etl.source import ChangeKind
from fhir_export.evaluation.patterns import identifier_type_pattern
from fhir_export.fhir.identifiers import absent_reference, data_absent_extension, parse_identifier_token, parse_token

BUNDLE_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "fhir-export/bundle")


@dataclass(frozen=True)
class EnrichmentSettings:
    managing_org: dict
    patient_reference_identifier: str | None = None
    patient_identifier_type: tuple[str, str] | None = None
    entity_type: str = "Specimen"
    full_url_base: str = config.SPECIMEN_FULL_URL_BASE
    consent_identifier_system: str = config.CONSENT_IDENTIFIER_SYSTEM
    consent_extension_url: str = config.CONSENT_EXTENSION_URL
    managing_org_extension_url: str = config.MANAGING_ORG_EXTENSION_URL

    @classmethod
    def from_config(cls) -> EnrichmentSettings:
        identifier_type = None
        if config.PATIENT_IDENTIFIER_TYPE:
            identifier_type = parse_token(config.PATIENT_IDENTIFIER_TYPE, "identifier type")
        return cls(
            managing_org=parse_identifier_token(config.MANAGING_ORG),
            patient_reference_identifier=config.PATIENT_REFERENCE_IDENTIFIER,
            patient_identifier_type=identifier_type,
            entity_type=config.ENTITY_RESOURCE_TYPE,
        )


def _full_url(settings: EnrichmentSettings, entity_id: str) -> str:
    return f"{settings.full_url_base.rstrip('/')}/{entity_id}"


def _patient_identifiers(patient: dict, settings: EnrichmentSettings, evaluator) -> list:
    if settings.patient_reference_identifier:
        return list(evaluator.retrieve(patient, settings.patient_reference_identifier))
    system, code = settings.patient_identifier_type
    matches = identifier_type_pattern(system, code)
    return [identifier for identifier in patient.get("identifier") or [] if matches.evaluate(identifier)]


def _subject_reference(patient: dict, settings: EnrichmentSettings, evaluator) -> dict | None:
    """Patient reference by business identifier, None when subject linking is not configured."""
    if not settings.patient_reference_identifier and not settings.patient_identifier_type:
        return None
    patient_id = patient.get("id")
    try:
        identifiers = _patient_identifiers(patient, settings, evaluator)
        if any(not isinstance(identifier, Mapping) for identifier in identifiers):
            raise TypeError("patient reference identifier must select Identifier elements")
    except Exception as exc:
        log.warning("patient_identifier_failed", patient_id=patient_id, error=str(exc))
        return absent_reference("Patient", "error")

    if not identifiers:
        log.warning("patient_identifier_missing", patient_id=patient_id)
        return absent_reference("Patient", "not-applicable")
    if len(identifiers) > 1:
        log.warning("patient_identifier_ambiguous", patient_id=patient_id, matches=len(identifiers))
    return {"type": "Patient", "identifier": dict(identifiers[0])}


def build_specimen_entry(
    specimen: dict,
    patient: dict,
    consent: dict | None,
    change_kind: ChangeKind,
    settings: EnrichmentSettings,
    evaluator=None,
) -> dict:
    specimen = copy.deepcopy(specimen)
    entity_id = specimen["id"]
    log.info("specimen_enriching", id=entity_id, change_kind=change_kind.value)

    subject = _subject_reference(patient, settings, evaluator)
    if subject is not None:
        specimen["subject"] = subject

    consent_identifier = {"system": settings.consent_identifier_system}
    if consent is not None and consent.get("id"):
        consent_identifier["value"] = consent["id"]
    else:
        consent_identifier["extension"] = [data_absent_extension("unknown")]

    extensions = specimen.setdefault("extension", [])
    extensions.append({"url": settings.consent_extension_url, "valueIdentifier": consent_identifier})
    extensions.append({"url": settings.managing_org_extension_url, "valueIdentifier": dict(settings.managing_org)})

    if change_kind is ChangeKind.CREATED:
        request = {"method": "POST", "url": settings.entity_type}
    else:
        request = {"method": "PUT", "url": f"{settings.entity_type}/{entity_id}"}
    return {"fullUrl": _full_url(settings, entity_id), "resource": specimen, "request": request}


def build_deletion_entry(entity_id: str, settings: EnrichmentSettings) -> dict:
    return {
        "fullUrl": _full_url(settings, entity_id),
        "request": {"method": "DELETE", "url": f"{settings.entity_type}/{entity_id}"},
    }


def bundle_id(group: OutputGroup) -> str:
    """Stable per (run, group index) so re-uploads of a retried window overwrite."""
    return str(uuid.uuid5(BUNDLE_NAMESPACE, f"{group.correlation_id}/{group.index}"))


def build_bundle(group: OutputGroup, now: datetime | None = None) -> dict:
    timestamp = (now or datetime.now(timezone.utc)).isoformat().replace("+00:00", "Z")
    bundle = {
        "resourceType": "Bundle",
        "id": bundle_id(group),
        "type": "batch",
        "timestamp": timestamp,
        "total": len(group.members),
        "entry": list(group.members),
    }
    log.info("bundle_created", id=bundle["id"], size=bundle["total"], run_id=group.correlation_id)
    return bundle
