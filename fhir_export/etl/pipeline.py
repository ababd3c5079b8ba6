from __future__ import annotations

import threading
import time
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

from fhir_export.core.errors import (
    CriteriaEvaluationError,
    MissingEntityIdError,
    ResourceResolutionError,
    RowDecodingError,
    StorageError,
)
from fhir_export.core.logging import log
from fhir_export.etl.aggregator import BatchAggregator, OutputGroup
from fhir_export.etl.enrich import EnrichmentSettings, build_deletion_entry, build_specimen_entry
from fhir_export.etl.exporter import BundleWriter
from fhir_export.etl.source import ChangeKind, ChangeRow, decode_row
from fhir_export.evaluation.pattern import Pattern
from fhir_export.evaluation.service import CriteriaEvaluationService
from fhir_export.scheduling.interval import TimeInterval, TriggerState

RUN_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "fhir-export/run")


class Disposition(str, Enum):
    INCLUDED = "included"
    EXCLUDED = "excluded"
    DELETED = "deleted"
    FAILED = "failed"
    DISCARDED = "discarded"


class Route(str, Enum):
    RESOLVE = "resolve"
    IGNORE_CONTENT = "ignore_content"


@dataclass
class RowOutcome:
    entity_id: str | None
    disposition: Disposition
    reason: str | None = None
    group: OutputGroup | None = None


@dataclass
class ExportContext:
    source: object
    reader: object
    evaluator: CriteriaEvaluationService
    aggregator: BatchAggregator
    writer: BundleWriter
    enrichment: EnrichmentSettings
    state: TriggerState | None = None
    cache: object | None = None
    gates: dict[str, Pattern] = field(default_factory=dict)
    entity_type: str = "Specimen"
    parent_type: str = "Patient"
    link_type: str = "Consent"
    worker_count: int = 4
    last_run: dict | None = None


def route_change(row: ChangeRow) -> Route:
    # deletions are forwarded without looking at content or criteria
    if row.change_kind is ChangeKind.DELETED:
        return Route.IGNORE_CONTENT
    return Route.RESOLVE


def resolve_bundle(ctx: ExportContext, row: ChangeRow) -> dict[str, dict | None]:
    resources: dict[str, dict | None] = {ctx.entity_type: ctx.reader.read(ctx.entity_type, row.entity_id)}
    resources[ctx.parent_type] = ctx.reader.read(ctx.parent_type, row.parent_id) if row.parent_id else None
    resources[ctx.link_type] = ctx.reader.read(ctx.link_type, row.link_id) if row.link_id else None
    return resources


def _judge(ctx: ExportContext, row: ChangeRow, resources: dict[str, dict | None]) -> tuple[Disposition, str | None]:
    for resource_type in (ctx.entity_type, ctx.parent_type):
        if resources.get(resource_type) is None:
            return Disposition.EXCLUDED, f"{resource_type} resource not found"

    missing = sorted(t for t in ctx.evaluator.involved_resource_types() if resources.get(t) is None)
    if missing:
        log.warning("criteria_resources_missing", entity_id=row.entity_id, resource_types=missing)
        return Disposition.EXCLUDED, f"missing resources required for evaluation: {', '.join(missing)}"

    for resource_type, gate in ctx.gates.items():
        resource = resources.get(resource_type)
        if resource is not None and not gate.evaluate(resource):
            return Disposition.EXCLUDED, f"{resource_type} rejected by gate pattern"

    try:
        verdict = ctx.evaluator.evaluate([r for r in resources.values() if r is not None])
    except CriteriaEvaluationError as exc:
        log.warning(
            "criteria_evaluation_failed",
            entity_id=row.entity_id,
            expression=getattr(exc, "expression", None),
            resource_type=getattr(exc, "resource_type", None),
            resource_id=getattr(exc, "resource_id", None),
            error=str(exc),
        )
        return Disposition.EXCLUDED, f"criteria evaluation failed: {exc}"
    if not verdict:
        return Disposition.EXCLUDED, "criteria not met"
    return Disposition.INCLUDED, None


def _decide(ctx: ExportContext, row: ChangeRow) -> tuple[Disposition, str | None, dict]:
    if route_change(row) is Route.IGNORE_CONTENT:
        return Disposition.DELETED, None, build_deletion_entry(row.entity_id, ctx.enrichment)
    if row.parent_id is None:
        return Disposition.EXCLUDED, "no parent id", build_deletion_entry(row.entity_id, ctx.enrichment)

    resources = resolve_bundle(ctx, row)
    disposition, reason = _judge(ctx, row, resources)
    if disposition is not Disposition.INCLUDED:
        return disposition, reason, build_deletion_entry(row.entity_id, ctx.enrichment)
    entry = build_specimen_entry(
        resources[ctx.entity_type],
        resources[ctx.parent_type],
        resources.get(ctx.link_type),
        row.change_kind,
        ctx.enrichment,
        ctx.evaluator,
    )
    return disposition, reason, entry


def process_row(ctx: ExportContext, raw: dict, run_id: str) -> RowOutcome:
    """Decide one change row and hand its entry to the aggregator. Row errors never escape."""
    try:
        row = decode_row(raw)
    except MissingEntityIdError as exc:
        log.warning("row_discarded", run_id=run_id, error=str(exc))
        return RowOutcome(None, Disposition.DISCARDED, str(exc), ctx.aggregator.skip(run_id))
    except RowDecodingError as exc:
        log.warning("row_decoding_failed", run_id=run_id, entity_id=raw.get("entity_id"), error=str(exc))
        return RowOutcome(raw.get("entity_id"), Disposition.FAILED, str(exc), ctx.aggregator.skip(run_id))

    try:
        disposition, reason, entry = _decide(ctx, row)
    except ResourceResolutionError as exc:
        log.error(
            "resource_resolution_failed",
            run_id=run_id,
            entity_id=row.entity_id,
            resource_type=exc.resource_type,
            resource_id=exc.resource_id,
            error=str(exc),
        )
        return RowOutcome(row.entity_id, Disposition.FAILED, str(exc), ctx.aggregator.skip(run_id))
    except Exception as exc:
        log.exception("row_processing_failed", run_id=run_id, entity_id=row.entity_id, error=str(exc))
        return RowOutcome(row.entity_id, Disposition.FAILED, str(exc), ctx.aggregator.skip(run_id))

    log.info("row_evaluated", run_id=run_id, entity_id=row.entity_id, disposition=disposition.value, reason=reason)
    return RowOutcome(row.entity_id, disposition, reason, ctx.aggregator.add(run_id, entry))


def run_export(ctx: ExportContext, interval: TimeInterval) -> dict:
    # a retried window keeps its start while its end moves on
    run_id = str(uuid.uuid5(RUN_NAMESPACE, interval.start.isoformat()))
    started = time.monotonic()
    object_names: list[str] = []
    failures: list[StorageError] = []
    lock = threading.Lock()

    def store(group: OutputGroup) -> None:
        try:
            name = ctx.writer.write(group)
        except StorageError as exc:
            log.error("bundle_upload_failed", run_id=group.correlation_id, index=group.index, error=str(exc))
            with lock:
                failures.append(exc)
            return
        with lock:
            object_names.append(name)

    def handle(raw: dict) -> RowOutcome:
        outcome = process_row(ctx, raw, run_id)
        if outcome.group is not None:
            store(outcome.group)
        return outcome

    for group in ctx.aggregator.expire():
        store(group)

    rows = ctx.source.fetch(interval)
    ctx.aggregator.open(run_id, len(rows))
    with ThreadPoolExecutor(max_workers=ctx.worker_count, thread_name_prefix="export-worker") as pool:
        outcomes = list(pool.map(handle, rows))

    for group in ctx.aggregator.expire():
        store(group)

    counts = Counter(outcome.disposition.value for outcome in outcomes)
    summary = {
        "run_id": run_id,
        "interval": interval.as_dict(),
        "rows": len(rows),
        "dispositions": {d.value: counts.get(d.value, 0) for d in Disposition},
        "groups_written": len(object_names),
        "objects": sorted(object_names),
        "status": "FAILED" if failures else "SUCCESS",
        "duration_secs": round(time.monotonic() - started, 3),
    }
    ctx.last_run = summary
    log.info("export_run_summary", **{k: v for k, v in summary.items() if k != "objects"})

    if failures:
        raise failures[0]
    return summary
