from __future__ import annotations

import signal
import sys
import threading

import uvicorn

from fhir_export.core import config
from fhir_export.core.errors import ConfigurationError, ExportError, RecoveryError
from fhir_export.core.logging import configure_logging, log
from fhir_export.db.session import get_engine
from fhir_export.etl.aggregator import BatchAggregator
from fhir_export.etl.enrich import EnrichmentSettings
from fhir_export.etl.exporter import BundleWriter, build_object_store
from fhir_export.etl.pipeline import ExportContext, run_export
from fhir_export.etl.source import IntervalQuerySource, load_query_template
from fhir_export.evaluation.patterns import physical_specimen_pattern
from fhir_export.evaluation.query import load_query
from fhir_export.evaluation.service import CriteriaEvaluationService
from fhir_export.fhir.auth import build_auth
from fhir_export.fhir.cache import CachingResourceReader, ResourceCache
from fhir_export.fhir.client import FHIRClient
from fhir_export.scheduling.recovery import RecoveryStore
from fhir_export.scheduling.trigger import CronTrigger, Scheduler, seed_trigger_state


def build_context() -> ExportContext:
    query = load_query(config.CRITERIA_FILE)
    log.info(
        "criteria_loaded",
        path=config.CRITERIA_FILE,
        description=query.description,
        resource_types=sorted(query.involved_resource_types()),
    )
    cache = ResourceCache()
    client = FHIRClient(config.FHIR_BASE_URL, auth=build_auth())
    gates = {config.ENTITY_RESOURCE_TYPE: physical_specimen_pattern()} if config.EXCLUDE_ALIQUOT_GROUPS else {}
    return ExportContext(
        source=IntervalQuerySource(get_engine(), load_query_template(config.SOURCE_QUERY_FILE)),
        reader=CachingResourceReader(client, cache, config.UNCACHED_RESOURCE_TYPES),
        evaluator=CriteriaEvaluationService(query),
        aggregator=BatchAggregator(config.BUNDLE_SIZE_LIMIT, config.GROUP_TIMEOUT_SECS),
        writer=BundleWriter(build_object_store(), config.S3_BUCKET),
        enrichment=EnrichmentSettings.from_config(),
        cache=cache,
        gates=gates,
        entity_type=config.ENTITY_RESOURCE_TYPE,
        parent_type=config.PARENT_RESOURCE_TYPE,
        link_type=config.LINK_RESOURCE_TYPE,
        worker_count=config.WORKER_COUNT,
    )


def _serve_api(ctx: ExportContext) -> None:
    from fhir_export.api.main import app

    app.state.context = ctx
    server = uvicorn.Server(uvicorn.Config(app, host=config.API_HOST, port=config.API_PORT, log_level="warning"))
    threading.Thread(target=server.run, name="api", daemon=True).start()
    log.info("api_started", host=config.API_HOST, port=config.API_PORT)


def main() -> int:
    configure_logging(config.LOG_LEVEL, config.LOG_JSON)
    try:
        ctx = build_context()
        store = RecoveryStore(config.RECOVERY_FILE)
        ctx.state = seed_trigger_state(store, config.SCHEDULE_CATCHUP_FROM)
        trigger = CronTrigger(config.SCHEDULE_CRON, ctx.state, ctx.cache, store)
    except (ConfigurationError, RecoveryError) as exc:
        log.error("startup_failed", error=str(exc))
        return 1

    scheduler = Scheduler(trigger, lambda interval: run_export(ctx, interval))
    signal.signal(signal.SIGTERM, lambda *_: scheduler.stop())
    if config.API_ENABLED:
        _serve_api(ctx)

    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        scheduler.stop()
    except ExportError as exc:
        log.error("scheduler_aborted", error=str(exc))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
