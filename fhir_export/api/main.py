from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from fhir_export.core.config import FHIR_BASE_URL, RECOVERY_FILE, SCHEDULE_CRON
from fhir_export.core.errors import CriteriaEvaluationError, RecoveryError
from fhir_export.etl.pipeline import ExportContext
from fhir_export.scheduling.recovery import RecoveryStore

app = FastAPI(title="FHIR Specimen Export", version="0.1.0")


class CriteriaEvaluationRequest(BaseModel):
    resources: list[dict] = Field(default_factory=list)


def get_recovery_store() -> RecoveryStore:
    return RecoveryStore(RECOVERY_FILE)


def get_context(request: Request) -> ExportContext:
    ctx = getattr(request.app.state, "context", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Export pipeline is not running")
    return ctx


@app.get("/health")
def health():
    return {"status": "ok", "fhir_base_url": FHIR_BASE_URL, "schedule": SCHEDULE_CRON}


@app.get("/recovery")
def recovery(store: RecoveryStore = Depends(get_recovery_store)):
    try:
        record = store.read()
    except RecoveryError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"path": str(store.path), "record": record.model_dump(mode="json", by_alias=True)}


@app.get("/window")
def window(ctx: ExportContext = Depends(get_context)):
    if ctx.state is None:
        raise HTTPException(status_code=503, detail="Trigger state is not initialised")
    return {"state": ctx.state.snapshot(), "interval": ctx.state.get_interval().as_dict()}


@app.get("/runs/last")
def last_run(ctx: ExportContext = Depends(get_context)):
    if ctx.last_run is None:
        raise HTTPException(status_code=404, detail="No run has completed yet")
    return ctx.last_run


@app.post("/criteria/evaluate")
def evaluate_criteria(payload: CriteriaEvaluationRequest, ctx: ExportContext = Depends(get_context)):
    evaluator = ctx.evaluator
    try:
        result = evaluator.evaluate(payload.resources)
    except CriteriaEvaluationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {
        "result": result,
        "description": evaluator.query.description,
        "involved_resource_types": sorted(evaluator.involved_resource_types()),
    }


@app.exception_handler(ValidationError)
def pydantic_validation_exception_handler(request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": exc.errors()})
