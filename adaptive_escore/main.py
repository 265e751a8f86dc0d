# Load .env file BEFORE other imports (so env vars are available)
from dotenv import load_dotenv
load_dotenv()

import threading
from dataclasses import asdict

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from adaptive_escore.controller import OptimizationController
from adaptive_escore.errors import problem
from adaptive_escore.logging_utils import log_event
from adaptive_escore.middleware import request_id_middleware
from adaptive_escore.report import generate_optimization_report
from adaptive_escore.schemas import make_segment_key, parse_segment_key
from adaptive_escore.store import SqliteEScoreStore


app = FastAPI(title="Adaptive E-score")

#Register middleware
app.middleware("http")(request_id_middleware)

# One controller per process; it owns the learned-weight map
_controller: OptimizationController | None = None
_controller_lock = threading.Lock()

# Serializes optimization cycles across threadpool workers
_cycle_lock = threading.Lock()


def get_controller() -> OptimizationController:
    global _controller
    with _controller_lock:
        if _controller is None:
            _controller = OptimizationController(SqliteEScoreStore())
        return _controller


def _key_or_404(axis: str, value: str):
    try:
        return make_segment_key(axis, value)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown segment key: {axis}:{value}")


def _learned_out(learned) -> dict:
    return {
        "weights": learned.weights.as_dict(),
        "initial_weights": learned.initial_weights.as_dict(),
        "data_count": learned.data_count,
        "accuracy": learned.accuracy,
        "version": learned.version,
        "last_updated": learned.last_updated.isoformat(),
    }


@app.get("/health")
def health(request: Request):
    request_id = request.state.request_id
    log_event("health_check", request_id=request_id)
    return {"status": "ok"}


@app.get("/weights")
def all_weights(request: Request):
    learned = get_controller().get_all_learned_weights()
    return {
        "weights": {key.label: _learned_out(lw) for key, lw in sorted(learned.items(), key=lambda kv: kv[0].label)},
        "request_id": request.state.request_id,
    }


@app.get("/weights/{axis}/{value}")
def weights_for_key(axis: str, value: str, request: Request):
    key = _key_or_404(axis, value)
    learned = get_controller().get_learned_weights(key)
    return {"key": key.label, **_learned_out(learned), "request_id": request.state.request_id}


@app.get("/stats")
def stats(request: Request):
    out = asdict(get_controller().get_stats())
    out["request_id"] = request.state.request_id
    return out


@app.get("/report", response_class=PlainTextResponse)
def report():
    controller = get_controller()
    return generate_optimization_report(controller.get_all_learned_weights(), controller.get_stats())


@app.get("/health-check/{axis}/{value}")
def health_check(axis: str, value: str, request: Request, window_days: int = 1):
    key = _key_or_404(axis, value)
    result = get_controller().perform_health_check(key, window_days=window_days)
    return {"key": key.label, **asdict(result), "request_id": request.state.request_id}


@app.post("/optimize/run")
def optimize_run(request: Request, keys: str | None = None):
    """
    Scheduler trigger for one full optimization cycle.

    Args:
        keys: Optional comma-separated 'axis:value' list. Defaults to every
            mode and brand type (plus seasons when enabled).
    """
    request_id = request.state.request_id

    selected = None
    if keys:
        try:
            selected = [parse_segment_key(k) for k in keys.split(",") if k.strip()]
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid keys: {exc}")

    log_event("optimize_run_requested", request_id=request_id, keys=keys)
    controller = get_controller()
    with _cycle_lock:
        cycle = controller.run_full_optimization_cycle(selected)

    results = []
    for key, safe in cycle.per_key_results.items():
        results.append({
            "key": key.label,
            "needs_rollback": safe.needs_rollback,
            "failed": safe.failed,
            "data_count": safe.result.data_count,
            "previous_accuracy": safe.result.previous_accuracy,
            "estimated_accuracy": safe.result.estimated_accuracy,
            "final_weights": safe.final_weights.as_dict(),
            "warnings": safe.warnings,
        })

    return {
        "overall_success": cycle.overall_success,
        "results": results,
        "request_id": request_id,
    }


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    rid = request.state.request_id
    payload = problem(
        status=exc.status_code,
        code="http_error",
        message=str(exc.detail),
        request_id=rid,
    )
    log_event("http_error", request_id=rid, status=exc.status_code, message=str(exc.detail))
    resp = JSONResponse(status_code=exc.status_code, content=payload.model_dump())
    resp.headers["X-Request-ID"] = rid
    return resp


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return ProblemDetails for request validation errors."""
    rid = request.state.request_id

    errors = exc.errors()
    if errors:
        first = errors[0]
        loc = ".".join(str(x) for x in first.get("loc", []))
        msg = first.get("msg", "Validation error")
        message = f"{loc}: {msg}"
    else:
        message = "Validation error"

    payload = problem(status=422, code="validation_error", message=message, request_id=rid)
    log_event("validation_error", request_id=rid, message=message)
    resp = JSONResponse(status_code=422, content=payload.model_dump())
    resp.headers["X-Request-ID"] = rid
    return resp


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = request.state.request_id
    payload = problem(status=500, code="internal_error", message="Internal server error", request_id=rid)
    # Don't leak details to the client, but do log them
    log_event("internal_error", request_id=rid, error_type=type(exc).__name__)
    resp = JSONResponse(status_code=500, content=payload.model_dump())
    resp.headers["X-Request-ID"] = rid
    return resp
