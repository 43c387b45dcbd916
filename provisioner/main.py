"""
Provisioner - FastAPI Application

HTTP entry point for the provisioning engine.
Provides endpoints for planning, applying and inspecting state.
"""

from __future__ import annotations
import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse

from provisioner import __version__
from provisioner.engine.context import RunContext, generate_run_id
from provisioner.engine.report import format_plan
from provisioner.engine.runner import ProvisioningEngine
from provisioner.errors import (
    ConfigurationError,
    DeclarationError,
    StateCorruptionError,
)
from provisioner.models import (
    ErrorResponse,
    PlanRequest,
    PlanResponse,
    RunCreateRequest,
    RunCreateResponse,
    RunStatus,
    RunStatusResponse,
    StateRecord,
)
from provisioner.settings import get_settings

# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION SETUP
# =============================================================================

@lru_cache
def get_engine() -> ProvisioningEngine:
    """Get the application-wide engine (opens the State Store on first use)."""
    return ProvisioningEngine(settings=get_settings())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    logger.info("Provisioner starting...")
    logger.info(f"State path: {settings.state_path}, provider: {settings.provider_type}")
    yield
    logger.info("Provisioner shutting down...")


app = FastAPI(
    title="Provisioner",
    description="""
    ## Graph-based infrastructure provisioning engine

    This API provides endpoints for:
    - **Planning** resource declarations against recorded state
    - **Applying** plans with bounded parallelism
    - **Inspecting** the State Store

    ### Execution Flow
    1. Review changes via POST /plans
    2. Submit declarations via POST /runs
    3. Monitor progress via GET /runs/{run_id}
    4. Inspect state via GET /state
    """,
    version=__version__,
    lifespan=lifespan,
)

# Global state for tracking runs started by this process
active_runs: Dict[str, Dict[str, Any]] = {}
_runs_lock = threading.Lock()

ACTIVE_STATUSES = (RunStatus.CREATED, RunStatus.EXECUTING)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _executing() -> bool:
    return any(r["status"] in ACTIVE_STATUSES for r in active_runs.values())


async def execute_run_async(
    run_id: str,
    ctx: RunContext,
    engine: ProvisioningEngine,
) -> None:
    """
    Apply a planned run.

    This runs in a background task to not block the API response.
    """
    def progress_callback(rid: str, percent: int, address: str):
        if rid in active_runs:
            active_runs[rid]["progress_percent"] = percent
            active_runs[rid]["current_operation"] = address

    try:
        active_runs[run_id]["status"] = RunStatus.EXECUTING
        active_runs[run_id]["message"] = "Applying plan..."

        # Run in thread pool to not block event loop
        loop = asyncio.get_running_loop()
        summary = await loop.run_in_executor(
            None,
            lambda: engine.apply(ctx, progress_callback),
        )

        active_runs[run_id]["status"] = summary.status
        active_runs[run_id]["summary"] = summary
        active_runs[run_id]["message"] = "Execution finished"
        active_runs[run_id]["progress_percent"] = 100

        logger.info(f"Run {run_id} finished: {summary.status.value}")

    except Exception as e:
        logger.exception(f"Run {run_id} failed: {str(e)}")
        active_runs[run_id]["status"] = RunStatus.FAILED
        active_runs[run_id]["message"] = f"Execution error: {str(e)}"


# =============================================================================
# API ENDPOINTS
# =============================================================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Provisioner",
        "version": __version__,
        "status": "running",
        "endpoints": {
            "plan": "POST /plans",
            "create_run": "POST /runs",
            "get_status": "GET /runs/{run_id}",
            "get_plan": "GET /runs/{run_id}/plan",
            "cancel_run": "POST /runs/{run_id}/cancel",
            "list_runs": "GET /runs",
            "list_state": "GET /state",
        },
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "active_runs": len([r for r in active_runs.values() if r["status"] in ACTIVE_STATUSES]),
    }


@app.post(
    "/plans",
    response_model=PlanResponse,
    tags=["Plans"],
    summary="Plan declarations without applying them",
)
async def create_plan(
    request: PlanRequest,
    engine: ProvisioningEngine = Depends(get_engine),
) -> PlanResponse:
    """
    Compute the Create/Update/Delete/NoOp plan for the declarations.

    **Returns:**
    - `plan`: machine-readable plan
    - `text`: human-readable plan
    """
    ctx = engine.plan(request.config_yaml, destroy=request.destroy)
    return PlanResponse(plan=ctx.plan, text=format_plan(ctx.plan))


@app.post(
    "/runs",
    response_model=RunCreateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Runs"],
    summary="Plan and apply declarations",
)
async def create_run(
    request: RunCreateRequest,
    background_tasks: BackgroundTasks,
    engine: ProvisioningEngine = Depends(get_engine),
) -> RunCreateResponse:
    """
    Plan the declarations and apply the plan in the background.

    Configuration errors are reported immediately (400) and nothing is
    applied. Use GET /runs/{run_id} to monitor progress.
    """
    # Check, plan and register together so a queued run blocks the next one
    with _runs_lock:
        if _executing():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Another run is executing against the same state",
            )

        run_id = generate_run_id()
        ctx = engine.plan(request.config_yaml, destroy=request.destroy, run_id=run_id)

        # For dry run, just return the plan
        if request.dry_run:
            return RunCreateResponse(
                run_id=run_id,
                status=RunStatus.CREATED,
                message="Dry run - plan computed, nothing applied",
                plan=ctx.plan,
            )

        active_runs[run_id] = {
            "status": RunStatus.CREATED,
            "message": "Run created, starting execution...",
            "progress_percent": 0,
            "current_operation": None,
            "context": ctx,
            "created_at": datetime.utcnow().isoformat(),
        }

    background_tasks.add_task(execute_run_async, run_id, ctx, engine)

    logger.info(f"Run created: {run_id} for project {ctx.project_name}")

    return RunCreateResponse(
        run_id=run_id,
        status=RunStatus.CREATED,
        message=f"Run created for project: {ctx.project_name}",
        plan=ctx.plan,
    )


@app.get(
    "/runs/{run_id}",
    response_model=RunStatusResponse,
    tags=["Runs"],
    summary="Get run status and progress",
)
async def get_run_status(
    run_id: str,
    engine: ProvisioningEngine = Depends(get_engine),
) -> RunStatusResponse:
    """Get the current status of a run."""
    if run_id in active_runs:
        run_state = active_runs[run_id]
        return RunStatusResponse(
            run_id=run_id,
            status=run_state["status"],
            message=run_state.get("message"),
            progress_percent=run_state.get("progress_percent", 0),
            summary=run_state.get("summary"),
        )

    summary = engine.storage.load_summary(run_id)
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run not found: {run_id}",
        )

    return RunStatusResponse(
        run_id=run_id,
        status=summary.status,
        progress_percent=100,
        summary=summary,
    )


@app.post(
    "/runs/{run_id}/cancel",
    response_model=RunStatusResponse,
    tags=["Runs"],
    summary="Stop dispatching new operations for a run",
)
async def cancel_run(run_id: str) -> RunStatusResponse:
    """
    Cancel a run. Operations already in flight finish and keep their
    state; nothing new is dispatched.
    """
    run_state = active_runs.get(run_id)
    if run_state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run not found: {run_id}",
        )
    if run_state["status"] not in ACTIVE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Run {run_id} is not executing",
        )

    run_state["context"].cancel()
    run_state["message"] = "Cancellation requested"
    logger.info(f"Cancellation requested for run: {run_id}")

    return RunStatusResponse(
        run_id=run_id,
        status=run_state["status"],
        message=run_state["message"],
        progress_percent=run_state.get("progress_percent", 0),
    )


@app.get(
    "/runs",
    tags=["Runs"],
    summary="List all runs",
)
async def list_runs(engine: ProvisioningEngine = Depends(get_engine)):
    """List runs with their current status."""
    runs = []
    for run_id in engine.storage.get_all_runs():
        if run_id in active_runs:
            runs.append({
                "run_id": run_id,
                "status": active_runs[run_id]["status"],
                "progress_percent": active_runs[run_id].get("progress_percent", 0),
            })
            continue

        summary = engine.storage.load_summary(run_id)
        runs.append({
            "run_id": run_id,
            "status": summary.status if summary else RunStatus.CREATED,
            "project_name": summary.project_name if summary else None,
            "completed_at": (
                summary.completed_at.isoformat()
                if summary and summary.completed_at else None
            ),
        })

    return {"runs": runs, "total": len(runs)}


@app.get(
    "/runs/{run_id}/plan",
    response_model=PlanResponse,
    tags=["Runs"],
    summary="Get the plan reviewed for a run",
)
async def get_run_plan(
    run_id: str,
    engine: ProvisioningEngine = Depends(get_engine),
) -> PlanResponse:
    """Get the saved plan of a run."""
    plan = engine.storage.load_plan(run_id)
    if plan is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Plan not found for run: {run_id}",
        )
    return PlanResponse(plan=plan, text=format_plan(plan))


@app.delete(
    "/runs/{run_id}",
    tags=["Runs"],
    summary="Delete a run and its artifacts",
)
async def delete_run(
    run_id: str,
    engine: ProvisioningEngine = Depends(get_engine),
):
    """
    Delete the plan and summary of a run. Resources and state are not touched.

    **Warning:** This action cannot be undone.
    """
    # Cannot delete running jobs
    if run_id in active_runs:
        run_state = active_runs[run_id]
        if run_state["status"] in ACTIVE_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Cannot delete a running execution",
            )
        del active_runs[run_id]

    if not engine.storage.run_exists(run_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run not found: {run_id}",
        )
    engine.storage.delete_run(run_id)
    return {"message": f"Run {run_id} deleted successfully"}


@app.get(
    "/state",
    tags=["State"],
    summary="List state records",
)
async def list_state(engine: ProvisioningEngine = Depends(get_engine)):
    """List every resource recorded in the State Store."""
    records = engine.state.list()
    return {
        "serial": engine.state.serial,
        "resources": [r.model_dump(mode="json") for r in records],
        "total": len(records),
    }


@app.get(
    "/state/{address:path}",
    response_model=StateRecord,
    tags=["State"],
    summary="Get one state record",
)
async def get_state_record(
    address: str,
    refresh: bool = False,
    engine: ProvisioningEngine = Depends(get_engine),
):
    """
    Get the state record of a resource.

    With `refresh=true` the provider is read and its live outputs are
    returned in place of the recorded ones. The State Store is not
    modified.
    """
    record = engine.state.get(address)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No state record: {address}",
        )

    if refresh:
        live = engine.provider.read(record.resource_type, record.provider_id)
        if live is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Resource {record.provider_id} no longer exists at the provider",
            )
        record.outputs = live.outputs

    return record


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request, exc: ConfigurationError):
    """Fatal declaration errors: nothing was attempted."""
    logger.error(f"Configuration error: {exc}")
    errors = exc.errors if isinstance(exc, DeclarationError) else []
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(
            error=type(exc).__name__,
            detail=exc.message,
            errors=errors,
        ).model_dump(),
    )


@app.exception_handler(StateCorruptionError)
async def state_corruption_handler(request, exc: StateCorruptionError):
    """State must be reconciled manually before any apply."""
    logger.error(f"State corruption: {exc}")
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=ErrorResponse(error="StateCorruptionError", detail=str(exc)).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc: Exception):
    """Global exception handler."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        },
    )


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "provisioner.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
