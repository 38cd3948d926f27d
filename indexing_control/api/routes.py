"""HTTP API routes for the Indexing Control Center."""

import json
from typing import List, Optional, Union

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from ..errors import AuthError, ErrorCode, IndexingError, code_for_exception, status_for_exception
from ..models import AdminUser, StartTestRunRequest, UnlockRequest

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["indexing"])


class CreateFixtureRequest(BaseModel):
    """Request to promote a test run to a fixture."""

    name: Optional[str] = None
    notes: Optional[str] = None
    tags: Optional[Union[List[str], str]] = None


# These will be set by main.py after app creation
_verifier = None
_ledger = None
_orchestrator = None
_fixtures = None
_unlock_service = None
_ops_dashboard = None


def set_dependencies(verifier, ledger, orchestrator, fixtures, unlock_service, ops_dashboard):
    """Set service dependencies for routes."""
    global _verifier, _ledger, _orchestrator, _fixtures, _unlock_service, _ops_dashboard
    _verifier = verifier
    _ledger = ledger
    _orchestrator = orchestrator
    _fixtures = fixtures
    _unlock_service = unlock_service
    _ops_dashboard = ops_dashboard


def register_exception_handlers(app: FastAPI) -> None:
    """Render typed failures as ``{error, code, testRunId}``."""

    @app.exception_handler(IndexingError)
    async def indexing_error_handler(request: Request, exc: IndexingError):
        return JSONResponse(status_code=exc.status, content=exc.to_dict())

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        status = status_for_exception(exc)
        if status >= 500:
            logger.error("Admin verification failed", error=str(exc))
        return JSONResponse(
            status_code=status,
            content={"error": str(exc), "code": code_for_exception(exc).value, "testRunId": None},
        )


async def require_admin(authorization: Optional[str] = Header(None)) -> AdminUser:
    """Resolve the caller to a verified admin."""
    if not _verifier:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return await _verifier.verify(authorization)


async def _read_json(request: Request):
    try:
        return await request.json()
    except ValueError:
        raise IndexingError(400, ErrorCode.INVALID_JSON, "Request body must be valid JSON")


# ----------------------------------------------------------------------
# Test runs
# ----------------------------------------------------------------------


@router.post("/indexing-tests/runs")
async def start_test_run(request: Request, admin: AdminUser = Depends(require_admin)):
    """Run the indexer against a YouTube video and ledger the result."""
    if not _orchestrator:
        raise HTTPException(status_code=503, detail="Service not initialized")

    payload = await _read_json(request)
    outcome = await _orchestrator.start_test_run(admin, StartTestRunRequest.from_payload(payload))
    return outcome.to_dict()


@router.get("/indexing-tests/runs")
async def list_test_runs(
    limit: int = Query(50, description="Maximum runs to return (1-200)"),
    admin: AdminUser = Depends(require_admin),
):
    """List test runs, newest first."""
    if not _ledger:
        raise HTTPException(status_code=503, detail="Service not initialized")

    return {"runs": await _ledger.list_runs(limit)}


@router.get("/indexing-tests/runs/{run_id}")
async def get_test_run(run_id: str, admin: AdminUser = Depends(require_admin)):
    """Get a run with its outputs and logs."""
    if not _ledger:
        raise HTTPException(status_code=503, detail="Service not initialized")

    run = await _ledger.get_run(run_id)
    if not run:
        raise IndexingError(404, ErrorCode.RUN_NOT_FOUND, "Run not found", test_run_id=run_id)

    outputs = await _ledger.get_outputs(run_id)
    logs = await _ledger.get_logs(run_id)
    return {"run": run, "outputs": outputs, "logs": logs}


@router.get("/indexing-tests/runs/{run_id}/ocr.json")
async def download_ocr_json(run_id: str, admin: AdminUser = Depends(require_admin)):
    """Download a run's OCR artifact as a JSON attachment."""
    if not _ledger:
        raise HTTPException(status_code=503, detail="Service not initialized")

    outputs = await _ledger.get_outputs(run_id)
    if not outputs:
        raise IndexingError(
            404, ErrorCode.OUTPUTS_NOT_FOUND, "OCR output not found for run", test_run_id=run_id
        )

    ocr_json = outputs.get("ocr_json")
    return Response(
        content=json.dumps(ocr_json if ocr_json is not None else {}, indent=2),
        media_type="application/json; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="indexing-test-run-{run_id}-ocr.json"',
            "Cache-Control": "no-store",
        },
    )


@router.post("/indexing-tests/runs/{run_id}/fixture")
async def create_fixture(
    run_id: str,
    request: CreateFixtureRequest,
    admin: AdminUser = Depends(require_admin),
):
    """Promote a run's outputs to a regression fixture."""
    if not _fixtures:
        raise HTTPException(status_code=503, detail="Service not initialized")

    fixture = await _fixtures.create_fixture_from_run(
        run_id, request.name, notes=request.notes, tags=request.tags
    )
    return {"fixture": fixture}


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------


@router.get("/indexing-tests/fixtures")
async def list_fixtures(
    limit: int = Query(50, description="Maximum fixtures to return (1-200)"),
    admin: AdminUser = Depends(require_admin),
):
    if not _fixtures:
        raise HTTPException(status_code=503, detail="Service not initialized")

    return {"fixtures": await _fixtures.list_fixtures(limit)}


@router.get("/indexing-tests/fixtures/{fixture_id}")
async def get_fixture(fixture_id: str, admin: AdminUser = Depends(require_admin)):
    if not _fixtures:
        raise HTTPException(status_code=503, detail="Service not initialized")

    fixture = await _fixtures.get_fixture(fixture_id)
    if not fixture:
        raise IndexingError(404, ErrorCode.FIXTURE_NOT_FOUND, "Fixture not found.")
    return {"fixture": fixture}


@router.post("/indexing-tests/fixtures/{fixture_id}/run")
async def run_fixture(fixture_id: str, admin: AdminUser = Depends(require_admin)):
    """Re-run a fixture's video through the indexer as a new test run."""
    if not _fixtures or not _orchestrator:
        raise HTTPException(status_code=503, detail="Service not initialized")

    fixture = await _fixtures.get_fixture(fixture_id)
    if not fixture:
        raise IndexingError(404, ErrorCode.FIXTURE_NOT_FOUND, "Fixture not found.")

    outcome = await _orchestrator.start_test_run(admin, _fixtures.regression_request(fixture))
    return outcome.to_dict()


# ----------------------------------------------------------------------
# Unlock & index, ops
# ----------------------------------------------------------------------


@router.post("/videos/{video_id}/unlock-index")
async def unlock_and_index_video(
    video_id: str,
    request: Request,
    admin: AdminUser = Depends(require_admin),
):
    """Unlock a video and trigger the production indexer.

    Without ``makePublic`` the video and channel are returned to their demo
    posture after the trigger.
    """
    if not _unlock_service:
        raise HTTPException(status_code=503, detail="Service not initialized")

    payload = await _read_json(request) if await request.body() else {}
    result = await _unlock_service.unlock_and_index_video(
        admin, UnlockRequest.from_payload(payload, video_id=video_id)
    )
    return result.to_dict()


@router.get("/indexing/ops")
async def get_ops_snapshot(admin: AdminUser = Depends(require_admin)):
    """Indexing throughput, lane distribution and failure breakdown."""
    if not _ops_dashboard:
        raise HTTPException(status_code=503, detail="Service not initialized")

    snapshot = await _ops_dashboard.snapshot()
    return snapshot.to_dict()
