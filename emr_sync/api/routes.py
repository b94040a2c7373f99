"""
FastAPI routes – EMR synchronization triggers and lock status.

- Manual import: sync administrators pick an admission-date window
- Batch import: called by the scheduler with an API key, runs with retries
- Run-level errors map to 400 / 409 / 500 with a structured ``detail``
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from emr_sync.config import settings
from emr_sync.emr.client import build_emr_client
from emr_sync.models.database import get_db, get_session_factory
from emr_sync.schemas.api import (
    BatchImportRequest,
    HealthResponse,
    LockInfo,
    LockStatusResponse,
    ManualImportRequest,
    SyncResultResponse,
)
from emr_sync.sync.batch import BatchRetryDriver
from emr_sync.sync.clock import system_clock
from emr_sync.sync.lock import ImportLockStore
from emr_sync.sync.orchestrator import SyncOrchestrator
from emr_sync.sync.types import ErrorCode, SyncError

logger = logging.getLogger(__name__)

router = APIRouter()

SYNC_ADMIN_ROLES = {"SYSTEM_ADMIN", "SUPER_ADMIN"}

STATUS_BY_CODE = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.IMPORT_LOCKED: 409,
}


def _http_error(exc: SyncError) -> HTTPException:
    return HTTPException(status_code=STATUS_BY_CODE.get(exc.code, 500), detail=exc.to_dict())


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_emr_client():
    return build_emr_client()


def get_clock():
    return system_clock


def get_orchestrator(
    session_factory: sessionmaker = Depends(get_session_factory),
    emr_client=Depends(get_emr_client),
    clock=Depends(get_clock),
) -> SyncOrchestrator:
    return SyncOrchestrator.from_session_factory(session_factory, emr_client, clock=clock)


def require_sync_admin(
    x_actor_id: str | None = Header(default=None),
    x_actor_roles: str | None = Header(default=None),
) -> str:
    """
    Authorization gate. Identity and roles are resolved upstream (gateway /
    session layer) and forwarded as headers; this only enforces the role check.
    """
    if not x_actor_id:
        raise HTTPException(
            status_code=401, detail={"code": "UNAUTHORIZED", "cause": "Authentication required"}
        )
    roles = {role.strip().upper() for role in (x_actor_roles or "").split(",") if role.strip()}
    if not roles & SYNC_ADMIN_ROLES:
        raise HTTPException(
            status_code=403, detail={"code": "FORBIDDEN", "cause": "EMR sync requires an administrator role"}
        )
    return x_actor_id


def require_batch_key(x_api_key: str | None = Header(default=None)) -> str:
    if x_api_key != settings.BATCH_API_KEY:
        raise HTTPException(status_code=401, detail={"code": "UNAUTHORIZED", "cause": "Invalid API key"})
    return settings.BATCH_ACTOR_ID


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.exception("Health check could not reach the database")
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database=db_status,
    )


# ---------------------------------------------------------------------------
# EMR sync
# ---------------------------------------------------------------------------

@router.get("/emr-sync", response_model=LockStatusResponse)
def get_import_lock_status(
    _actor_id: str = Depends(require_sync_admin),
    session_factory: sessionmaker = Depends(get_session_factory),
    clock=Depends(get_clock),
):
    """Is an import running right now, and who holds it."""
    try:
        handle = ImportLockStore(session_factory, clock=clock).peek()
    except SyncError as exc:
        raise _http_error(exc)
    return LockStatusResponse(
        is_locked=handle is not None,
        lock=LockInfo.from_handle(handle) if handle else None,
    )


@router.post("/emr-sync", response_model=SyncResultResponse)
def run_manual_import(
    request: ManualImportRequest,
    actor_id: str = Depends(require_sync_admin),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Sync admissions in ``[startDate, endDate]`` (at most 7 days) from the EMR.
    Partial per-admission failures still return 200 with ``failed_count > 0``.
    """
    try:
        result = orchestrator.run_manual_import(actor_id, request.startDate, request.endDate)
    except SyncError as exc:
        raise _http_error(exc)
    return SyncResultResponse.from_result(result)


@router.post("/emr-sync/batch", response_model=SyncResultResponse)
def run_batch_import(
    request: BatchImportRequest | None = None,
    actor_id: str = Depends(require_batch_key),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Scheduled import of the last ``daysBack`` days with retry and backoff."""
    request = request or BatchImportRequest()
    driver = BatchRetryDriver(orchestrator, actor_id=actor_id)
    try:
        result = driver.run_batch(days_back=request.daysBack, max_retries=request.maxRetries)
    except SyncError as exc:
        raise _http_error(exc)
    return SyncResultResponse.from_result(result)
