"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from emr_sync.sync.types import LockHandle, SyncResult


# ---------------------------------------------------------------------------
# EMR sync triggers
# ---------------------------------------------------------------------------

class ManualImportRequest(BaseModel):
    """Admission-date window for a manual import (YYYY-MM-DD, checked by the sync policy)."""
    startDate: str
    endDate: str


class BatchImportRequest(BaseModel):
    """Optional overrides for a scheduled import; defaults come from settings."""
    daysBack: int | None = None
    maxRetries: int | None = None


class SyncResultResponse(BaseModel):
    total_admissions: int
    success_count: int
    failed_count: int
    failed_admission_ids: list[str]
    vital_sign_count: int
    lab_result_count: int
    prescription_count: int
    skipped_lab_result_count: int = 0
    defaulted_sex_count: int = 0
    defaulted_prescription_type_count: int = 0
    started_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_result(cls, result: SyncResult) -> SyncResultResponse:
        return cls(
            total_admissions=result.total_admissions,
            success_count=result.success_count,
            failed_count=result.failed_count,
            failed_admission_ids=list(result.failed_admission_ids),
            vital_sign_count=result.vital_sign_count,
            lab_result_count=result.lab_result_count,
            prescription_count=result.prescription_count,
            skipped_lab_result_count=result.skipped_lab_result_count,
            defaulted_sex_count=result.defaulted_sex_count,
            defaulted_prescription_type_count=result.defaulted_prescription_type_count,
            started_at=result.started_at,
            completed_at=result.completed_at,
        )


# ---------------------------------------------------------------------------
# Lock status
# ---------------------------------------------------------------------------

class LockInfo(BaseModel):
    id: int
    lock_key: str
    holder_id: str
    is_active: bool
    expires_at: datetime

    @classmethod
    def from_handle(cls, handle: LockHandle) -> LockInfo:
        return cls(
            id=handle.id,
            lock_key=handle.lock_key,
            holder_id=handle.holder_id,
            is_active=handle.is_active,
            expires_at=handle.expires_at,
        )


class LockStatusResponse(BaseModel):
    is_locked: bool
    lock: LockInfo | None = None


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"

