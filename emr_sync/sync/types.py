"""Shared value types and the error taxonomy of the EMR sync engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    IMPORT_LOCKED = "IMPORT_LOCKED"
    LOCK_ERROR = "LOCK_ERROR"
    LOCK_CHECK_ERROR = "LOCK_CHECK_ERROR"
    LOCK_RELEASE_ERROR = "LOCK_RELEASE_ERROR"
    SYNC_ERROR = "SYNC_ERROR"
    UPSERT_ERROR = "UPSERT_ERROR"
    BATCH_IMPORT_FAILED = "BATCH_IMPORT_FAILED"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SyncError(Exception):
    """Base class for every failure the sync engine reports to its callers."""

    code: ErrorCode = ErrorCode.SYNC_ERROR

    def __init__(self, cause: Any):
        super().__init__(str(cause))
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "cause": self.cause}


class InvalidInputError(SyncError):
    code = ErrorCode.INVALID_INPUT


class ImportLockedError(SyncError):
    code = ErrorCode.IMPORT_LOCKED


class LockError(SyncError):
    code = ErrorCode.LOCK_ERROR

    def __init__(self, cause: Any, code: ErrorCode = ErrorCode.LOCK_ERROR):
        super().__init__(cause)
        self.code = code


class LockReleaseError(SyncError):
    code = ErrorCode.LOCK_RELEASE_ERROR


class SyncFetchError(SyncError):
    code = ErrorCode.SYNC_ERROR


class UpsertError(SyncError):
    """One admission could not be merged; its transaction was rolled back."""

    code = ErrorCode.UPSERT_ERROR

    def __init__(self, external_admission_id: str | None, cause: Any):
        super().__init__(cause)
        self.external_admission_id = external_admission_id


class BatchImportFailedError(SyncError):
    code = ErrorCode.BATCH_IMPORT_FAILED

    def __init__(self, cause: Any, last_error: SyncError | None = None, attempts: int = 0):
        super().__init__(cause)
        self.last_error = last_error
        self.attempts = attempts


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DateRange:
    start_date: date
    end_date: date

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days

    def label(self) -> str:
        return f"{self.start_date.isoformat()}_{self.end_date.isoformat()}"


@dataclass(frozen=True)
class LockHandle:
    id: int
    lock_key: str
    holder_id: str
    is_active: bool
    expires_at: datetime


@dataclass
class UpsertCounts:
    """Rows written for one admission, plus how often a fallback was applied."""

    external_admission_id: str
    vital_sign_count: int = 0
    lab_result_count: int = 0
    prescription_count: int = 0
    skipped_lab_result_count: int = 0
    defaulted_sex_count: int = 0
    defaulted_prescription_type_count: int = 0


@dataclass
class SyncResult:
    started_at: datetime
    completed_at: datetime | None = None
    total_admissions: int = 0
    success_count: int = 0
    failed_count: int = 0
    failed_admission_ids: list[str] = field(default_factory=list)
    vital_sign_count: int = 0
    lab_result_count: int = 0
    prescription_count: int = 0
    skipped_lab_result_count: int = 0
    defaulted_sex_count: int = 0
    defaulted_prescription_type_count: int = 0

    def add_success(self, counts: UpsertCounts) -> None:
        self.success_count += 1
        self.vital_sign_count += counts.vital_sign_count
        self.lab_result_count += counts.lab_result_count
        self.prescription_count += counts.prescription_count
        self.skipped_lab_result_count += counts.skipped_lab_result_count
        self.defaulted_sex_count += counts.defaulted_sex_count
        self.defaulted_prescription_type_count += counts.defaulted_prescription_type_count

    def add_failure(self, external_admission_id: str | None) -> None:
        self.failed_count += 1
        self.failed_admission_ids.append(external_admission_id or "<unknown>")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return data
