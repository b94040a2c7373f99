"""
EMR sync orchestrator.

One run: acquire the import lock -> fetch bundles for a date range -> upsert
each admission independently -> always release the lock -> audit the result.

A run whose result has failed admissions is still a successful run; only lock
contention, lock-store failures and fetch failures are run-level errors.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import sessionmaker

from emr_sync.services.audit import AuditAction, AuditTargetType, DatabaseAuditSink
from emr_sync.services.validation import validate_date_range
from emr_sync.sync.clock import system_clock
from emr_sync.sync.lock import ImportLockStore
from emr_sync.sync.types import (
    DateRange,
    LockReleaseError,
    SyncFetchError,
    SyncResult,
    UpsertError,
)
from emr_sync.sync.upsert import AdmissionUpserter

logger = logging.getLogger(__name__)

TRIGGER_MANUAL = "manual"
TRIGGER_BATCH = "batch"


class SyncOrchestrator:
    def __init__(
        self,
        lock_store: ImportLockStore,
        emr_client,
        upserter: AdmissionUpserter,
        audit,
        clock=system_clock,
    ):
        self.lock_store = lock_store
        self.emr_client = emr_client
        self.upserter = upserter
        self.audit = audit
        self.clock = clock

    @classmethod
    def from_session_factory(cls, session_factory: sessionmaker, emr_client, clock=system_clock):
        """Wire the default database-backed collaborators around one session factory."""
        return cls(
            lock_store=ImportLockStore(session_factory, clock=clock),
            emr_client=emr_client,
            upserter=AdmissionUpserter(session_factory),
            audit=DatabaseAuditSink(session_factory, clock=clock),
            clock=clock,
        )

    def run_manual_import(self, actor_id: str, start_date: Any, end_date: Any) -> SyncResult:
        """Validate a user-supplied window, then sync it as ``actor_id``."""
        date_range = validate_date_range(start_date, end_date)
        return self.run_sync(actor_id, date_range, trigger=TRIGGER_MANUAL)

    def run_sync(
        self,
        actor_id: str,
        date_range: DateRange,
        trigger: str = TRIGGER_MANUAL,
        attempt: int | None = None,
    ) -> SyncResult:
        """
        Execute one synchronization run.

        Raises ImportLockedError / LockError before any work when the lock
        cannot be taken, and SyncFetchError when the EMR fetch fails. The lock
        is released on every path once acquired.
        """
        lock = self.lock_store.acquire(actor_id)
        result = SyncResult(started_at=self.clock.now())
        logger.info("EMR sync (%s) started by %s for %s..%s",
                    trigger, actor_id, date_range.start_date, date_range.end_date)
        try:
            try:
                bundles = self.emr_client.fetch(date_range.start_date, date_range.end_date)
                if not isinstance(bundles, list):
                    raise TypeError(f"EMR source returned {type(bundles).__name__}, not a list of bundles")
            except Exception as exc:
                logger.error("EMR fetch failed for %s..%s: %s",
                             date_range.start_date, date_range.end_date, exc)
                raise SyncFetchError("EMR synchronization failed") from exc

            result.total_admissions = len(bundles)
            for bundle in bundles:
                try:
                    counts = self.upserter.upsert_admission(bundle)
                except UpsertError as exc:
                    result.add_failure(exc.external_admission_id)
                    continue
                result.add_success(counts)
        finally:
            self._release(lock.id)

        result.completed_at = self.clock.now()
        logger.info(
            "EMR sync (%s) finished: %d/%d admissions ok, %d failed %s",
            trigger, result.success_count, result.total_admissions,
            result.failed_count, result.failed_admission_ids,
        )
        self._record_audit(actor_id, date_range, result, trigger, attempt)
        return result

    def _release(self, lock_id: int) -> None:
        try:
            self.lock_store.release(lock_id)
        except LockReleaseError as exc:
            # Leave recovery to TTL expiry rather than mask the run's outcome
            logger.error("Lock id=%s not released (%s); it will expire at TTL", lock_id, exc)

    def _record_audit(
        self,
        actor_id: str,
        date_range: DateRange,
        result: SyncResult,
        trigger: str,
        attempt: int | None,
    ) -> None:
        after_data = {
            "type": trigger,
            "startDate": date_range.start_date.isoformat(),
            "endDate": date_range.end_date.isoformat(),
            "totalAdmissions": result.total_admissions,
            "successCount": result.success_count,
            "failedCount": result.failed_count,
            "failedAdmissionIds": list(result.failed_admission_ids),
            "skippedLabResultCount": result.skipped_lab_result_count,
            "defaultedSexCount": result.defaulted_sex_count,
            "defaultedPrescriptionTypeCount": result.defaulted_prescription_type_count,
        }
        if trigger == TRIGGER_BATCH:
            target_type = AuditTargetType.IMPORT
            if attempt is not None:
                after_data["attempt"] = attempt
        else:
            target_type = AuditTargetType.EMR_DATA

        try:
            self.audit.record(
                actor_id=actor_id,
                action=AuditAction.EMR_SYNC,
                target_type=target_type,
                target_id=f"{trigger}_{date_range.label()}",
                after_data=after_data,
            )
        except Exception as exc:
            logger.error("Audit sink raised while recording sync result: %s", exc)


def build_orchestrator(session_factory: sessionmaker, emr_client=None, clock=system_clock) -> SyncOrchestrator:
    if emr_client is None:
        from emr_sync.emr.client import build_emr_client

        emr_client = build_emr_client()
    return SyncOrchestrator.from_session_factory(session_factory, emr_client, clock=clock)
