"""
Scheduled (unattended) EMR import with bounded retries.

Each attempt runs the full orchestrator sequence. A run-level failure (lock
busy, lock store error, fetch error) is retried with exponential backoff
(1s, 2s, 4s, ...) until ``max_retries`` retries are used; then a terminal
audit entry is written and BatchImportFailedError is raised. Per-admission
failures inside a completed run are not retried: the same malformed
records would fail again.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from emr_sync.config import settings
from emr_sync.services.audit import AuditAction, AuditTargetType
from emr_sync.services.validation import validate_batch_config
from emr_sync.sync.orchestrator import TRIGGER_BATCH, SyncOrchestrator
from emr_sync.sync.types import BatchImportFailedError, DateRange, SyncError, SyncResult

logger = logging.getLogger(__name__)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception()
    logger.error(
        "Batch import attempt %d failed: %s [%s]; retrying in %.0fs",
        retry_state.attempt_number, exc.cause, exc.code.value, retry_state.next_action.sleep,
    )


class BatchRetryDriver:
    def __init__(self, orchestrator: SyncOrchestrator, actor_id: str | None = None):
        self.orchestrator = orchestrator
        self.actor_id = actor_id or settings.BATCH_ACTOR_ID

    @property
    def clock(self):
        return self.orchestrator.clock

    def _retrying(self, max_retries: int) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_exponential(multiplier=1),
            retry=retry_if_exception_type(SyncError),
            sleep=self.clock.sleep,
            before_sleep=_log_retry,
        )

    def run_batch(self, days_back=None, max_retries=None) -> SyncResult:
        days_back = settings.BATCH_DAYS_BACK if days_back is None else days_back
        max_retries = settings.BATCH_MAX_RETRIES if max_retries is None else max_retries
        days_back, max_retries = validate_batch_config(days_back, max_retries)

        today = self.clock.today()
        date_range = DateRange(today - timedelta(days=days_back), today)

        try:
            for attempt in self._retrying(max_retries):
                with attempt:
                    result = self.orchestrator.run_sync(
                        self.actor_id,
                        date_range,
                        trigger=TRIGGER_BATCH,
                        attempt=attempt.retry_state.attempt_number,
                    )
        except RetryError as exc:
            attempts = exc.last_attempt.attempt_number
            last_error = exc.last_attempt.exception()
            self._record_exhaustion(date_range, max_retries, last_error)
            raise BatchImportFailedError(
                f"Batch import failed after {attempts} attempts: {last_error}",
                last_error=last_error,
                attempts=attempts,
            ) from last_error
        return result

    def _record_exhaustion(self, date_range: DateRange, max_retries: int, last_error: SyncError | None) -> None:
        logger.error("Batch import exhausted %d retries; last error: %s", max_retries, last_error)
        try:
            self.orchestrator.audit.record(
                actor_id=self.actor_id,
                action=AuditAction.EMR_SYNC,
                target_type=AuditTargetType.IMPORT,
                target_id=f"{TRIGGER_BATCH}_{date_range.label()}_failed",
                after_data={
                    "type": TRIGGER_BATCH,
                    "status": "failed",
                    "startDate": date_range.start_date.isoformat(),
                    "endDate": date_range.end_date.isoformat(),
                    "maxRetries": max_retries,
                    "lastError": last_error.to_dict() if last_error else None,
                },
            )
        except Exception as exc:
            logger.error("Audit sink raised while recording batch exhaustion: %s", exc)
