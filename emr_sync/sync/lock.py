"""
Advisory, database-row import lock.

One row per acquisition in ``import_locks``; a lock is held while its row is
active and unexpired. Expired rows are swept to inactive before every check,
so a holder that crashed cannot wedge the resource past the TTL. The partial
unique index on ``(lock_key) WHERE is_active`` makes the sweep/check/insert
sequence safe against a concurrent acquirer on another connection.

Known limitation: a sync that runs longer than the TTL can be joined by a
second run once its row is swept.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from emr_sync.config import settings
from emr_sync.models.emr import ImportLock
from emr_sync.sync.clock import system_clock
from emr_sync.sync.types import (
    ErrorCode,
    ImportLockedError,
    LockError,
    LockHandle,
    LockReleaseError,
)

logger = logging.getLogger(__name__)

LOCK_BUSY_MESSAGE = "Another user is already running an EMR import. Please wait and try again."


def _to_handle(row: ImportLock) -> LockHandle:
    return LockHandle(
        id=row.id,
        lock_key=row.lock_key,
        holder_id=row.holder_id,
        is_active=row.is_active,
        expires_at=row.expires_at,
    )


class ImportLockStore:
    """Acquire / release / inspect the lock for one ``lock_key``."""

    def __init__(
        self,
        session_factory: sessionmaker,
        lock_key: str | None = None,
        ttl: timedelta | None = None,
        clock=system_clock,
    ):
        self.session_factory = session_factory
        self.lock_key = lock_key or settings.IMPORT_LOCK_KEY
        self.ttl = ttl or timedelta(minutes=settings.IMPORT_LOCK_TTL_MINUTES)
        self.clock = clock

    def _sweep_expired(self, db: Session, now: datetime) -> int:
        result = db.execute(
            update(ImportLock)
            .where(
                ImportLock.lock_key == self.lock_key,
                ImportLock.is_active.is_(True),
                ImportLock.expires_at < now,
            )
            .values(is_active=False)
        )
        swept = result.rowcount or 0
        if swept:
            logger.warning("Swept %d expired '%s' lock(s)", swept, self.lock_key)
        return swept

    def _find_active(self, db: Session) -> ImportLock | None:
        return (
            db.query(ImportLock)
            .filter(ImportLock.lock_key == self.lock_key, ImportLock.is_active.is_(True))
            .order_by(ImportLock.id.desc())
            .first()
        )

    def acquire(self, holder_id: str, now: datetime | None = None) -> LockHandle:
        """
        Take the lock for ``holder_id``.

        Raises ImportLockedError when another active, unexpired lock exists
        (including one inserted concurrently and caught by the unique index).
        """
        now = now or self.clock.now()
        try:
            with self.session_factory() as db:
                try:
                    self._sweep_expired(db, now)
                    existing = self._find_active(db)
                    if existing is not None:
                        db.rollback()
                        logger.info(
                            "Lock '%s' busy: held by %s until %s",
                            self.lock_key, existing.holder_id, existing.expires_at,
                        )
                        raise ImportLockedError(LOCK_BUSY_MESSAGE)

                    lock = ImportLock(
                        lock_key=self.lock_key,
                        holder_id=str(holder_id),
                        is_active=True,
                        expires_at=now + self.ttl,
                        created_at=now,
                    )
                    db.add(lock)
                    db.commit()
                    db.refresh(lock)
                except IntegrityError:
                    db.rollback()
                    logger.info("Lock '%s' taken concurrently; %s lost the race", self.lock_key, holder_id)
                    raise ImportLockedError(LOCK_BUSY_MESSAGE)
                except SQLAlchemyError:
                    db.rollback()
                    raise
                handle = _to_handle(lock)
        except SQLAlchemyError as exc:
            logger.error("Failed to acquire lock '%s': %s", self.lock_key, exc)
            raise LockError("Failed to acquire the import lock") from exc

        logger.info("Lock '%s' acquired by %s (id=%s, expires %s)",
                    self.lock_key, holder_id, handle.id, handle.expires_at)
        return handle

    def release(self, lock_id: int, now: datetime | None = None) -> None:
        """Deactivate the lock row. Releasing an inactive lock is a no-op."""
        now = now or self.clock.now()
        try:
            with self.session_factory.begin() as db:
                result = db.execute(
                    update(ImportLock)
                    .where(ImportLock.id == lock_id, ImportLock.is_active.is_(True))
                    .values(is_active=False, released_at=now)
                )
        except SQLAlchemyError as exc:
            logger.error("Failed to release lock id=%s: %s", lock_id, exc)
            raise LockReleaseError("Failed to release the import lock") from exc

        if result.rowcount:
            logger.info("Lock '%s' released (id=%s)", self.lock_key, lock_id)
        else:
            logger.debug("Lock id=%s was already inactive", lock_id)

    def peek(self, now: datetime | None = None) -> LockHandle | None:
        """Return the active lock, if any, after sweeping expired rows."""
        now = now or self.clock.now()
        try:
            with self.session_factory.begin() as db:
                self._sweep_expired(db, now)
                row = self._find_active(db)
                return _to_handle(row) if row is not None else None
        except SQLAlchemyError as exc:
            logger.error("Failed to check lock '%s': %s", self.lock_key, exc)
            raise LockError("Failed to check the import lock state", code=ErrorCode.LOCK_CHECK_ERROR) from exc
