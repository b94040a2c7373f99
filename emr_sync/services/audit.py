"""
Audit logging service for compliance tracking.

Every row carries a SHA-256 hash over its own fields and the previous row's
hash, so editing or deleting any historical row breaks the chain.
Recording is fire-and-forget: a failed write is logged and never propagates
into the operation being audited.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from emr_sync.models.emr import AuditLog
from emr_sync.sync.clock import system_clock

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    EMR_SYNC = "EMR_SYNC"


class AuditTargetType(str, Enum):
    EMR_DATA = "EMR_DATA"
    IMPORT = "IMPORT"


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def compute_audit_hash(
    *,
    actor_id: str,
    action: str,
    target_type: str,
    target_id: str,
    before_data: dict[str, Any] | None,
    after_data: dict[str, Any] | None,
    occurred_at: datetime,
    prev_hash: str | None,
) -> str:
    payload = json.dumps(
        {
            "actorId": actor_id,
            "action": action,
            "targetType": target_type,
            "targetId": target_id,
            "beforeData": before_data,
            "afterData": after_data,
            "occurredAt": occurred_at.isoformat(),
            "prevHash": prev_hash,
        },
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _row_hash(row: AuditLog, prev_hash: str | None) -> str:
    return compute_audit_hash(
        actor_id=row.actor_id,
        action=row.action,
        target_type=row.target_type,
        target_id=row.target_id,
        before_data=row.before_data,
        after_data=row.after_data,
        occurred_at=row.occurred_at,
        prev_hash=prev_hash,
    )


def log_action(
    db: Session,
    *,
    actor_id: str,
    action: str,
    target_type: str,
    target_id: str,
    before_data: dict[str, Any] | None = None,
    after_data: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> AuditLog:
    """Append a chained audit entry inside the caller's transaction."""
    occurred_at = occurred_at or system_clock.now()
    last = db.query(AuditLog.hash).order_by(AuditLog.id.desc()).first()
    prev_hash = last[0] if last else None

    entry = AuditLog(
        actor_id=str(actor_id),
        action=_enum_value(action),
        target_type=_enum_value(target_type),
        target_id=target_id,
        before_data=before_data,
        after_data=after_data,
        prev_hash=prev_hash,
        occurred_at=occurred_at,
    )
    entry.hash = _row_hash(entry, prev_hash)
    db.add(entry)
    db.flush()
    logger.info("AUDIT: %s %s %s/%s", entry.actor_id, entry.action, entry.target_type, target_id)
    return entry


def verify_audit_chain(db: Session) -> bool:
    """Recompute every hash in id order; False at the first broken link."""
    prev_hash = None
    for row in db.query(AuditLog).order_by(AuditLog.id.asc()).yield_per(500):
        if row.prev_hash != prev_hash or row.hash != _row_hash(row, prev_hash):
            logger.error("Audit chain broken at id=%s", row.id)
            return False
        prev_hash = row.hash
    return True


class DatabaseAuditSink:
    """Audit sink used by the sync engine; each record is its own transaction."""

    def __init__(self, session_factory: sessionmaker, clock=system_clock):
        self.session_factory = session_factory
        self.clock = clock

    def record(
        self,
        *,
        actor_id: str,
        action: str,
        target_type: str,
        target_id: str,
        after_data: dict[str, Any] | None = None,
        before_data: dict[str, Any] | None = None,
    ) -> AuditLog | None:
        try:
            with self.session_factory.begin() as db:
                entry = log_action(
                    db,
                    actor_id=actor_id,
                    action=action,
                    target_type=target_type,
                    target_id=target_id,
                    before_data=before_data,
                    after_data=after_data,
                    occurred_at=self.clock.now(),
                )
                db.expunge(entry)
            return entry
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to record audit log (actor=%s action=%s target=%s): %s",
                actor_id, _enum_value(action), target_id, exc,
            )
            return None
