"""Append-only audit log service. Never update or delete - immutable audit trail."""
from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from signflow.models.audit_log import SignatureAuditLog
from signflow.services.clock import as_utc, utc_now

ACTION_REQUEST_CREATED = "REQUEST_CREATED"
ACTION_REQUEST_SENT = "REQUEST_SENT"
ACTION_SIGNING_URL_ISSUED = "SIGNING_URL_ISSUED"
ACTION_SIGNATURE_SUBMITTED = "SIGNATURE_SUBMITTED"
ACTION_SIGNATURE_DECLINED = "SIGNATURE_DECLINED"
ACTION_REQUEST_COMPLETED = "REQUEST_COMPLETED"
ACTION_REQUEST_DECLINED = "REQUEST_DECLINED"
ACTION_REQUEST_CANCELLED = "REQUEST_CANCELLED"
ACTION_REQUEST_EXPIRED = "REQUEST_EXPIRED"
ACTION_REMINDER_SENT = "REMINDER_SENT"

ACTOR_SYSTEM = "system"

# Column limits (match model)
_ACTION_LEN = 32
_ACTOR_LEN = 255
_IP_LEN = 64
_USER_AGENT_LEN = 500
_DETAILS_LEN = 100_000  # avoid unbounded Text blobs


def _sanitize_meta_value(v: Any) -> Any:
    """Convert to JSON-serializable value so meta never raises on INSERT."""
    if v is None:
        return None
    if isinstance(v, (str, int, float, bool)):
        return v
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, enum.Enum):
        return getattr(v, "value", str(v))
    if isinstance(v, dict):
        return {str(k): _sanitize_meta_value(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [_sanitize_meta_value(x) for x in v]
    return str(v)


def _sanitize_meta(meta: dict[str, Any] | None) -> dict[str, Any] | None:
    if meta is None:
        return None
    return {str(k): _sanitize_meta_value(v) for k, v in meta.items()}


def _last_entry(db: Session, request_id: str) -> SignatureAuditLog | None:
    return (
        db.query(SignatureAuditLog)
        .filter(SignatureAuditLog.request_id == request_id)
        .order_by(SignatureAuditLog.sequence.desc())
        .first()
    )


def append_entry(
    db: Session,
    request_id: str,
    action: str,
    *,
    actor: str = ACTOR_SYSTEM,
    ip_address: str | None = None,
    user_agent: str | None = None,
    details: str | None = None,
    meta: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> SignatureAuditLog:
    """Append one immutable audit entry inside the caller's transaction.

    The entry is flushed, not committed: it becomes durable together with the
    state change it records, or not at all. Timestamps never go backwards
    within one request; a clock behind the previous entry is clamped to it.
    """
    timestamp = as_utc(now) if now is not None else utc_now()
    last = _last_entry(db, request_id)
    sequence = 1
    if last is not None:
        sequence = last.sequence + 1
        last_at = as_utc(last.created_at)
        if last_at > timestamp:
            timestamp = last_at

    entry = SignatureAuditLog(
        request_id=request_id,
        sequence=sequence,
        action=(action or "")[:_ACTION_LEN],
        actor=(actor or ACTOR_SYSTEM)[:_ACTOR_LEN],
        ip_address=(ip_address[:_IP_LEN] if ip_address else None),
        user_agent=(str(user_agent)[:_USER_AGENT_LEN] if user_agent else None),
        details=(details[:_DETAILS_LEN] if details else None),
        meta=_sanitize_meta(meta),
        created_at=timestamp,
    )
    db.add(entry)
    db.flush()
    return entry


def read_entries(db: Session, request_id: str) -> list[SignatureAuditLog]:
    """All entries for one request in insertion order."""
    return (
        db.query(SignatureAuditLog)
        .filter(SignatureAuditLog.request_id == request_id)
        .order_by(SignatureAuditLog.sequence.asc())
        .all()
    )
