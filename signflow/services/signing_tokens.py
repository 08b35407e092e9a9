"""Signing token registry: single-use, time-bounded tokens for one (request, signer) pair."""
from __future__ import annotations

import secrets
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from signflow.models.signature_request import SignatureRequest, SignatureSigner
from signflow.models.signing_token import SigningToken
from signflow.services.clock import as_utc

TOKEN_BYTES = 32


def _new_token_value() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def issue_token(
    db: Session,
    request: SignatureRequest,
    signer: SignatureSigner,
    *,
    now: datetime,
    ttl_hours: int,
) -> SigningToken:
    """Mint a token for signer. Earlier live tokens of the same signer are revoked."""
    revoke_signer_tokens(db, signer.id)
    expires_at = min(as_utc(request.expires_at), now + timedelta(hours=ttl_hours))
    row = SigningToken(
        token=_new_token_value(),
        request_id=request.id,
        signer_id=signer.id,
        expires_at=expires_at,
        created_at=now,
    )
    db.add(row)
    db.flush()
    return row


def resolve_token(db: Session, token: str, *, now: datetime) -> SigningToken | None:
    """Return the live token row, or None. An expired token is deleted (flushed, not committed)."""
    value = (token or "").strip()
    if not value:
        return None
    row = db.query(SigningToken).filter(SigningToken.token == value).first()
    if row is None:
        return None
    if now > as_utc(row.expires_at):
        db.delete(row)
        db.flush()
        return None
    return row


def live_signer_token(db: Session, signer_id: str, *, now: datetime) -> SigningToken | None:
    """Newest unexpired token already issued to signer, if any."""
    rows = (
        db.query(SigningToken)
        .filter(SigningToken.signer_id == signer_id)
        .order_by(SigningToken.created_at.desc())
        .all()
    )
    return next((row for row in rows if now <= as_utc(row.expires_at)), None)


def consume_token(db: Session, row: SigningToken) -> None:
    db.delete(row)
    db.flush()


def revoke_signer_tokens(db: Session, signer_id: str) -> int:
    return db.query(SigningToken).filter(SigningToken.signer_id == signer_id).delete(synchronize_session=False)


def purge_request_tokens(db: Session, request_id: str) -> int:
    """Drop every outstanding token of a request that reached a terminal state."""
    return db.query(SigningToken).filter(SigningToken.request_id == request_id).delete(synchronize_session=False)
