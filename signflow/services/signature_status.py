"""Request status derivation. Pure: no I/O, no clock of its own."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol

from signflow.models.signature_request import (
    SignatureRequestStatus,
    SignerStatus,
    TERMINAL_REQUEST_STATUSES,
)
from signflow.services.clock import as_utc


class SignerLike(Protocol):
    status: str
    required: bool


def is_past_expiry(expires_at: datetime, now: datetime) -> bool:
    """The expiry instant itself already counts as expired."""
    return as_utc(now) >= as_utc(expires_at)


def derive_status(
    signers: Iterable[SignerLike],
    expires_at: datetime,
    now: datetime,
    current_status: str,
) -> str:
    """Aggregate request status from signer statuses and the expiry timestamp.

    Terminal statuses are sticky. Past expiry dominates the signer mix. A
    declining required signer ends the request; optional signers that decline
    simply leave the pending pool. COMPLETED needs every required signer
    SIGNED and nobody left PENDING; a request where every signer declined is
    DECLINED.
    """
    if current_status in TERMINAL_REQUEST_STATUSES:
        return current_status
    if is_past_expiry(expires_at, now):
        return SignatureRequestStatus.expired.value
    if current_status == SignatureRequestStatus.draft.value:
        return current_status

    signers = list(signers)
    pending = [s for s in signers if s.status == SignerStatus.pending.value]
    signed = [s for s in signers if s.status == SignerStatus.signed.value]
    required = [s for s in signers if s.required]

    if any(s.status == SignerStatus.declined.value for s in required):
        return SignatureRequestStatus.declined.value
    if signers and not pending:
        # Only optional signers may have declined at this point
        if signed:
            return SignatureRequestStatus.completed.value
        return SignatureRequestStatus.declined.value
    if signed:
        return SignatureRequestStatus.partially_signed.value
    return SignatureRequestStatus.pending.value
