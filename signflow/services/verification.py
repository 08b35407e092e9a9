"""Read-only verification of signature requests ("is this validly completed, by whom, when")."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from signflow.models.signature_request import SignatureRequestStatus
from signflow.services.clock import as_utc
from signflow.services.errors import NotFoundError
from signflow.services.signature_workflow import MSG_REQUEST_NOT_FOUND, SignatureWorkflow


@dataclass(frozen=True)
class SignerVerification:
    name: str
    email: str
    status: str
    signed_at: datetime | None


@dataclass(frozen=True)
class VerificationResult:
    is_valid: bool
    request_id: str
    document_id: str
    document_title: str
    status: str
    verified_at: datetime
    signers: list[SignerVerification] = field(default_factory=list)


def verify_signature_request(workflow: SignatureWorkflow, request_id: str) -> VerificationResult:
    """Valid iff the request is COMPLETED. Only side effect is the shared lazy expiry."""
    request = workflow.get_request(request_id)
    if request is None:
        raise NotFoundError(MSG_REQUEST_NOT_FOUND)
    return VerificationResult(
        is_valid=request.status == SignatureRequestStatus.completed.value,
        request_id=request.id,
        document_id=request.document_id,
        document_title=request.document_title,
        status=request.status,
        verified_at=as_utc(workflow.clock()),
        signers=[
            SignerVerification(name=s.name, email=s.email, status=s.status, signed_at=as_utc(s.signed_at))
            for s in request.signers
        ],
    )
