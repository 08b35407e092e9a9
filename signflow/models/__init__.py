"""
All SQLAlchemy models. Schema is the source of truth for new DBs.
Base.metadata.create_all() creates every table; no migration scripts needed for fresh installs.
"""
from signflow.models.signature_request import (
    SignatureRequest,
    SignatureSigner,
    SignatureRequestStatus,
    SignerStatus,
    SignatureType,
    TERMINAL_REQUEST_STATUSES,
)
from signflow.models.signing_token import SigningToken
from signflow.models.audit_log import SignatureAuditLog

__all__ = [
    "SignatureRequest",
    "SignatureSigner",
    "SignatureRequestStatus",
    "SignerStatus",
    "SignatureType",
    "TERMINAL_REQUEST_STATUSES",
    "SigningToken",
    "SignatureAuditLog",
]
