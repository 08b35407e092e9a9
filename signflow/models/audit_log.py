"""Append-only audit trail for signature requests.
No updates or deletes - every record is permanent."""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, UniqueConstraint
from signflow.database import Base


class SignatureAuditLog(Base):
    __tablename__ = "signature_audit_logs"
    __table_args__ = (UniqueConstraint("request_id", "sequence", name="uq_signature_audit_logs_request_sequence"),)

    id = Column(Integer, primary_key=True, index=True)

    request_id = Column(String(36), ForeignKey("signature_requests.id"), nullable=False, index=True)
    # 1-based insertion order within one request
    sequence = Column(Integer, nullable=False)

    # REQUEST_CREATED | SIGNATURE_SUBMITTED | SIGNATURE_DECLINED | REQUEST_CANCELLED | ...
    action = Column(String(32), nullable=False, index=True)

    # "system" or the signer's email
    actor = Column(String(255), nullable=False)

    # Request context for legal weight
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    details = Column(Text, nullable=True)
    meta = Column(JSON, nullable=True)

    # UTC, from the workflow clock; never decreases within a request
    created_at = Column(DateTime(timezone=True), nullable=False)
