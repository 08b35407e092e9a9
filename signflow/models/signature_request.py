"""Signature requests and their signers (one request owns N signers)."""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from signflow.database import Base
import enum


class SignatureRequestStatus(str, enum.Enum):
    draft = "DRAFT"
    pending = "PENDING"
    partially_signed = "PARTIALLY_SIGNED"
    completed = "COMPLETED"
    declined = "DECLINED"
    expired = "EXPIRED"
    cancelled = "CANCELLED"


class SignerStatus(str, enum.Enum):
    pending = "PENDING"
    signed = "SIGNED"
    declined = "DECLINED"
    expired = "EXPIRED"


class SignatureType(str, enum.Enum):
    drawn = "drawn"
    typed = "typed"
    uploaded = "uploaded"


TERMINAL_REQUEST_STATUSES = frozenset({
    SignatureRequestStatus.completed.value,
    SignatureRequestStatus.declined.value,
    SignatureRequestStatus.expired.value,
    SignatureRequestStatus.cancelled.value,
})


class SignatureRequest(Base):
    __tablename__ = "signature_requests"

    id = Column(String(36), primary_key=True)

    document_id = Column(String(100), nullable=False, index=True)
    document_title = Column(String(255), nullable=False)
    document_url = Column(String(1000), nullable=True)

    message = Column(Text, nullable=True)
    redirect_url = Column(String(1000), nullable=True)
    webhook_url = Column(String(1000), nullable=True)

    # DRAFT | PENDING | PARTIALLY_SIGNED | COMPLETED | DECLINED | EXPIRED | CANCELLED
    status = Column(String(32), nullable=False, default=SignatureRequestStatus.pending.value, index=True)

    # When set, signers must act in order_index order
    sequential = Column(Boolean, nullable=False, default=False)
    created_by = Column(String(100), nullable=True, index=True)

    # All timestamps come from the workflow clock (UTC)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)

    signers = relationship(
        "SignatureSigner",
        back_populates="request",
        order_by="SignatureSigner.order_index",
        cascade="all, delete-orphan",
    )


class SignatureSigner(Base):
    __tablename__ = "signature_signers"

    id = Column(String(36), primary_key=True)
    request_id = Column(String(36), ForeignKey("signature_requests.id"), nullable=False, index=True)

    user_id = Column(String(100), nullable=True, index=True)
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    order_index = Column(Integer, nullable=False, default=1)
    required = Column(Boolean, nullable=False, default=True)

    # PENDING | SIGNED | DECLINED | EXPIRED
    status = Column(String(20), nullable=False, default=SignerStatus.pending.value)

    # Captured on SIGNED
    signature_type = Column(String(20), nullable=True)  # drawn | typed | uploaded
    signature_data = Column(Text, nullable=True)  # data URL or typed text, opaque here
    signed_at = Column(DateTime(timezone=True), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    # Captured on DECLINED
    decline_reason = Column(Text, nullable=True)
    declined_at = Column(DateTime(timezone=True), nullable=True)

    request = relationship("SignatureRequest", back_populates="signers")
