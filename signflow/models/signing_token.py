"""Single-use signing tokens binding a signing URL to one (request, signer) pair."""
from sqlalchemy import Column, String, DateTime, ForeignKey
from signflow.database import Base


class SigningToken(Base):
    __tablename__ = "signing_tokens"

    token = Column(String(128), primary_key=True)
    request_id = Column(String(36), ForeignKey("signature_requests.id"), nullable=False, index=True)
    signer_id = Column(String(36), ForeignKey("signature_signers.id"), nullable=False, index=True)

    # min(request.expires_at, issued + token TTL); checked lazily on use
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
