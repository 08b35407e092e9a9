"""Signature request, signing and verification schemas."""
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


class SignerCreate(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)
    user_id: str | None = Field(None, max_length=100)
    order: int | None = Field(None, ge=1)
    required: bool = True


class SignatureRequestCreate(BaseModel):
    document_id: str = Field(..., min_length=1, max_length=100)
    document_title: str = Field(..., min_length=1, max_length=255)
    document_url: str | None = Field(None, max_length=1000)
    signers: list[SignerCreate] = Field(..., min_length=1)
    expires_in_days: int | None = Field(None, ge=0, le=365)
    message: str | None = None
    redirect_url: str | None = Field(None, max_length=1000)
    webhook_url: str | None = Field(None, max_length=1000)
    draft: bool = False
    sequential: bool = False
    created_by: str | None = Field(None, max_length=100)

    @model_validator(mode="after")
    def validate_unique_signers(self):
        emails = [str(s.email).lower() for s in self.signers]
        if len(set(emails)) != len(emails):
            raise ValueError("Each signer email may appear only once")
        return self


class SignerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str | None = None
    email: str
    name: str
    order_index: int
    required: bool
    status: str
    signature_type: str | None = None
    signed_at: datetime | None = None
    declined_at: datetime | None = None
    decline_reason: str | None = None


class SignatureRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    document_id: str
    document_title: str
    document_url: str | None = None
    status: str
    message: str | None = None
    redirect_url: str | None = None
    sequential: bool = False
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    signers: list[SignerResponse] = []


class SignatureRequestListResponse(BaseModel):
    requests: list[SignatureRequestResponse]
    total: int
    page: int
    page_size: int


class SigningUrlResponse(BaseModel):
    url: str
    token: str
    expires_at: datetime


class SigningSessionResponse(BaseModel):
    """What a signer sees when opening a signing link."""
    request: SignatureRequestResponse
    signer: SignerResponse


class SignatureSubmit(BaseModel):
    type: Literal["drawn", "typed", "uploaded"]
    data: str = Field(..., min_length=1)
    timestamp: datetime | None = None


class SignatureDecline(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class SignatureCancel(BaseModel):
    reason: str | None = Field(None, max_length=2000)


class ActionResultResponse(BaseModel):
    success: bool
    message: str
    redirect_url: str | None = None


class AuditLogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    created_at: datetime
    action: str
    actor: str
    ip_address: str | None = None
    details: str | None = None


class SignerVerificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    email: str
    status: str
    signed_at: datetime | None = None


class VerificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    is_valid: bool
    request_id: str
    document_id: str
    document_title: str
    status: str
    verified_at: datetime
    signers: list[SignerVerificationResponse]


class SweepResponse(BaseModel):
    expired: int
