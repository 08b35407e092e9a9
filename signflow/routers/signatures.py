"""Signature request endpoints: create, sign/decline by token, cancel, verify, download."""
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from signflow.dependencies import get_signature_workflow
from signflow.schemas.signatures import (
    ActionResultResponse,
    AuditLogEntryResponse,
    SignatureCancel,
    SignatureDecline,
    SignatureRequestCreate,
    SignatureRequestListResponse,
    SignatureRequestResponse,
    SignatureSubmit,
    SigningSessionResponse,
    SignerResponse,
    SigningUrlResponse,
    SweepResponse,
    VerificationResponse,
)
from signflow.services.errors import ArtifactError, InvalidStateError, NotFoundError, PreconditionError, SignatureError
from signflow.services.signature_workflow import (
    MSG_INVALID_TOKEN,
    MSG_REQUEST_NOT_FOUND,
    DocumentInfo,
    SignatureData,
    SignatureWorkflow,
    SignerInput,
)
from signflow.services.signed_document import SignedDocumentOptions, generate_signed_document
from signflow.services.verification import verify_signature_request

router = APIRouter(prefix="/api/signatures", tags=["signatures"])


def _client_ip(req: Request) -> str | None:
    return (req.client.host if req.client else None) or None


def _user_agent(req: Request) -> str | None:
    return (req.headers.get("user-agent") or "").strip() or None


def _http_error(exc: SignatureError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, (InvalidStateError, ArtifactError)):
        return HTTPException(status_code=409, detail=exc.message)
    if isinstance(exc, PreconditionError):
        return HTTPException(status_code=400, detail=exc.message)
    return HTTPException(status_code=400, detail=exc.message)


def _get_or_404(workflow: SignatureWorkflow, request_id: str):
    request = workflow.get_request(request_id)
    if request is None:
        raise HTTPException(status_code=404, detail=MSG_REQUEST_NOT_FOUND)
    return request


@router.post("", response_model=SignatureRequestResponse, status_code=201)
def create_signature_request(
    data: SignatureRequestCreate,
    workflow: SignatureWorkflow = Depends(get_signature_workflow),
):
    try:
        return workflow.create_request(
            DocumentInfo(document_id=data.document_id, title=data.document_title, url=data.document_url),
            [
                SignerInput(email=str(s.email), name=s.name, user_id=s.user_id, order=s.order, required=s.required)
                for s in data.signers
            ],
            ttl_days=data.expires_in_days,
            message=data.message,
            redirect_url=data.redirect_url,
            webhook_url=data.webhook_url,
            draft=data.draft,
            sequential=data.sequential,
            created_by=data.created_by,
        )
    except SignatureError as e:
        raise _http_error(e)


@router.post("/sweep", response_model=SweepResponse)
def sweep_expired_requests(workflow: SignatureWorkflow = Depends(get_signature_workflow)):
    """Manually run the expiry sweep (normally scheduled)."""
    return SweepResponse(expired=workflow.sweep_expired())


@router.get("/users/{user_id}", response_model=SignatureRequestListResponse)
def list_user_signature_requests(
    user_id: str,
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    workflow: SignatureWorkflow = Depends(get_signature_workflow),
):
    requests, total = workflow.list_for_user(user_id, status=status, page=page, page_size=page_size)
    return SignatureRequestListResponse(
        requests=[SignatureRequestResponse.model_validate(r) for r in requests],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/users/{user_id}/pending", response_model=list[SignatureRequestResponse])
def list_user_pending_signatures(user_id: str, workflow: SignatureWorkflow = Depends(get_signature_workflow)):
    return workflow.list_pending_for_user(user_id)


@router.get("/sign/{token}", response_model=SigningSessionResponse)
def open_signing_link(token: str, workflow: SignatureWorkflow = Depends(get_signature_workflow)):
    info = workflow.verify_token(token)
    if info is None:
        raise HTTPException(status_code=404, detail=MSG_INVALID_TOKEN)
    request = workflow.get_request(info.request_id)
    signer = next((s for s in request.signers if s.id == info.signer_id), None) if request else None
    if signer is None:
        raise HTTPException(status_code=404, detail=MSG_INVALID_TOKEN)
    return SigningSessionResponse(
        request=SignatureRequestResponse.model_validate(request),
        signer=SignerResponse.model_validate(signer),
    )


@router.post("/sign/{token}", response_model=ActionResultResponse)
def submit_signature(
    token: str,
    req: Request,
    data: SignatureSubmit,
    workflow: SignatureWorkflow = Depends(get_signature_workflow),
):
    result = workflow.submit_signature(
        token,
        SignatureData(
            type=data.type,
            data=data.data,
            timestamp=data.timestamp,
            ip_address=_client_ip(req),
            user_agent=_user_agent(req),
        ),
    )
    if not result.success:
        raise HTTPException(status_code=400, detail=result.message)
    return ActionResultResponse(success=True, message=result.message, redirect_url=result.redirect_url)


@router.post("/sign/{token}/decline", response_model=ActionResultResponse)
def decline_signature(
    token: str,
    req: Request,
    data: SignatureDecline,
    workflow: SignatureWorkflow = Depends(get_signature_workflow),
):
    result = workflow.decline_signature(token, data.reason, _client_ip(req), _user_agent(req))
    if not result.success:
        raise HTTPException(status_code=400, detail=result.message)
    return ActionResultResponse(success=True, message=result.message, redirect_url=result.redirect_url)


@router.get("/{request_id}", response_model=SignatureRequestResponse)
def get_signature_request(request_id: str, workflow: SignatureWorkflow = Depends(get_signature_workflow)):
    return _get_or_404(workflow, request_id)


@router.post("/{request_id}/send", response_model=SignatureRequestResponse)
def send_signature_request(request_id: str, workflow: SignatureWorkflow = Depends(get_signature_workflow)):
    try:
        return workflow.send_request(request_id)
    except SignatureError as e:
        raise _http_error(e)


@router.post("/{request_id}/cancel", response_model=SignatureRequestResponse)
def cancel_signature_request(
    request_id: str,
    data: SignatureCancel | None = None,
    workflow: SignatureWorkflow = Depends(get_signature_workflow),
):
    try:
        cancelled = workflow.cancel_request(request_id, reason=data.reason if data else None)
    except SignatureError as e:
        raise _http_error(e)
    if not cancelled:
        raise HTTPException(status_code=404, detail=MSG_REQUEST_NOT_FOUND)
    return _get_or_404(workflow, request_id)


@router.post("/{request_id}/signers/{signer_id}/signing-url", response_model=SigningUrlResponse)
def create_signing_url(
    request_id: str,
    signer_id: str,
    workflow: SignatureWorkflow = Depends(get_signature_workflow),
):
    try:
        signing = workflow.generate_signing_url(request_id, signer_id)
    except SignatureError as e:
        raise _http_error(e)
    return SigningUrlResponse(url=signing.url, token=signing.token, expires_at=signing.expires_at)


@router.post("/{request_id}/signers/{signer_id}/remind", response_model=ActionResultResponse)
def remind_signer(
    request_id: str,
    signer_id: str,
    workflow: SignatureWorkflow = Depends(get_signature_workflow),
):
    if not workflow.send_reminder(request_id, signer_id):
        return ActionResultResponse(success=False, message="Reminder not sent: signer is not awaiting signature")
    return ActionResultResponse(success=True, message="Reminder sent")


@router.get("/{request_id}/audit-log", response_model=list[AuditLogEntryResponse])
def get_signature_audit_log(request_id: str, workflow: SignatureWorkflow = Depends(get_signature_workflow)):
    _get_or_404(workflow, request_id)
    return workflow.get_audit_log(request_id)


@router.get("/{request_id}/verification", response_model=VerificationResponse)
def verify_signature(request_id: str, workflow: SignatureWorkflow = Depends(get_signature_workflow)):
    try:
        return verify_signature_request(workflow, request_id)
    except SignatureError as e:
        raise _http_error(e)


@router.get("/{request_id}/download")
def download_signed_document(
    request_id: str,
    include_audit_trail: bool = Query(True),
    include_verification_qr: bool = Query(True),
    watermark: str | None = Query(None, max_length=64),
    workflow: SignatureWorkflow = Depends(get_signature_workflow),
):
    """Return the signed PDF of a completed request."""
    request = _get_or_404(workflow, request_id)
    options = SignedDocumentOptions(
        include_audit_trail=include_audit_trail,
        include_verification_qr=include_verification_qr,
        watermark=watermark,
    )
    try:
        document = generate_signed_document(request, workflow.get_audit_log(request_id), options, workflow.settings)
    except SignatureError as e:
        raise _http_error(e)
    return Response(
        content=document.pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{document.filename}"'},
    )
