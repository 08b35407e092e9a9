"""Signature workflow engine: request and signer lifecycle for multi-party signing.

Every state-changing operation runs under the request's lock, writes its audit
entries in the same transaction as the state change, and dispatches webhooks
only after that transaction has committed.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from signflow.config import Settings, get_settings
from signflow.models.audit_log import SignatureAuditLog
from signflow.models.signature_request import (
    SignatureRequest,
    SignatureRequestStatus,
    SignatureSigner,
    SignatureType,
    SignerStatus,
    TERMINAL_REQUEST_STATUSES,
)
from signflow.services import audit_log
from signflow.services.clock import Clock, as_utc, utc_now
from signflow.services.errors import InvalidStateError, NotFoundError, PreconditionError, SignatureError
from signflow.services.notifications import (
    EVENT_REQUEST_COMPLETED,
    EVENT_REQUEST_EXPIRED,
    EVENT_SIGNATURE_COMPLETED,
    EVENT_SIGNATURE_DECLINED,
    Notifier,
    build_webhook_payload,
)
from signflow.services.request_locks import RequestLocks, request_locks
from signflow.services.signature_status import derive_status, is_past_expiry
from signflow.services.signing_tokens import (
    consume_token,
    issue_token,
    live_signer_token,
    purge_request_tokens,
    resolve_token,
)

log = logging.getLogger("uvicorn.error")

OPEN_STATUSES = frozenset({
    SignatureRequestStatus.pending.value,
    SignatureRequestStatus.partially_signed.value,
})

MSG_INVALID_TOKEN = "Signing link is invalid or expired"
MSG_REQUEST_NOT_FOUND = "Signature request not found"
MSG_REQUEST_CLOSED = "Signature request has expired or been cancelled"
MSG_REQUEST_FINISHED = "Signature request is already closed"
MSG_REQUEST_DRAFT = "Signature request has not been sent yet"
MSG_SIGNER_NOT_FOUND = "Signer not found"
MSG_ALREADY_ACTED = "You have already signed or declined this request"
MSG_OUT_OF_TURN = "Waiting for earlier signers to sign first"
MSG_INVALID_SIGNATURE = "Signature type or content is invalid"
MSG_SIGNED = "Signature submitted"
MSG_DECLINED = "Signature declined"

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class DocumentInfo:
    document_id: str
    title: str
    url: str | None = None


@dataclass(frozen=True)
class SignerInput:
    email: str
    name: str
    user_id: str | None = None
    order: int | None = None
    required: bool = True


@dataclass(frozen=True)
class SignatureData:
    type: str
    data: str
    timestamp: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class SigningUrl:
    url: str
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenInfo:
    request_id: str
    signer_id: str


@dataclass(frozen=True)
class ActionResult:
    success: bool
    message: str
    redirect_url: str | None = None


def _new_id() -> str:
    return str(uuid.uuid4())


class SignatureWorkflow:
    def __init__(
        self,
        db: Session,
        *,
        clock: Clock = utc_now,
        notifier: Notifier | None = None,
        locks: RequestLocks | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier
        self.locks = locks if locks is not None else request_locks
        self.settings = settings or get_settings()
        self._outbox: list[tuple[str, dict]] = []

    # --- plumbing -------------------------------------------------------

    def _now(self) -> datetime:
        return as_utc(self.clock())

    def _commit(self) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            self._outbox = []
            raise
        outbox, self._outbox = self._outbox, []
        for url, payload in outbox:
            self._dispatch_webhook(url, payload)

    @contextmanager
    def _locked(self, request_id: str):
        """Serialize work on one request and commit it as a single transaction."""
        with self.locks.hold(request_id):
            self._outbox = []
            try:
                yield
            except SignatureError:
                # Rejections are raised before any mutation; only lazy expiry may be pending
                self._commit()
                raise
            except Exception:
                self.db.rollback()
                self._outbox = []
                raise
            self._commit()

    def _dispatch_webhook(self, url: str, payload: dict) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.send_webhook(url, payload)
        except Exception as e:
            log.warning("Webhook dispatch for %s failed: %s", payload.get("requestId"), e)

    def _queue_webhook(self, request: SignatureRequest, event: str, now: datetime, signer_id: str | None = None) -> None:
        if not request.webhook_url:
            return
        payload = build_webhook_payload(event, request.id, request.document_id, now, signer_id=signer_id)
        self._outbox.append((request.webhook_url, payload))

    def _load(self, request_id: str) -> SignatureRequest | None:
        return (
            self.db.query(SignatureRequest)
            .filter(SignatureRequest.id == request_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    @staticmethod
    def _find_signer(request: SignatureRequest, signer_id: str) -> SignatureSigner | None:
        return next((s for s in request.signers if s.id == signer_id), None)

    @staticmethod
    def _is_signers_turn(request: SignatureRequest, signer: SignatureSigner) -> bool:
        if not request.sequential:
            return True
        return not any(
            other.order_index < signer.order_index and other.status == SignerStatus.pending.value
            for other in request.signers
            if other.id != signer.id
        )

    def _signing_url(self, token: str) -> str:
        return f"{self.settings.base_url}/sign/{token}"

    def _expire(self, request: SignatureRequest, now: datetime) -> None:
        request.status = SignatureRequestStatus.expired.value
        request.updated_at = now
        expired_signers = 0
        for signer in request.signers:
            if signer.status == SignerStatus.pending.value:
                signer.status = SignerStatus.expired.value
                expired_signers += 1
        purge_request_tokens(self.db, request.id)
        audit_log.append_entry(
            self.db,
            request.id,
            audit_log.ACTION_REQUEST_EXPIRED,
            details="Signature request expired",
            meta={"expires_at": request.expires_at, "expired_signers": expired_signers},
            now=now,
        )
        self._queue_webhook(request, EVENT_REQUEST_EXPIRED, now)

    def _refresh_expiry(self, request: SignatureRequest, now: datetime) -> bool:
        """Lazily move a stale request to EXPIRED. Returns True if it changed."""
        if request.status in TERMINAL_REQUEST_STATUSES:
            return False
        if not is_past_expiry(request.expires_at, now):
            return False
        self._expire(request, now)
        return True

    def _recompute_status(self, request: SignatureRequest, now: datetime) -> None:
        previous = request.status
        status = derive_status(request.signers, request.expires_at, now, previous)
        request.updated_at = now
        if status == previous:
            return
        request.status = status
        if status == SignatureRequestStatus.completed.value:
            request.completed_at = now
            purge_request_tokens(self.db, request.id)
            audit_log.append_entry(
                self.db,
                request.id,
                audit_log.ACTION_REQUEST_COMPLETED,
                details="All signers have signed",
                now=now,
            )
            self._queue_webhook(request, EVENT_REQUEST_COMPLETED, now)
        elif status == SignatureRequestStatus.declined.value:
            purge_request_tokens(self.db, request.id)
            audit_log.append_entry(
                self.db,
                request.id,
                audit_log.ACTION_REQUEST_DECLINED,
                details="Signature request closed after a decline",
                now=now,
            )

    def _stale_request_ids(self, now: datetime, request_ids: list[str] | None = None) -> list[str]:
        """Ids of non-terminal requests past expiry, read outside any request lock."""
        query = self.db.query(SignatureRequest.id).filter(
            SignatureRequest.status.notin_(sorted(TERMINAL_REQUEST_STATUSES)),
            SignatureRequest.expires_at <= now,
        )
        if request_ids is not None:
            query = query.filter(SignatureRequest.id.in_(request_ids))
        stale = [request_id for (request_id,) in query.all()]
        self.db.commit()
        return stale

    def _expire_stale(self, request_ids: list[str], now: datetime) -> int:
        count = 0
        for request_id in request_ids:
            with self._locked(request_id):
                request = self._load(request_id)
                if request is not None and self._refresh_expiry(request, now):
                    count += 1
        return count

    # --- operations -----------------------------------------------------

    def create_request(
        self,
        document: DocumentInfo,
        signers: list[SignerInput],
        ttl_days: int | None = None,
        message: str | None = None,
        redirect_url: str | None = None,
        webhook_url: str | None = None,
        *,
        draft: bool = False,
        sequential: bool = False,
        created_by: str | None = None,
    ) -> SignatureRequest:
        if not signers:
            raise PreconditionError("At least one signer is required")
        ttl = self.settings.signature_default_ttl_days if ttl_days is None else ttl_days
        if ttl < 0:
            raise PreconditionError("Expiry must not be negative")
        if not (document.document_id or "").strip() or not (document.title or "").strip():
            raise PreconditionError("Document id and title are required")

        now = self._now()
        request_id = _new_id()
        status = SignatureRequestStatus.draft.value if draft else SignatureRequestStatus.pending.value
        with self._locked(request_id):
            request = SignatureRequest(
                id=request_id,
                document_id=document.document_id.strip(),
                document_title=document.title.strip(),
                document_url=document.url,
                message=message,
                redirect_url=redirect_url,
                webhook_url=webhook_url,
                status=status,
                sequential=sequential,
                created_by=created_by,
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(days=ttl),
            )
            for index, signer in enumerate(signers, start=1):
                request.signers.append(
                    SignatureSigner(
                        id=_new_id(),
                        user_id=signer.user_id,
                        email=signer.email.strip().lower(),
                        name=signer.name.strip(),
                        order_index=signer.order if signer.order is not None else index,
                        required=signer.required,
                        status=SignerStatus.pending.value,
                    )
                )
            self.db.add(request)
            self.db.flush()
            audit_log.append_entry(
                self.db,
                request_id,
                audit_log.ACTION_REQUEST_CREATED,
                details=f"Signature request created with {len(signers)} signer(s)",
                meta={"document_id": request.document_id, "signer_count": len(signers), "status": status},
                now=now,
            )
        log.info("Signature request %s created for document %s", request_id, document.document_id)
        return request

    def send_request(self, request_id: str) -> SignatureRequest:
        """Move a DRAFT request to PENDING so signers can act on it."""
        now = self._now()
        with self._locked(request_id):
            request = self._load(request_id)
            if request is None:
                raise NotFoundError(MSG_REQUEST_NOT_FOUND)
            self._refresh_expiry(request, now)
            if request.status != SignatureRequestStatus.draft.value:
                raise InvalidStateError(f"Only draft requests can be sent (status is {request.status})")
            request.status = SignatureRequestStatus.pending.value
            request.updated_at = now
            audit_log.append_entry(
                self.db,
                request.id,
                audit_log.ACTION_REQUEST_SENT,
                details="Signature request sent to signers",
                now=now,
            )
        return request

    def get_request(self, request_id: str) -> SignatureRequest | None:
        now = self._now()
        with self._locked(request_id):
            request = self._load(request_id)
            if request is not None:
                self._refresh_expiry(request, now)
        return request

    def generate_signing_url(self, request_id: str, signer_id: str) -> SigningUrl:
        now = self._now()
        with self._locked(request_id):
            request = self._load(request_id)
            if request is None:
                raise NotFoundError(MSG_REQUEST_NOT_FOUND)
            self._refresh_expiry(request, now)
            signer = self._find_signer(request, signer_id)
            if signer is None:
                raise NotFoundError(MSG_SIGNER_NOT_FOUND)
            if signer.status != SignerStatus.pending.value:
                raise InvalidStateError(f"Signer status is {signer.status}, expected PENDING")
            if request.status == SignatureRequestStatus.draft.value:
                raise InvalidStateError(MSG_REQUEST_DRAFT)
            if request.status not in OPEN_STATUSES:
                raise InvalidStateError(MSG_REQUEST_FINISHED)
            if not self._is_signers_turn(request, signer):
                raise InvalidStateError(MSG_OUT_OF_TURN)

            row = issue_token(self.db, request, signer, now=now, ttl_hours=self.settings.signing_token_ttl_hours)
            audit_log.append_entry(
                self.db,
                request.id,
                audit_log.ACTION_SIGNING_URL_ISSUED,
                details=f"Signing link issued for {signer.email}",
                meta={"signer_id": signer.id, "expires_at": row.expires_at},
                now=now,
            )
            result = SigningUrl(url=self._signing_url(row.token), token=row.token, expires_at=as_utc(row.expires_at))
        return result

    def verify_token(self, token: str) -> TokenInfo | None:
        now = self._now()
        try:
            row = resolve_token(self.db, token, now=now)
            info = TokenInfo(request_id=row.request_id, signer_id=row.signer_id) if row is not None else None
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return info

    def _guard_signer_action(self, token: str, request_id: str, now: datetime):
        """Shared guards of submit and decline. Returns (request, signer, token_row) or an ActionResult."""
        row = resolve_token(self.db, token, now=now)
        if row is None or row.request_id != request_id:
            return ActionResult(False, MSG_INVALID_TOKEN)
        request = self._load(request_id)
        if request is None:
            return ActionResult(False, MSG_REQUEST_NOT_FOUND)
        self._refresh_expiry(request, now)
        if request.status in (SignatureRequestStatus.expired.value, SignatureRequestStatus.cancelled.value):
            return ActionResult(False, MSG_REQUEST_CLOSED)
        if request.status == SignatureRequestStatus.draft.value:
            return ActionResult(False, MSG_REQUEST_DRAFT)
        signer = self._find_signer(request, row.signer_id)
        if signer is None:
            return ActionResult(False, MSG_SIGNER_NOT_FOUND)
        if signer.status != SignerStatus.pending.value:
            return ActionResult(False, MSG_ALREADY_ACTED)
        if request.status not in OPEN_STATUSES:
            return ActionResult(False, MSG_REQUEST_FINISHED)
        if not self._is_signers_turn(request, signer):
            return ActionResult(False, MSG_OUT_OF_TURN)
        return request, signer, row

    def submit_signature(self, token: str, signature: SignatureData) -> ActionResult:
        info = self.verify_token(token)
        if info is None:
            return ActionResult(False, MSG_INVALID_TOKEN)

        valid_types = {t.value for t in SignatureType}
        if signature.type not in valid_types or not (signature.data or "").strip():
            return ActionResult(False, MSG_INVALID_SIGNATURE)

        now = self._now()
        with self._locked(info.request_id):
            guarded = self._guard_signer_action(token, info.request_id, now)
            if isinstance(guarded, ActionResult):
                result = guarded
            else:
                request, signer, row = guarded
                signer.status = SignerStatus.signed.value
                signer.signature_type = signature.type
                signer.signature_data = signature.data
                signer.signed_at = now
                signer.ip_address = signature.ip_address
                signer.user_agent = signature.user_agent[:500] if signature.user_agent else None
                consume_token(self.db, row)
                audit_log.append_entry(
                    self.db,
                    request.id,
                    audit_log.ACTION_SIGNATURE_SUBMITTED,
                    actor=signer.email,
                    ip_address=signature.ip_address,
                    user_agent=signature.user_agent,
                    details=f"{signer.name} signed the document",
                    meta={
                        "signer_id": signer.id,
                        "signature_type": signature.type,
                        "client_timestamp": signature.timestamp,
                    },
                    now=now,
                )
                self._queue_webhook(request, EVENT_SIGNATURE_COMPLETED, now, signer_id=signer.id)
                self._recompute_status(request, now)
                result = ActionResult(True, MSG_SIGNED, redirect_url=request.redirect_url)
        return result

    def decline_signature(
        self,
        token: str,
        reason: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ActionResult:
        info = self.verify_token(token)
        if info is None:
            return ActionResult(False, MSG_INVALID_TOKEN)

        now = self._now()
        with self._locked(info.request_id):
            guarded = self._guard_signer_action(token, info.request_id, now)
            if isinstance(guarded, ActionResult):
                result = guarded
            else:
                request, signer, row = guarded
                reason_clean = (reason or "").strip() or None
                signer.status = SignerStatus.declined.value
                signer.decline_reason = reason_clean
                signer.declined_at = now
                signer.ip_address = ip_address
                consume_token(self.db, row)
                audit_log.append_entry(
                    self.db,
                    request.id,
                    audit_log.ACTION_SIGNATURE_DECLINED,
                    actor=signer.email,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details=f"{signer.name} declined to sign: {reason_clean or 'no reason given'}",
                    meta={"signer_id": signer.id, "required": signer.required},
                    now=now,
                )
                self._queue_webhook(request, EVENT_SIGNATURE_DECLINED, now, signer_id=signer.id)
                self._recompute_status(request, now)
                result = ActionResult(True, MSG_DECLINED, redirect_url=request.redirect_url)
        return result

    def cancel_request(self, request_id: str, reason: str | None = None) -> bool:
        now = self._now()
        with self._locked(request_id):
            request = self._load(request_id)
            if request is None:
                return False
            self._refresh_expiry(request, now)
            if request.status == SignatureRequestStatus.completed.value:
                raise InvalidStateError("Completed signature requests cannot be cancelled")
            if request.status in TERMINAL_REQUEST_STATUSES:
                raise InvalidStateError(f"Signature request is already {request.status.lower()}")
            request.status = SignatureRequestStatus.cancelled.value
            request.cancelled_at = now
            request.cancel_reason = reason
            request.updated_at = now
            purge_request_tokens(self.db, request.id)
            audit_log.append_entry(
                self.db,
                request.id,
                audit_log.ACTION_REQUEST_CANCELLED,
                details=reason or "Signature request cancelled",
                now=now,
            )
        return True

    def sweep_expired(self) -> int:
        """Expire every open request past its expiry. Safe to run repeatedly and concurrently."""
        now = self._now()
        return self._expire_stale(self._stale_request_ids(now), now)

    def send_reminder(self, request_id: str, signer_id: str) -> bool:
        now = self._now()
        with self._locked(request_id):
            request = self._load(request_id)
            if request is None:
                return False
            self._refresh_expiry(request, now)
            signer = self._find_signer(request, signer_id)
            if request.status not in OPEN_STATUSES or signer is None:
                return False
            if signer.status != SignerStatus.pending.value or not self._is_signers_turn(request, signer):
                return False
            # Keep a link the signer may already hold; mint only when none is live
            row = live_signer_token(self.db, signer.id, now=now)
            reused = row is not None
            if row is None:
                row = issue_token(self.db, request, signer, now=now, ttl_hours=self.settings.signing_token_ttl_hours)
            audit_log.append_entry(
                self.db,
                request.id,
                audit_log.ACTION_REMINDER_SENT,
                details=f"Reminder sent to {signer.email}",
                meta={"signer_id": signer.id, "link_expires_at": row.expires_at, "link_reused": reused},
                now=now,
            )
            reminder = (signer.email, signer.name, request.document_title, self._signing_url(row.token), request.message)

        if self.notifier is not None:
            try:
                self.notifier.send_reminder(*reminder)
            except Exception as e:
                log.warning("Reminder dispatch for request %s failed: %s", request_id, e)
        return True

    def _user_request_ids(self, user_id: str) -> list[str]:
        return [
            request_id
            for (request_id,) in self.db.query(SignatureSigner.request_id)
            .filter(SignatureSigner.user_id == user_id)
            .distinct()
            .all()
        ]

    def _expire_stale_for_user(self, user_id: str, now: datetime) -> list[str]:
        request_ids = self._user_request_ids(user_id)
        if request_ids:
            self._expire_stale(self._stale_request_ids(now, request_ids), now)
        return request_ids

    def list_for_user(
        self,
        user_id: str,
        status: str | None = None,
        page: int = 1,
        page_size: int = 10,
    ) -> tuple[list[SignatureRequest], int]:
        """Requests where user_id appears among the signers, newest first."""
        if page < 1 or page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise PreconditionError(f"page must be >= 1 and page_size between 1 and {MAX_PAGE_SIZE}")
        request_ids = self._expire_stale_for_user(user_id, self._now())
        if not request_ids:
            return [], 0
        query = self.db.query(SignatureRequest).filter(SignatureRequest.id.in_(request_ids))
        if status:
            query = query.filter(SignatureRequest.status == status)
        total = query.count()
        requests = (
            query.order_by(SignatureRequest.created_at.desc(), SignatureRequest.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return requests, total

    def list_pending_for_user(self, user_id: str) -> list[SignatureRequest]:
        """Open requests still waiting on this user's signature."""
        self._expire_stale_for_user(user_id, self._now())
        return (
            self.db.query(SignatureRequest)
            .join(SignatureSigner, SignatureSigner.request_id == SignatureRequest.id)
            .filter(
                SignatureSigner.user_id == user_id,
                SignatureSigner.status == SignerStatus.pending.value,
                SignatureRequest.status.in_(sorted(OPEN_STATUSES)),
            )
            .order_by(SignatureRequest.created_at.desc())
            .distinct()
            .all()
        )

    def get_audit_log(self, request_id: str) -> list[SignatureAuditLog]:
        return audit_log.read_entries(self.db, request_id)
