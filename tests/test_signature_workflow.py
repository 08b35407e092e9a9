"""Signature workflow engine: lifecycle, tokens, expiry, ordering, audit and webhooks."""
from datetime import timedelta

import pytest

from signflow.models import SignatureAuditLog, SigningToken
from signflow.services.errors import InvalidStateError, NotFoundError, PreconditionError
from signflow.services.signature_workflow import (
    MSG_ALREADY_ACTED,
    MSG_INVALID_SIGNATURE,
    MSG_INVALID_TOKEN,
    MSG_OUT_OF_TURN,
    MSG_REQUEST_CLOSED,
    DocumentInfo,
    SignatureData,
    SignerInput,
)
from signflow.services.signed_document import generate_signed_document
from signflow.services.errors import ArtifactError

TYPED = SignatureData(type="typed", data="Alice Example", ip_address="10.0.0.1", user_agent="pytest")


def _actions(workflow, request_id):
    return [e.action for e in workflow.get_audit_log(request_id)]


def _token(workflow, request, index):
    return workflow.generate_signing_url(request.id, request.signers[index].id).token


# --- create -----------------------------------------------------------------

def test_create_request_is_pending_with_normalized_signers(workflow, document, two_signers, clock):
    request = workflow.create_request(document, two_signers, ttl_days=7, message="Please sign")

    assert request.status == "PENDING"
    assert [s.email for s in request.signers] == ["alice@example.com", "bob@example.com"]
    assert [s.order_index for s in request.signers] == [1, 2]
    assert all(s.status == "PENDING" for s in request.signers)
    assert request.expires_at.replace(tzinfo=None) == (clock.now + timedelta(days=7)).replace(tzinfo=None)
    assert _actions(workflow, request.id) == ["REQUEST_CREATED"]


def test_create_uses_default_ttl(workflow, document, two_signers, clock, settings):
    request = workflow.create_request(document, two_signers)
    expected = clock.now + timedelta(days=settings.signature_default_ttl_days)
    assert request.expires_at.replace(tzinfo=None) == expected.replace(tzinfo=None)


def test_create_without_signers_persists_nothing(workflow, document, db):
    with pytest.raises(PreconditionError):
        workflow.create_request(document, [])
    assert db.query(SignatureAuditLog).count() == 0


def test_create_rejects_negative_ttl_and_blank_document(workflow, document, two_signers):
    with pytest.raises(PreconditionError):
        workflow.create_request(document, two_signers, ttl_days=-1)
    with pytest.raises(PreconditionError):
        workflow.create_request(DocumentInfo(document_id=" ", title="x"), two_signers)


def test_get_unknown_request_returns_none(workflow):
    assert workflow.get_request("missing") is None


# --- happy path ---------------------------------------------------------------

def test_two_signers_reach_completed(workflow, document, two_signers, notifier):
    request = workflow.create_request(document, two_signers, ttl_days=7, webhook_url="https://hooks.example.test/sf")
    token_a = _token(workflow, request, 0)
    token_b = _token(workflow, request, 1)
    entries_before = len(workflow.get_audit_log(request.id))

    result = workflow.submit_signature(token_a, TYPED)
    assert result.success
    request = workflow.get_request(request.id)
    assert request.status == "PARTIALLY_SIGNED"
    assert len(workflow.get_audit_log(request.id)) == entries_before + 1

    with pytest.raises(ArtifactError):
        generate_signed_document(request, workflow.get_audit_log(request.id))

    assert workflow.submit_signature(token_b, SignatureData(type="typed", data="Bob")).success
    request = workflow.get_request(request.id)
    assert request.status == "COMPLETED"
    assert request.completed_at is not None
    assert all(s.status == "SIGNED" and s.signed_at is not None for s in request.signers)
    assert _actions(workflow, request.id)[-2:] == ["SIGNATURE_SUBMITTED", "REQUEST_COMPLETED"]

    document_pdf = generate_signed_document(request, workflow.get_audit_log(request.id))
    assert document_pdf.pdf_bytes.startswith(b"%PDF")

    again = workflow.submit_signature(token_b, SignatureData(type="typed", data="Bob"))
    assert not again.success
    assert again.message == MSG_INVALID_TOKEN

    assert notifier.events() == ["signature.completed", "signature.completed", "request.completed"]
    url, payload = notifier.webhooks[-1]
    assert url == "https://hooks.example.test/sf"
    assert payload["requestId"] == request.id
    assert payload["documentId"] == "doc-42"
    assert "signerId" not in payload


def test_submit_records_signer_details(workflow, document, two_signers, clock):
    request = workflow.create_request(document, two_signers, redirect_url="https://app.example.test/done")
    token = _token(workflow, request, 0)
    clock.advance(hours=1)
    result = workflow.submit_signature(token, TYPED)
    assert result.redirect_url == "https://app.example.test/done"

    signer = workflow.get_request(request.id).signers[0]
    assert signer.signature_type == "typed"
    assert signer.signature_data == "Alice Example"
    assert signer.ip_address == "10.0.0.1"
    assert signer.user_agent == "pytest"
    assert signer.signed_at.replace(tzinfo=None) == clock.now.replace(tzinfo=None)

    entry = workflow.get_audit_log(request.id)[-1]
    assert entry.action == "SIGNATURE_SUBMITTED"
    assert entry.actor == "alice@example.com"
    assert entry.ip_address == "10.0.0.1"


def test_submit_rejects_invalid_signature_payload(workflow, document, two_signers):
    request = workflow.create_request(document, two_signers)
    token = _token(workflow, request, 0)
    assert workflow.submit_signature(token, SignatureData(type="stamp", data="x")).message == MSG_INVALID_SIGNATURE
    assert workflow.submit_signature(token, SignatureData(type="typed", data="  ")).message == MSG_INVALID_SIGNATURE
    # Token survives a rejected payload
    assert workflow.submit_signature(token, TYPED).success


def test_unknown_token_is_invalid(workflow):
    result = workflow.submit_signature("nope", TYPED)
    assert not result.success
    assert result.message == MSG_INVALID_TOKEN
    assert workflow.verify_token("nope") is None


# --- tokens -----------------------------------------------------------------

def test_verify_token_resolves_request_and_signer(workflow, document, two_signers, settings):
    request = workflow.create_request(document, two_signers)
    signing = workflow.generate_signing_url(request.id, request.signers[1].id)

    assert signing.url == f"{settings.base_url}/sign/{signing.token}"
    info = workflow.verify_token(signing.token)
    assert info.request_id == request.id
    assert info.signer_id == request.signers[1].id


def test_new_signing_url_revokes_previous_token(workflow, document, two_signers):
    request = workflow.create_request(document, two_signers)
    first = _token(workflow, request, 0)
    second = _token(workflow, request, 0)

    assert workflow.verify_token(first) is None
    assert workflow.submit_signature(first, TYPED).message == MSG_INVALID_TOKEN
    assert workflow.submit_signature(second, TYPED).success


def test_token_ttl_expires_independently(workflow, document, two_signers, clock, settings):
    request = workflow.create_request(document, two_signers, ttl_days=7)
    token = _token(workflow, request, 0)
    clock.advance(hours=settings.signing_token_ttl_hours, seconds=1)

    assert workflow.verify_token(token) is None
    assert workflow.submit_signature(token, TYPED).message == MSG_INVALID_TOKEN
    # A fresh link works while the request is still open
    assert workflow.submit_signature(_token(workflow, request, 0), TYPED).success


def test_token_expiry_capped_at_request_expiry(workflow, document, two_signers, clock):
    request = workflow.create_request(document, two_signers, ttl_days=0)
    clock.advance(seconds=-60)
    signing = workflow.generate_signing_url(request.id, request.signers[0].id)
    assert signing.expires_at.replace(tzinfo=None) == request.expires_at.replace(tzinfo=None)


def test_generate_signing_url_errors(workflow, document, two_signers):
    request = workflow.create_request(document, two_signers)
    with pytest.raises(NotFoundError):
        workflow.generate_signing_url("missing", request.signers[0].id)
    with pytest.raises(NotFoundError):
        workflow.generate_signing_url(request.id, "missing")

    workflow.submit_signature(_token(workflow, request, 0), TYPED)
    with pytest.raises(InvalidStateError):
        workflow.generate_signing_url(request.id, request.signers[0].id)


# --- expiry -----------------------------------------------------------------

def test_zero_ttl_request_expires_on_first_read(workflow, document, notifier):
    request = workflow.create_request(
        document,
        [SignerInput(email="solo@example.com", name="Solo")],
        ttl_days=0,
        webhook_url="https://hooks.example.test/sf",
    )

    request = workflow.get_request(request.id)
    assert request.status == "EXPIRED"
    assert request.signers[0].status == "EXPIRED"
    assert _actions(workflow, request.id) == ["REQUEST_CREATED", "REQUEST_EXPIRED"]
    assert notifier.events() == ["request.expired"]

    with pytest.raises(InvalidStateError):
        workflow.generate_signing_url(request.id, request.signers[0].id)


def test_submit_after_request_expiry_fails_with_live_token(workflow, document, two_signers, clock, db):
    request = workflow.create_request(document, two_signers, ttl_days=1)
    token = _token(workflow, request, 0)
    # Push the token's own expiry past the request's
    db.query(SigningToken).filter(SigningToken.token == token).update(
        {SigningToken.expires_at: clock.now + timedelta(days=5)}
    )
    db.commit()
    clock.advance(days=1)

    result = workflow.submit_signature(token, TYPED)
    assert not result.success
    assert result.message == MSG_REQUEST_CLOSED
    request = workflow.get_request(request.id)
    assert request.status == "EXPIRED"
    assert all(s.status == "EXPIRED" for s in request.signers)


def test_expiry_keeps_signed_signers(workflow, document, two_signers, clock):
    request = workflow.create_request(document, two_signers, ttl_days=1)
    workflow.submit_signature(_token(workflow, request, 0), TYPED)
    clock.advance(days=2)

    request = workflow.get_request(request.id)
    assert request.status == "EXPIRED"
    assert [s.status for s in request.signers] == ["SIGNED", "EXPIRED"]


def test_sweep_is_idempotent(workflow, document, two_signers, clock):
    stale = [workflow.create_request(document, two_signers, ttl_days=1) for _ in range(2)]
    fresh = workflow.create_request(document, two_signers, ttl_days=30)
    cancelled = workflow.create_request(document, two_signers, ttl_days=1)
    workflow.cancel_request(cancelled.id)
    clock.advance(days=2)

    assert workflow.sweep_expired() == 2
    assert workflow.sweep_expired() == 0
    for request in stale:
        assert workflow.get_request(request.id).status == "EXPIRED"
        assert _actions(workflow, request.id).count("REQUEST_EXPIRED") == 1
    assert workflow.get_request(fresh.id).status == "PENDING"
    assert workflow.get_request(cancelled.id).status == "CANCELLED"


# --- decline ----------------------------------------------------------------

def test_required_decline_closes_request(workflow, document, two_signers, notifier):
    request = workflow.create_request(document, two_signers, webhook_url="https://hooks.example.test/sf")
    token_a = _token(workflow, request, 0)
    token_b = _token(workflow, request, 1)

    result = workflow.decline_signature(token_a, "wrong document", ip_address="10.0.0.9")
    assert result.success
    request = workflow.get_request(request.id)
    assert request.status == "DECLINED"
    assert request.signers[0].status == "DECLINED"
    assert request.signers[0].decline_reason == "wrong document"
    assert request.signers[1].status == "PENDING"
    assert _actions(workflow, request.id)[-2:] == ["SIGNATURE_DECLINED", "REQUEST_DECLINED"]
    assert notifier.events() == ["signature.declined"]
    assert notifier.webhooks[0][1]["signerId"] == request.signers[0].id

    # B's outstanding link was purged with the terminal transition
    assert workflow.submit_signature(token_b, TYPED).message == MSG_INVALID_TOKEN


def test_optional_decline_is_non_blocking(workflow, document):
    request = workflow.create_request(
        document,
        [
            SignerInput(email="a@example.com", name="A", required=False),
            SignerInput(email="b@example.com", name="B"),
        ],
    )
    assert workflow.decline_signature(_token(workflow, request, 0), "not needed").success
    assert workflow.get_request(request.id).status == "PENDING"

    assert workflow.submit_signature(_token(workflow, request, 1), TYPED).success
    assert workflow.get_request(request.id).status == "COMPLETED"


def test_decline_twice_with_same_token_fails(workflow, document):
    request = workflow.create_request(
        document,
        [
            SignerInput(email="a@example.com", name="A", required=False),
            SignerInput(email="b@example.com", name="B"),
        ],
    )
    token = _token(workflow, request, 0)
    assert workflow.decline_signature(token, "no").success
    assert workflow.decline_signature(token, "no").message == MSG_INVALID_TOKEN


# --- terminal states ------------------------------------------------------------

def test_cancel_blocks_further_actions(workflow, document, two_signers):
    request = workflow.create_request(document, two_signers)
    token = _token(workflow, request, 0)

    assert workflow.cancel_request(request.id, reason="superseded")
    request = workflow.get_request(request.id)
    assert request.status == "CANCELLED"
    assert request.cancel_reason == "superseded"
    assert _actions(workflow, request.id)[-1] == "REQUEST_CANCELLED"

    assert not workflow.submit_signature(token, TYPED).success
    assert all(s.status == "PENDING" for s in workflow.get_request(request.id).signers)
    with pytest.raises(InvalidStateError):
        workflow.cancel_request(request.id)


def test_cancel_completed_request_is_rejected(workflow, document):
    request = workflow.create_request(document, [SignerInput(email="a@example.com", name="A")])
    workflow.submit_signature(_token(workflow, request, 0), TYPED)

    with pytest.raises(InvalidStateError):
        workflow.cancel_request(request.id)
    assert workflow.get_request(request.id).status == "COMPLETED"


def test_cancel_missing_request_returns_false(workflow):
    assert workflow.cancel_request("missing") is False


def test_signed_signer_cannot_act_again(workflow, document, two_signers, db):
    request = workflow.create_request(document, two_signers)
    token = _token(workflow, request, 0)
    workflow.submit_signature(token, TYPED)

    # Re-issue a token row directly to reach the signer-state guard
    db.add(SigningToken(
        token="manual-token",
        request_id=request.id,
        signer_id=request.signers[0].id,
        expires_at=request.expires_at,
        created_at=request.created_at,
    ))
    db.commit()
    assert workflow.submit_signature("manual-token", TYPED).message == MSG_ALREADY_ACTED


# --- drafts and ordering ----------------------------------------------------------

def test_draft_must_be_sent_before_signing(workflow, document, two_signers):
    request = workflow.create_request(document, two_signers, draft=True)
    assert request.status == "DRAFT"
    with pytest.raises(InvalidStateError):
        workflow.generate_signing_url(request.id, request.signers[0].id)

    request = workflow.send_request(request.id)
    assert request.status == "PENDING"
    assert _actions(workflow, request.id) == ["REQUEST_CREATED", "REQUEST_SENT"]
    with pytest.raises(InvalidStateError):
        workflow.send_request(request.id)
    assert workflow.submit_signature(_token(workflow, request, 0), TYPED).success


def test_sequential_requests_enforce_order(workflow, document, two_signers):
    request = workflow.create_request(document, two_signers, sequential=True)
    with pytest.raises(InvalidStateError) as exc:
        workflow.generate_signing_url(request.id, request.signers[1].id)
    assert exc.value.message == MSG_OUT_OF_TURN
    assert workflow.send_reminder(request.id, request.signers[1].id) is False

    workflow.submit_signature(_token(workflow, request, 0), TYPED)
    assert workflow.submit_signature(_token(workflow, request, 1), TYPED).success
    assert workflow.get_request(request.id).status == "COMPLETED"


def test_parallel_requests_accept_any_order(workflow, document, two_signers):
    request = workflow.create_request(document, two_signers)
    assert workflow.submit_signature(_token(workflow, request, 1), TYPED).success
    assert workflow.get_request(request.id).status == "PARTIALLY_SIGNED"


def test_explicit_order_is_respected(workflow, document):
    request = workflow.create_request(
        document,
        [
            SignerInput(email="second@example.com", name="Second", order=2),
            SignerInput(email="first@example.com", name="First", order=1),
        ],
        sequential=True,
    )
    assert [s.email for s in request.signers] == ["first@example.com", "second@example.com"]
    assert workflow.submit_signature(_token(workflow, request, 0), TYPED).success


# --- reminders --------------------------------------------------------------------

def test_reminder_reuses_live_link(workflow, document, two_signers, notifier, settings):
    request = workflow.create_request(document, two_signers, message="Thanks!")
    old = _token(workflow, request, 0)

    assert workflow.send_reminder(request.id, request.signers[0].id) is True
    to_email, name, title, url, message = notifier.reminders[0]
    assert (to_email, name, title, message) == ("alice@example.com", "Alice", "Lease Agreement", "Thanks!")
    assert url == f"{settings.base_url}/sign/{old}"
    assert workflow.verify_token(old) is not None
    entry = workflow.get_audit_log(request.id)[-1]
    assert entry.action == "REMINDER_SENT"
    assert entry.meta["link_reused"] is True


def test_reminder_without_delivery_keeps_issued_link(db, clock, document, two_signers, settings):
    from signflow.services.request_locks import RequestLocks
    from signflow.services.signature_workflow import SignatureWorkflow

    workflow = SignatureWorkflow(db, clock=clock, notifier=None, locks=RequestLocks(), settings=settings)
    request = workflow.create_request(document, two_signers)
    old = _token(workflow, request, 0)

    assert workflow.send_reminder(request.id, request.signers[0].id) is True
    assert workflow.verify_token(old) is not None
    assert workflow.submit_signature(old, TYPED).success


def test_reminder_mints_link_when_none_is_live(workflow, document, two_signers, notifier, clock, settings):
    request = workflow.create_request(document, two_signers)
    stale = _token(workflow, request, 0)
    clock.advance(hours=settings.signing_token_ttl_hours, seconds=1)

    assert workflow.send_reminder(request.id, request.signers[0].id) is True
    url = notifier.reminders[0][3]
    fresh = url.rsplit("/", 1)[-1]
    assert fresh != stale
    assert workflow.verify_token(fresh) is not None
    assert workflow.get_audit_log(request.id)[-1].meta["link_reused"] is False


def test_reminder_skips_finished_signers_and_requests(workflow, document, two_signers, notifier):
    request = workflow.create_request(document, two_signers)
    workflow.submit_signature(_token(workflow, request, 0), TYPED)

    assert workflow.send_reminder(request.id, request.signers[0].id) is False
    assert workflow.send_reminder("missing", request.signers[0].id) is False
    workflow.cancel_request(request.id)
    assert workflow.send_reminder(request.id, request.signers[1].id) is False
    assert notifier.reminders == []


# --- listings ---------------------------------------------------------------------

def test_list_for_user_paginates_newest_first(workflow, document, two_signers, clock):
    created = []
    for _ in range(3):
        created.append(workflow.create_request(document, two_signers))
        clock.advance(minutes=1)

    requests, total = workflow.list_for_user("user-a", page=1, page_size=2)
    assert total == 3
    assert [r.id for r in requests] == [created[2].id, created[1].id]
    requests, _ = workflow.list_for_user("user-a", page=2, page_size=2)
    assert [r.id for r in requests] == [created[0].id]

    assert workflow.list_for_user("nobody") == ([], 0)
    with pytest.raises(PreconditionError):
        workflow.list_for_user("user-a", page=0)


def test_list_for_user_filters_by_status_and_expires_lazily(workflow, document, two_signers, clock):
    short = workflow.create_request(document, two_signers, ttl_days=1)
    long = workflow.create_request(document, two_signers, ttl_days=30)
    clock.advance(days=2)

    expired, total = workflow.list_for_user("user-b", status="EXPIRED")
    assert total == 1
    assert expired[0].id == short.id
    pending, _ = workflow.list_for_user("user-b", status="PENDING")
    assert [r.id for r in pending] == [long.id]


def test_list_pending_for_user(workflow, document, two_signers):
    first = workflow.create_request(document, two_signers)
    second = workflow.create_request(document, two_signers)
    workflow.submit_signature(_token(workflow, first, 0), TYPED)

    pending_a = workflow.list_pending_for_user("user-a")
    assert [r.id for r in pending_a] == [second.id]
    pending_b = {r.id for r in workflow.list_pending_for_user("user-b")}
    assert pending_b == {first.id, second.id}


# --- audit trail --------------------------------------------------------------------

def test_audit_trail_is_ordered_and_append_only(workflow, document, two_signers, clock):
    request = workflow.create_request(document, two_signers)
    token = _token(workflow, request, 0)
    clock.advance(minutes=5)
    workflow.submit_signature(token, TYPED)
    before = [(e.sequence, e.action) for e in workflow.get_audit_log(request.id)]
    workflow.cancel_request(request.id)

    entries = workflow.get_audit_log(request.id)
    assert [(e.sequence, e.action) for e in entries][: len(before)] == before
    assert [e.sequence for e in entries] == list(range(1, len(entries) + 1))
    stamps = [e.created_at for e in entries]
    assert stamps == sorted(stamps)


def test_webhook_failure_does_not_fail_operation(db, clock, document, two_signers, settings):
    from signflow.services.request_locks import RequestLocks
    from signflow.services.signature_workflow import SignatureWorkflow

    class ExplodingNotifier:
        def send_webhook(self, url, payload):
            raise RuntimeError("boom")

    workflow = SignatureWorkflow(db, clock=clock, notifier=ExplodingNotifier(), locks=RequestLocks(), settings=settings)
    request = workflow.create_request(document, two_signers, webhook_url="https://hooks.example.test/sf")
    assert workflow.submit_signature(_token(workflow, request, 0), TYPED).success
    assert workflow.get_request(request.id).status == "PARTIALLY_SIGNED"


def test_failed_storage_rolls_back_signature(workflow, document, two_signers, monkeypatch):
    from signflow.services import audit_log

    request = workflow.create_request(document, two_signers)
    token = _token(workflow, request, 0)

    def _broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(audit_log, "append_entry", _broken)
    with pytest.raises(RuntimeError):
        workflow.submit_signature(token, TYPED)
    monkeypatch.undo()

    request = workflow.get_request(request.id)
    assert request.signers[0].status == "PENDING"
    assert workflow.verify_token(token) is not None
