"""Notification service: signer emails (Mailgun/SendGrid) and request webhooks.

Everything here is best effort. Failures are logged and swallowed so a
notification can never undo or fail the workflow transition that triggered it.
"""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from html import escape

import httpx

from signflow.config import Settings, get_settings

log = logging.getLogger("uvicorn.error")

EVENT_SIGNATURE_COMPLETED = "signature.completed"
EVENT_SIGNATURE_DECLINED = "signature.declined"
EVENT_REQUEST_COMPLETED = "request.completed"
EVENT_REQUEST_EXPIRED = "request.expired"

MAILGUN_US_BASE = "https://api.mailgun.net"


def send_email(to_email: str, subject: str, html_content: str, text_content: str | None = None) -> bool:
    """Send email via Mailgun (preferred) or SendGrid. Returns True if sent."""
    settings = get_settings()
    if settings.mailgun_api_key and settings.mailgun_domain:
        print(f"[Email] Calling Mailgun API: to={to_email} subject={subject} domain={settings.mailgun_domain}", flush=True)
        return _send_email_mailgun(to_email, subject, html_content, text_content=text_content, settings=settings)
    if settings.sendgrid_api_key:
        return _send_email_sendgrid(to_email, subject, html_content, text_content=text_content, settings=settings)
    print(f"[Email] NOT SENT: to={to_email} subject={subject}. Mailgun and SendGrid are not configured.", flush=True)
    return False


def _send_email_mailgun(to_email: str, subject: str, html_content: str, text_content: str | None = None, settings=None) -> bool:
    if settings is None:
        settings = get_settings()
    try:
        base = (settings.mailgun_base_url or MAILGUN_US_BASE).strip().rstrip("/")
        domain = (settings.mailgun_domain or "").strip().lower()
        from_addr = (settings.mailgun_from_email or "").strip()
        from_domain = from_addr.split("@")[-1].lower() if "@" in from_addr else ""
        if domain and from_domain != domain:
            from_addr = f"noreply@{domain}"
        data = {
            "from": f"{settings.mailgun_from_name} <{from_addr}>",
            "to": to_email,
            "subject": subject,
            "text": text_content or "",
            "html": html_content or "",
        }
        with httpx.Client(timeout=10.0) as client:
            r = client.post(f"{base}/v3/{domain}/messages", auth=("api", settings.mailgun_api_key), data=data)
        if 200 <= r.status_code < 300:
            print(f"[Mailgun] API success: to={to_email} status={r.status_code}", flush=True)
            return True
        print(f"[Mailgun] API failed: status={r.status_code} to={to_email} body={r.text[:500]}", flush=True)
        return False
    except Exception as e:
        print(f"[Mailgun] Exception: to={to_email} error={type(e).__name__}: {e}", flush=True)
        return False


def _send_email_sendgrid(to_email: str, subject: str, html_content: str, text_content: str | None = None, settings=None) -> bool:
    if settings is None:
        settings = get_settings()
    try:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Mail

        message = Mail(
            from_email=(settings.sendgrid_from_email, settings.sendgrid_from_name),
            to_emails=to_email,
            subject=subject,
            html_content=html_content,
            plain_text_content=text_content or "",
        )
        SendGridAPIClient(settings.sendgrid_api_key).send(message)
        return True
    except Exception as e:
        log.warning("SendGrid send failed to=%s: %s", to_email, e)
        return False


def send_signature_reminder_email(
    to_email: str,
    signer_name: str | None,
    document_title: str,
    request_url: str,
    message: str | None = None,
) -> bool:
    """Remind a signer that a document is still waiting for their signature."""
    name = (signer_name or "").strip() or "there"
    subject = f"[SignFlow] Reminder: please sign \"{document_title}\""
    note = f"\n\n{message}" if message else ""
    text = f"Hi {name}, \"{document_title}\" is still waiting for your signature: {request_url}{note}"
    note_html = f"<p>{escape(message)}</p>" if message else ""
    html = f"""
    <p>Hi {escape(name)},</p>
    <p><strong>{escape(document_title)}</strong> is still waiting for your signature.</p>
    {note_html}
    <p><a href="{escape(request_url)}">Open the signing request</a></p>
    <p>— SignFlow</p>
    """
    return send_email(to_email, subject, html, text_content=text)


def build_webhook_payload(
    event: str,
    request_id: str,
    document_id: str,
    timestamp: datetime,
    signer_id: str | None = None,
) -> dict:
    payload = {
        "event": event,
        "requestId": request_id,
        "documentId": document_id,
        "timestamp": timestamp.isoformat(),
    }
    if signer_id is not None:
        payload["signerId"] = signer_id
    return payload


def post_webhook(url: str, payload: dict, timeout: float = 5.0) -> bool:
    """POST one webhook payload. Returns True on a 2xx response; never raises."""
    try:
        r = httpx.post(url, json=payload, timeout=timeout)
        if 200 <= r.status_code < 300:
            return True
        log.warning("Webhook %s to %s returned status=%s", payload.get("event"), url, r.status_code)
        return False
    except Exception as e:
        log.warning("Webhook %s to %s failed: %s", payload.get("event"), url, e)
        return False


class Notifier:
    """Fire-and-forget dispatch of reminder emails and webhooks on a thread pool."""

    def __init__(self, settings: Settings | None = None, executor: ThreadPoolExecutor | None = None):
        self.settings = settings or get_settings()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.notification_max_workers,
            thread_name_prefix="signflow-notify",
        )

    def _submit(self, fn, *args) -> Future | None:
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError as e:
            # Executor already shut down (process exiting)
            log.warning("Notification dropped: %s", e)
            return None
        future.add_done_callback(self._log_failure)
        return future

    @staticmethod
    def _log_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            log.warning("Notification task failed: %s", exc)

    def send_webhook(self, url: str | None, payload: dict) -> None:
        if not url:
            return
        self._submit(post_webhook, url, payload, self.settings.webhook_timeout_seconds)

    def send_reminder(
        self,
        to_email: str,
        signer_name: str | None,
        document_title: str,
        request_url: str,
        message: str | None = None,
    ) -> None:
        self._submit(send_signature_reminder_email, to_email, signer_name, document_title, request_url, message)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
