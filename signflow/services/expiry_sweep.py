"""Expire signature requests that passed their expiry without completing."""
import logging

from sqlalchemy.orm import Session

from signflow.database import SessionLocal
from signflow.services.notifications import Notifier
from signflow.services.signature_workflow import SignatureWorkflow

log = logging.getLogger("uvicorn.error")


def run_signature_expiry_job(notifier: Notifier | None = None) -> int:
    """Scheduled sweep: mark stale requests EXPIRED and cascade their pending signers."""
    db: Session = SessionLocal()
    try:
        count = SignatureWorkflow(db, notifier=notifier).sweep_expired()
        if count:
            log.info("Signature expiry sweep: expired %d request(s).", count)
        return count
    finally:
        db.close()
