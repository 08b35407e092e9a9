"""Shared dependencies: DB session, clock, notifier, signature workflow."""
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from signflow.config import get_settings
from signflow.database import get_db
from signflow.services.clock import Clock, utc_now
from signflow.services.notifications import Notifier
from signflow.services.request_locks import request_locks
from signflow.services.signature_workflow import SignatureWorkflow


def get_clock() -> Clock:
    return utc_now


@lru_cache
def get_notifier() -> Notifier:
    return Notifier(get_settings())


def get_signature_workflow(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
) -> SignatureWorkflow:
    return SignatureWorkflow(db, clock=clock, notifier=notifier, locks=request_locks, settings=get_settings())
