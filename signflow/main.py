"""SignFlow – FastAPI application."""
# Load .env before any app code that might read config
from dotenv import load_dotenv
from pathlib import Path
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from signflow.config import get_settings
from signflow.database import Base, engine
# Import models so Base.metadata has all tables before create_all
from signflow.models import SignatureAuditLog, SignatureRequest, SignatureSigner, SigningToken  # noqa: F401
from signflow.routers import signatures

log = logging.getLogger("uvicorn.error")

settings = get_settings()
app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(signatures.router)

_scheduler = None


@app.on_event("startup")
def startup():
    global _scheduler
    if settings.mailgun_api_key and settings.mailgun_domain:
        print(f"[Mailgun] App using domain={settings.mailgun_domain} for signer reminders")
    elif not settings.sendgrid_api_key:
        print("[Email] Not configured - reminder emails will be skipped; set MAILGUN_* or SENDGRID_* in .env and restart")
    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        log.warning("Database startup failed (tables skipped). Check DATABASE_URL. Error: %s", e)

    if not settings.signature_sweep_enabled:
        return
    try:
        from apscheduler.schedulers.background import BackgroundScheduler
        from signflow.dependencies import get_notifier
        from signflow.services.expiry_sweep import run_signature_expiry_job

        _scheduler = BackgroundScheduler()
        _scheduler.add_job(
            run_signature_expiry_job,
            "interval",
            minutes=settings.signature_sweep_interval_minutes,
            kwargs={"notifier": get_notifier()},
            max_instances=1,
            coalesce=True,
        )
        _scheduler.start()
    except Exception as e:
        log.warning("Signature expiry scheduler not started: %s", e)


@app.on_event("shutdown")
def shutdown():
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
    from signflow.dependencies import get_notifier
    get_notifier().shutdown()


@app.get("/")
def root():
    return {"app": settings.app_name, "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}
