from celery import Celery

from app.core.config import get_settings
from app.core.database import SessionLocal

settings = get_settings()

celery_app = Celery("quote_to_cash", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "expire-overdue-quotes": {
        "task": "revenue.expire_overdue_quotes",
        "schedule": float(settings.expiry_sweep_interval_seconds),
    },
    "expire-overdue-agreements": {
        "task": "revenue.expire_overdue_agreements",
        "schedule": float(settings.expiry_sweep_interval_seconds),
    },
    "send-signature-reminders": {
        "task": "revenue.send_signature_reminders",
        "schedule": float(settings.signature_reminder_interval_seconds),
    },
}


@celery_app.task(name="revenue.expire_overdue_quotes")
def expire_overdue_quotes_task() -> dict[str, int]:
    from app.business.revenue.jobs import expiry_sweeper

    session = SessionLocal()
    try:
        result = expiry_sweeper.expire_overdue_quotes(session)
    finally:
        session.close()
    return {"expired": result.expired, "skipped": result.skipped}


@celery_app.task(name="revenue.expire_overdue_agreements")
def expire_overdue_agreements_task() -> dict[str, int]:
    from app.business.revenue.jobs import expiry_sweeper

    session = SessionLocal()
    try:
        result = expiry_sweeper.expire_overdue_agreements(session)
    finally:
        session.close()
    return {"expired": result.expired, "skipped": result.skipped}


@celery_app.task(name="revenue.send_signature_reminders")
def send_signature_reminders_task() -> dict[str, int]:
    from app.business.revenue.jobs import signature_reminder

    session = SessionLocal()
    try:
        result = signature_reminder.send_reminders(session)
    finally:
        session.close()
    return {"reminded": result.reminded, "days_threshold": result.days_threshold}
