from celery import Celery
from celery.schedules import crontab

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("pipeline_api", broker=settings.redis_url, backend=settings.redis_url, include=["app.tasks"])
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "due-date-tick": {"task": "app.tasks.due_date_tick", "schedule": crontab(minute=0)},
    "sla-sweep": {"task": "app.tasks.sla_sweep", "schedule": crontab(minute="*/15")},
    "daily-digests": {"task": "app.tasks.send_daily_digests", "schedule": crontab(hour=8, minute=0)},
    "weekly-digests": {
        "task": "app.tasks.send_weekly_digests",
        "schedule": crontab(hour=8, minute=0, day_of_week="mon"),
    },
    "archive-completed": {"task": "app.tasks.archive_completed_requests", "schedule": crontab(hour=3, minute=30)},
}
