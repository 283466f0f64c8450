from datetime import timedelta

from celery import Celery

from app.config import settings

celery_app = Celery(
    "campus_messaging",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["app.tasks.notification_tasks"],
)

celery_app.conf.beat_schedule = {
    "redeliver-pending-notifications": {
        "task": "app.tasks.notification_tasks.redeliver_pending_notifications",
        "schedule": timedelta(minutes=5),
    },
}
