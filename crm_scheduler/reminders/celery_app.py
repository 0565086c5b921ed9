from celery import Celery
from kombu import Exchange, Queue

from crm_scheduler.core.config import settings


celery_app = Celery(
    "crm_scheduler",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND or None,
)

exchange = Exchange("task-reminders", type="direct", durable=True)

celery_app.conf.update(
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    worker_prefetch_multiplier=1,
    include=["crm_scheduler.reminders.tasks"],
    task_queues=(
        Queue(settings.NOTIFY_QUEUE, exchange=exchange, routing_key=settings.NOTIFY_ROUTING_KEY, durable=True),
    ),
)

# One dispatcher tick per interval; overlapping ticks on several workers are safe because claims are atomic
celery_app.conf.beat_schedule = {
    "dispatch-tick": {
        "task": "reminders.dispatch_tick",
        "schedule": settings.TICK_INTERVAL_SECONDS,
    },
}
