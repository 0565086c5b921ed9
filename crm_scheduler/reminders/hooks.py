"""
Side-effect hooks invoked by the dispatcher once an item has been claimed.

Both hooks raise on failure; the dispatcher turns that into a rollback.
"""
import logging
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from crm_scheduler.core.config import settings
from crm_scheduler.utils.timezone import to_local, to_utc, to_utc_aware
from .models import RecurringTask, Task, TaskReminder
from .recurrence_models import RecurrenceCalculator
from .repository import find_task_for_occurrence

logger = logging.getLogger(__name__)

NotifyHook = Callable[[TaskReminder], None]
InstantiateHook = Callable[[RecurringTask, datetime], None]


def build_notification_event(reminder: TaskReminder) -> Dict[str, Any]:
    trigger_utc = to_utc_aware(reminder.calculated_trigger_utc)
    task = reminder.task
    return {
        "reminder_id": str(reminder.id),
        "task_id": str(reminder.task_id),
        "title": task.title if task is not None else None,
        "assigned_to": task.assigned_to if task is not None else None,
        "contact_id": task.contact_id if task is not None else None,
        "anchor_kind": reminder.anchor_kind,
        "offset": f"{reminder.offset_value} {reminder.offset_unit} {reminder.offset_timing}",
        "timestamp_utc": trigger_utc.isoformat(),
        "timestamp_local": to_local(trigger_utc).isoformat(),
    }


class CeleryNotifier:
    """Publishes a fired reminder to the outbound notification queue; delivery happens downstream."""

    def __init__(
        self,
        celery_app=None,
        queue: Optional[str] = None,
        routing_key: Optional[str] = None,
        task_name: Optional[str] = None,
    ):
        if celery_app is None:
            from .celery_app import celery_app
        self.celery_app = celery_app
        self.queue = queue or settings.NOTIFY_QUEUE
        self.routing_key = routing_key or settings.NOTIFY_ROUTING_KEY
        self.task_name = task_name or settings.NOTIFY_TASK_NAME

    def __call__(self, reminder: TaskReminder) -> None:
        event = build_notification_event(reminder)
        self.celery_app.send_task(
            self.task_name,
            args=[event],
            queue=self.queue,
            routing_key=self.routing_key,
        )
        logger.info(f"📤 [Notify] Queued reminder {reminder.id} on {self.queue}")


def occurrence_day_bounds(occurrence_utc: datetime, tz=None) -> Tuple[datetime, datetime]:
    """UTC bounds of the civil calendar day containing ``occurrence_utc``."""
    day = datetime.combine(to_local(occurrence_utc, tz).date(), time.min)
    return to_utc(day, tz), to_utc(day + timedelta(days=1), tz)


class DatabaseTaskInstantiator:
    """Creates the task for one occurrence of a recurring template.

    At most one task is created per template per civil day, so a retried
    occurrence never produces a duplicate.
    """

    def __init__(self, session_factory: Callable[[], Session], tz=None):
        self.session_factory = session_factory
        self.tz = tz

    def __call__(self, schedule: RecurringTask, occurrence_utc: datetime) -> None:
        occurrence_utc = to_utc_aware(occurrence_utc)
        day_start, day_end = occurrence_day_bounds(occurrence_utc, self.tz)

        start_local, due_local = RecurrenceCalculator.occurrence_window(
            schedule.to_rule(), to_local(occurrence_utc, self.tz)
        )

        with self.session_factory() as db:
            existing = find_task_for_occurrence(db, schedule.id, day_start, day_end)
            if existing is not None:
                logger.info(
                    f"⏭️ [Instantiate] Task {existing.id} already exists for template {schedule.id} on {start_local.date()}"
                )
                return

            task = Task(
                recurring_task_id=schedule.id,
                title=schedule.title,
                description=schedule.description,
                contact_id=schedule.contact_id,
                assigned_to=schedule.assigned_to,
                priority=(schedule.priority or "medium").capitalize(),
                status="To Do",
                category=schedule.category or "Other",
                start_date=occurrence_utc,
                due_date=to_utc(due_local, self.tz),
                supporting_documents=list(schedule.supporting_docs or []),
                progress_percentage=0,
            )
            db.add(task)
            db.commit()
            logger.info(
                f"✅ [Instantiate] Created task {task.id} from template {schedule.id} "
                f"start={start_local} due={due_local}"
            )
