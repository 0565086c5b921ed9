"""
Write-time services for recurring task templates, tasks and task reminders.

Every create/edit validates the rule and recomputes the derived trigger
instant before it is stored, so the dispatcher only ever sees valid rows.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from crm_scheduler.utils.timezone import format_time_of_day, now_local, parse_time_of_day, to_local, to_utc, to_utc_aware
from .exceptions import ImmutableStateError, ItemBusyError, NotFoundError
from .metrics import recurring_tasks_created_total, reminders_created_total
from .models import RecurringTask, Task, TaskReminder, STATUS_CLAIMED, STATUS_PENDING
from .recurrence_models import RecurrenceCalculator, RecurrenceRule, RecurrenceType
from .reminder_models import AnchorKind, ReminderCalculator, ReminderRule, OffsetTiming, OffsetUnit
from .repository import (
    apply_edit,
    dispatch_status_of,
    get_recurring_task,
    get_reminder,
    get_task,
    list_recurring_tasks,
    list_task_reminders,
    list_unsent_reminders,
)
from .schemas import (
    OccurrencePreview,
    RecurringTaskCreate,
    RecurringTaskUpdate,
    TaskCreate,
    TaskDatesUpdate,
    TaskReminderCreate,
    TaskReminderUpdate,
)
from .validation import validate_recurrence, validate_reminder, validate_task_dates

logger = logging.getLogger(__name__)

# Fields that change when or how often a template fires
RULE_FIELDS = (
    "recurrence_type",
    "start_time",
    "due_time",
    "start_days",
    "due_days",
    "start_day_of_month",
    "due_day_of_month",
)

TEMPLATE_FIELDS = (
    "title",
    "description",
    "contact_id",
    "assigned_to",
    "priority",
    "category",
    "supporting_docs",
    "is_active",
) + RULE_FIELDS


def to_instant(value: Optional[datetime]) -> Optional[datetime]:
    """Naive request datetimes are civil wall-clock values; aware ones are instants."""
    if value is None:
        return None
    return to_utc(value)


def _normalize_template(values: Dict[str, Any]) -> Dict[str, Any]:
    """Lower-case the priority and null out rule fields the recurrence type does not use."""
    values = dict(values)
    if values.get("priority"):
        values["priority"] = values["priority"].lower()
    else:
        values["priority"] = "medium"
    for key in ("start_time", "due_time"):
        raw = values.get(key)
        if raw:
            try:
                values[key] = format_time_of_day(parse_time_of_day(str(raw)))
            except ValueError:
                # left as-is for validation to report
                pass
    recurrence_type = values.get("recurrence_type")
    if recurrence_type != RecurrenceType.WEEKLY.value:
        values["start_days"] = None
        values["due_days"] = None
    if recurrence_type != RecurrenceType.MONTHLY.value:
        values["start_day_of_month"] = None
        values["due_day_of_month"] = None
    if values.get("supporting_docs") is None:
        values["supporting_docs"] = []
    return values


class RecurringTaskService:
    """Creates and edits recurring task templates"""

    def __init__(self, db: Session):
        self.db = db

    def create_recurring_task(self, data: RecurringTaskCreate) -> RecurringTask:
        values = _normalize_template(data.model_dump())
        validate_recurrence(values)

        template = RecurringTask(**values)
        template.next_occurrence_utc = self._first_occurrence(template.to_rule())
        template.dispatch_status = STATUS_PENDING
        self.db.add(template)
        self.db.commit()
        self.db.refresh(template)

        recurring_tasks_created_total.labels(recurrence_type=template.recurrence_type).inc()
        logger.info(
            f"📅 [RecurringTask] Created {template.id} ({template.recurrence_type}), "
            f"next occurrence {template.next_occurrence_utc}"
        )
        return template

    def update_recurring_task(self, recurring_task_id: str, data: RecurringTaskUpdate) -> RecurringTask:
        template = self.get_recurring_task(recurring_task_id)
        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}

        current = {field: getattr(template, field) for field in TEMPLATE_FIELDS}
        merged = _normalize_template({**current, **changes})
        validate_recurrence(merged)

        rule_changed = any(merged[f] != current[f] for f in RULE_FIELDS)
        reactivated = merged["is_active"] and not current["is_active"]

        values = {field: merged[field] for field in TEMPLATE_FIELDS}
        if rule_changed or reactivated:
            values["next_occurrence_utc"] = self._first_occurrence(RecurrenceRule.from_dict(merged))

        # A Failed template goes back to Pending; a Claimed one is left to its dispatcher
        written = apply_edit(self.db, RecurringTask, recurring_task_id, values)
        self.db.commit()
        if written != 1:
            if dispatch_status_of(self.db, RecurringTask, recurring_task_id) is None:
                raise NotFoundError(f"Recurring task {recurring_task_id} not found")
            raise ItemBusyError(f"Recurring task {recurring_task_id} is being dispatched, retry shortly")

        self.db.expire(template)
        self.db.refresh(template)
        logger.info(
            f"✏️ [RecurringTask] Updated {template.id}: rule_changed={rule_changed} "
            f"reactivated={reactivated} next={template.next_occurrence_utc}"
        )
        return template

    def get_recurring_task(self, recurring_task_id: str) -> RecurringTask:
        template = get_recurring_task(self.db, recurring_task_id)
        if template is None:
            raise NotFoundError(f"Recurring task {recurring_task_id} not found")
        return template

    def list_recurring_tasks(self, **filters) -> List[RecurringTask]:
        return list_recurring_tasks(self.db, **filters)

    def preview_occurrences(self, recurring_task_id: str, count: int = 5) -> List[OccurrencePreview]:
        """Upcoming start/due pairs, beginning with the stored next occurrence."""
        template = self.get_recurring_task(recurring_task_id)
        rule = template.to_rule()
        if template.next_occurrence_utc is not None:
            first = to_local(template.next_occurrence_utc)
            starts = [first] + RecurrenceCalculator.upcoming_occurrences(rule, first, count - 1)
        else:
            starts = RecurrenceCalculator.upcoming_occurrences(rule, now_local(), count)

        previews = []
        for start_local in starts[:count]:
            due_local = RecurrenceCalculator.due_for_occurrence(rule, start_local)
            previews.append(
                OccurrencePreview(
                    start_utc=to_utc(start_local),
                    due_utc=to_utc(due_local),
                    start_local=start_local,
                    due_local=due_local,
                )
            )
        return previews

    @staticmethod
    def _first_occurrence(rule: RecurrenceRule) -> datetime:
        local = RecurrenceCalculator.next_occurrence(rule, now_local())
        return to_utc(local)


class TaskReminderService:
    """Tasks that reminders hang off, and the reminders themselves"""

    def __init__(self, db: Session):
        self.db = db

    # --- Tasks ---

    def create_task(self, data: TaskCreate) -> Task:
        start_date = to_instant(data.start_date)
        due_date = to_instant(data.due_date)
        validate_task_dates(start_date, due_date)

        task = Task(
            title=data.title,
            description=data.description,
            contact_id=data.contact_id,
            assigned_to=data.assigned_to,
            priority=data.priority,
            category=data.category,
            start_date=start_date,
            due_date=due_date,
        )
        self.db.add(task)
        self.db.commit()
        self.db.refresh(task)
        return task

    def get_task(self, task_id: str) -> Task:
        task = get_task(self.db, task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def update_task_dates(self, task_id: str, data: TaskDatesUpdate) -> Task:
        """Move a task's start/due dates and re-anchor every unsent reminder on it.

        An explicit ``null`` clears the date; reminders anchored on a cleared
        date make the move fail validation.
        """
        task = self.get_task(task_id)
        changes = data.model_dump(exclude_unset=True)
        start_date = to_instant(changes["start_date"]) if "start_date" in changes else to_utc_aware(task.start_date)
        due_date = to_instant(changes["due_date"]) if "due_date" in changes else to_utc_aware(task.due_date)
        validate_task_dates(start_date, due_date)

        reminders = list_unsent_reminders(self.db, task.id)
        triggers = {}
        for reminder in reminders:
            if reminder.anchor_kind == AnchorKind.CUSTOM.value:
                continue
            # raises ValidationError before anything is written if an anchor was cleared
            triggers[reminder.id] = ReminderCalculator.trigger_for_rule(reminder.to_rule(), start_date, due_date)

        task.start_date = start_date
        task.due_date = due_date
        retargeted = 0
        for reminder_id, trigger in triggers.items():
            written = apply_edit(
                self.db,
                TaskReminder,
                reminder_id,
                {"calculated_trigger_utc": trigger},
                TaskReminder.is_sent.is_(False),
            )
            if written == 1:
                retargeted += 1
            elif dispatch_status_of(self.db, TaskReminder, reminder_id) == STATUS_CLAIMED:
                self.db.rollback()
                raise ItemBusyError(f"Reminder {reminder_id} on task {task_id} is being dispatched, retry shortly")
            # otherwise it was sent after the scan and keeps its trigger

        self.db.commit()
        for reminder in reminders:
            self.db.expire(reminder)
        self.db.refresh(task)
        logger.info(f"🔁 [Task] {task.id} dates changed, re-anchored {retargeted} reminder(s)")
        return task

    # --- Reminders ---

    def create_reminder(self, task_id: str, data: TaskReminderCreate) -> TaskReminder:
        task = self.get_task(task_id)
        values = data.model_dump()
        validate_reminder(values)

        rule = self._rule_from_values(values)
        trigger = ReminderCalculator.trigger_for_rule(
            rule, to_utc_aware(task.start_date), to_utc_aware(task.due_date)
        )
        reminder = TaskReminder(
            task_id=task.id,
            anchor_kind=rule.anchor_kind.value,
            custom_datetime_utc=rule.custom_datetime_utc,
            offset_timing=rule.offset_timing.value,
            offset_value=rule.offset_value,
            offset_unit=rule.offset_unit.value,
            calculated_trigger_utc=trigger,
            is_sent=False,
            dispatch_status=STATUS_PENDING,
        )
        self.db.add(reminder)
        self.db.commit()
        self.db.refresh(reminder)

        reminders_created_total.labels(anchor_kind=reminder.anchor_kind).inc()
        logger.info(f"⏰ [TaskReminder] Created {reminder.id} for task {task.id}, fires at {trigger}")
        return reminder

    def list_reminders(self, task_id: str) -> List[TaskReminder]:
        self.get_task(task_id)
        return list_task_reminders(self.db, task_id)

    def get_reminder(self, reminder_id: str) -> TaskReminder:
        reminder = get_reminder(self.db, reminder_id)
        if reminder is None:
            raise NotFoundError(f"Reminder {reminder_id} not found")
        return reminder

    def update_reminder(self, reminder_id: str, data: TaskReminderUpdate) -> TaskReminder:
        reminder = self.get_reminder(reminder_id)
        if reminder.is_sent:
            raise ImmutableStateError(f"Reminder {reminder_id} has already been sent and cannot be edited")

        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
        current = {
            "anchor_kind": reminder.anchor_kind,
            "custom_datetime": to_utc_aware(reminder.custom_datetime_utc),
            "offset_timing": reminder.offset_timing,
            "offset_value": reminder.offset_value,
            "offset_unit": reminder.offset_unit,
        }
        values = {**current, **changes}
        validate_reminder(values)

        rule = self._rule_from_values(values)
        task = reminder.task
        trigger = ReminderCalculator.trigger_for_rule(
            rule, to_utc_aware(task.start_date), to_utc_aware(task.due_date)
        )

        written = apply_edit(
            self.db,
            TaskReminder,
            reminder_id,
            {
                "anchor_kind": rule.anchor_kind.value,
                "custom_datetime_utc": rule.custom_datetime_utc,
                "offset_timing": rule.offset_timing.value,
                "offset_value": rule.offset_value,
                "offset_unit": rule.offset_unit.value,
                "calculated_trigger_utc": trigger,
            },
            TaskReminder.is_sent.is_(False),
        )
        self.db.commit()
        if written != 1:
            self._raise_not_writable(reminder_id, "edited")

        self.db.expire(reminder)
        self.db.refresh(reminder)
        logger.info(f"✏️ [TaskReminder] Updated {reminder.id}, fires at {trigger}")
        return reminder

    def delete_reminder(self, reminder_id: str) -> None:
        stmt = (
            delete(TaskReminder)
            .where(
                TaskReminder.id == reminder_id,
                TaskReminder.is_sent.is_(False),
                TaskReminder.dispatch_status != STATUS_CLAIMED,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        if result.rowcount == 1:
            logger.info(f"🗑️ [TaskReminder] Deleted {reminder_id}")
            return
        self._raise_not_writable(reminder_id, "deleted")

    def _raise_not_writable(self, reminder_id: str, action: str) -> None:
        """Explain why a conditional write on a reminder matched no row."""
        status = dispatch_status_of(self.db, TaskReminder, reminder_id)
        if status is None:
            raise NotFoundError(f"Reminder {reminder_id} not found")
        if status == STATUS_CLAIMED:
            raise ItemBusyError(f"Reminder {reminder_id} is being dispatched and cannot be {action} right now")
        raise ImmutableStateError(f"Reminder {reminder_id} has already been sent and cannot be {action}")

    @staticmethod
    def _rule_from_values(values: Dict[str, Any]) -> ReminderRule:
        anchor_kind = AnchorKind(values["anchor_kind"])
        custom = None
        if anchor_kind == AnchorKind.CUSTOM:
            custom = to_instant(values.get("custom_datetime"))
        return ReminderRule(
            anchor_kind=anchor_kind,
            offset_timing=OffsetTiming(values["offset_timing"]),
            offset_value=values["offset_value"],
            offset_unit=OffsetUnit(values["offset_unit"]),
            custom_datetime_utc=custom,
        )
