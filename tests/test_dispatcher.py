import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from crm_scheduler.reminders.dispatcher import Dispatcher
from crm_scheduler.reminders.hooks import DatabaseTaskInstantiator
from crm_scheduler.reminders.models import (
    RecurringTask,
    Task,
    TaskReminder,
    STATUS_FAILED,
    STATUS_FIRED,
    STATUS_PENDING,
)
from crm_scheduler.reminders.repository import SqlAlchemyStoreGateway
from crm_scheduler.utils.timezone import to_local, to_utc, to_utc_aware

TRIGGER = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)
NOW = datetime(2024, 1, 10, 9, 5, tzinfo=timezone.utc)


class Recorder:
    """Hook double that records its calls and optionally fails."""

    def __init__(self, fail_times=0):
        self.calls = []
        self.fail_times = fail_times
        self._lock = threading.Lock()

    def __call__(self, *args):
        with self._lock:
            self.calls.append(args)
            if len(self.calls) <= self.fail_times:
                raise RuntimeError("downstream unavailable")


@pytest.fixture
def dispatchers():
    created = []

    def _make(gateway, notify=None, instantiate=None, **kwargs):
        kwargs.setdefault("retry_limit", 3)
        kwargs.setdefault("hook_timeout", 5)
        dispatcher = Dispatcher(gateway, notify or Recorder(), instantiate or Recorder(), **kwargs)
        created.append(dispatcher)
        return dispatcher

    yield _make
    for dispatcher in created:
        dispatcher.close()


def load(session_factory, model, item_id):
    with session_factory() as db:
        return db.get(model, item_id)


def count_tasks(session_factory, template_id):
    with session_factory() as db:
        return db.execute(select(func.count(Task.id)).where(Task.recurring_task_id == template_id)).scalar_one()


class TestReminders:
    def test_due_reminder_fires_once(self, session_factory, gateway, make_reminder, dispatchers):
        reminder = make_reminder(TRIGGER)
        notify = Recorder()
        dispatcher = dispatchers(gateway, notify=notify)

        report = dispatcher.tick(NOW)
        assert report.reminders_fired == 1
        assert [call[0].id for call in notify.calls] == [reminder.id]

        stored = load(session_factory, TaskReminder, reminder.id)
        assert stored.is_sent is True
        assert stored.dispatch_status == STATUS_FIRED

        assert dispatcher.tick(NOW + timedelta(hours=1)).reminders_fired == 0
        assert len(notify.calls) == 1

    def test_future_reminder_waits(self, gateway, make_reminder, dispatchers):
        make_reminder(TRIGGER)
        notify = Recorder()
        assert dispatchers(gateway, notify=notify).tick(TRIGGER - timedelta(seconds=1)).fired == 0
        assert notify.calls == []

    def test_hook_failure_rolls_back_and_counts(self, session_factory, gateway, make_reminder, dispatchers):
        reminder = make_reminder(TRIGGER)
        dispatcher = dispatchers(gateway, notify=Recorder(fail_times=1))

        report = dispatcher.tick(NOW)
        assert (report.failures, report.failed, report.reminders_fired) == (1, 0, 0)
        stored = load(session_factory, TaskReminder, reminder.id)
        assert stored.dispatch_status == STATUS_PENDING
        assert stored.failure_count == 1
        assert stored.is_sent is False
        assert "downstream unavailable" in stored.last_error

        assert dispatcher.tick(NOW).reminders_fired == 1
        stored = load(session_factory, TaskReminder, reminder.id)
        assert stored.is_sent is True
        assert stored.failure_count == 0

    def test_retry_limit_marks_failed(self, session_factory, gateway, make_reminder, dispatchers):
        reminder = make_reminder(TRIGGER)
        notify = Recorder(fail_times=100)
        dispatcher = dispatchers(gateway, notify=notify, retry_limit=3)

        reports = [dispatcher.tick(NOW) for _ in range(4)]
        assert [r.failures for r in reports] == [1, 1, 1, 0]
        assert reports[2].failed == 1
        assert len(notify.calls) == 3

        stored = load(session_factory, TaskReminder, reminder.id)
        assert stored.dispatch_status == STATUS_FAILED
        assert stored.failure_count == 3
        assert stored.is_sent is False

    def test_timeout_counts_as_failure(self, session_factory, gateway, make_reminder, dispatchers):
        reminder = make_reminder(TRIGGER)
        release = threading.Event()

        def hung(_reminder):
            release.wait(5)

        dispatcher = dispatchers(gateway, notify=hung, hook_timeout=0.05)
        try:
            report = dispatcher.tick(NOW)
        finally:
            release.set()

        assert report.failures == 1
        stored = load(session_factory, TaskReminder, reminder.id)
        assert stored.failure_count == 1
        assert "timed out" in stored.last_error
        assert stored.is_sent is False

    def test_reminder_sent_between_scan_and_claim_is_skipped(self, session_factory, make_reminder, dispatchers):
        make_reminder(TRIGGER)

        class CancellingGateway(SqlAlchemyStoreGateway):
            def list_due_reminders(self, now, limit):
                due = super().list_due_reminders(now, limit)
                with self.session_factory() as db:
                    db.execute(update(TaskReminder).values(is_sent=True))
                    db.commit()
                return due

        notify = Recorder()
        report = dispatchers(CancellingGateway(session_factory, owner="a"), notify=notify).tick(NOW)
        assert report.conflicts == 1
        assert notify.calls == []


class TestSchedules:
    # 09:00 IST on 2024-01-10
    OCCURRENCE = to_utc(datetime(2024, 1, 10, 9, 0))

    def test_due_schedule_instantiates_and_rolls_forward(self, session_factory, gateway, make_template, dispatchers):
        template = make_template(self.OCCURRENCE)
        instantiate = Recorder()
        dispatcher = dispatchers(gateway, instantiate=instantiate)

        report = dispatcher.tick(self.OCCURRENCE + timedelta(minutes=1))
        assert report.schedules_fired == 1
        ((fired_template, occurrence),) = instantiate.calls
        assert fired_template.id == template.id
        assert occurrence == self.OCCURRENCE

        stored = load(session_factory, RecurringTask, template.id)
        assert to_local(stored.next_occurrence_utc) == datetime(2024, 1, 11, 9, 0)
        assert to_utc_aware(stored.last_occurrence_utc) == self.OCCURRENCE
        assert stored.occurrence_count == 1
        assert stored.dispatch_status == STATUS_PENDING

    def test_inactive_schedule_never_fires(self, gateway, make_template, dispatchers):
        make_template(self.OCCURRENCE, is_active=False)
        instantiate = Recorder()
        assert dispatchers(gateway, instantiate=instantiate).tick(self.OCCURRENCE + timedelta(days=3)).fired == 0
        assert instantiate.calls == []

    def test_deactivated_between_scan_and_claim_is_skipped(self, session_factory, make_template, dispatchers):
        make_template(self.OCCURRENCE)

        class CancellingGateway(SqlAlchemyStoreGateway):
            def list_due_schedules(self, now, limit):
                due = super().list_due_schedules(now, limit)
                with self.session_factory() as db:
                    db.execute(update(RecurringTask).values(is_active=False))
                    db.commit()
                return due

        instantiate = Recorder()
        report = dispatchers(CancellingGateway(session_factory, owner="a"), instantiate=instantiate).tick(
            self.OCCURRENCE + timedelta(minutes=1)
        )
        assert report.conflicts == 1
        assert instantiate.calls == []

    def test_missed_ticks_fire_each_occurrence_in_order(self, session_factory, gateway, make_template, dispatchers):
        template = make_template(self.OCCURRENCE)
        instantiate = DatabaseTaskInstantiator(session_factory)
        dispatcher = dispatchers(gateway, instantiate=instantiate)
        now = to_utc(datetime(2024, 1, 13, 10, 0))

        fired = [dispatcher.tick(now).schedules_fired for _ in range(5)]
        assert fired == [1, 1, 1, 1, 0]
        assert count_tasks(session_factory, template.id) == 4

        stored = load(session_factory, RecurringTask, template.id)
        assert to_local(stored.next_occurrence_utc) == datetime(2024, 1, 14, 9, 0)
        assert stored.occurrence_count == 4

        with session_factory() as db:
            starts = db.execute(
                select(Task.start_date).where(Task.recurring_task_id == template.id).order_by(Task.start_date)
            ).scalars().all()
        assert [to_local(s).day for s in starts] == [10, 11, 12, 13]

    def test_instantiate_failure_keeps_the_same_occurrence(self, session_factory, gateway, make_template, dispatchers):
        template = make_template(self.OCCURRENCE)
        instantiate = Recorder(fail_times=1)
        dispatcher = dispatchers(gateway, instantiate=instantiate)
        now = self.OCCURRENCE + timedelta(minutes=1)

        assert dispatcher.tick(now).failures == 1
        stored = load(session_factory, RecurringTask, template.id)
        assert to_utc_aware(stored.next_occurrence_utc) == self.OCCURRENCE
        assert stored.failure_count == 1

        assert dispatcher.tick(now).schedules_fired == 1
        assert [call[1] for call in instantiate.calls] == [self.OCCURRENCE, self.OCCURRENCE]

    def test_unusable_rule_is_marked_failed(self, session_factory, gateway, make_template, dispatchers):
        template = make_template(self.OCCURRENCE, recurrence_type="weekly", start_days=[], due_days=[])
        instantiate = Recorder()

        report = dispatchers(gateway, instantiate=instantiate).tick(self.OCCURRENCE + timedelta(minutes=1))
        assert report.failed == 1
        assert instantiate.calls == []
        assert load(session_factory, RecurringTask, template.id).dispatch_status == STATUS_FAILED


def test_stale_claim_is_released_and_fired(session_factory, make_reminder, dispatchers):
    reminder = make_reminder(TRIGGER)
    crashed = SqlAlchemyStoreGateway(session_factory, owner="crashed")
    assert crashed.try_claim("reminder", reminder.id, TRIGGER)

    notify = Recorder()
    survivor = dispatchers(SqlAlchemyStoreGateway(session_factory, owner="survivor"), notify=notify, claim_lease_seconds=60)
    # still within the lease
    assert survivor.tick(NOW).reminders_fired == 0

    with session_factory() as db:
        db.execute(
            update(TaskReminder)
            .where(TaskReminder.id == reminder.id)
            .values(claimed_at=datetime.now(timezone.utc) - timedelta(minutes=5))
        )
        db.commit()

    report = survivor.tick(NOW)
    assert report.stale_released == 1
    assert report.reminders_fired == 1
    assert len(notify.calls) == 1


def test_two_dispatchers_fire_each_reminder_exactly_once(session_factory, make_reminder, dispatchers):
    reminders = [make_reminder(TRIGGER - timedelta(minutes=i)) for i in range(20)]
    notify = Recorder()
    a = dispatchers(SqlAlchemyStoreGateway(session_factory, owner="a"), notify=notify)
    b = dispatchers(SqlAlchemyStoreGateway(session_factory, owner="b"), notify=notify)

    start = threading.Barrier(2)
    reports = {}

    def run(name, dispatcher):
        start.wait()
        reports[name] = dispatcher.tick(NOW)

    threads = [threading.Thread(target=run, args=("a", a)), threading.Thread(target=run, args=("b", b))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    fired_ids = sorted(call[0].id for call in notify.calls)
    assert fired_ids == sorted(r.id for r in reminders)
    assert reports["a"].reminders_fired + reports["b"].reminders_fired == 20


def test_run_forever_stops_on_event(gateway, dispatchers):
    dispatcher = dispatchers(gateway, tick_interval=0.01)
    stop = threading.Event()
    assert dispatcher.run_forever(stop, max_ticks=3) == 3
    stop.set()
    assert dispatcher.run_forever(stop) == 0


def test_run_forever_survives_tick_errors(dispatchers):
    class BrokenGateway(SqlAlchemyStoreGateway):
        def __init__(self):
            self.owner = "broken"

        def release_stale_claims(self, older_than):
            raise RuntimeError("database down")

    dispatcher = dispatchers(BrokenGateway(), tick_interval=0.01)
    assert dispatcher.run_forever(max_ticks=2) == 2
