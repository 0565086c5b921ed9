"""
Polling dispatcher for due task reminders and recurring task occurrences.

Each tick scans the store, claims due items with an atomic conditional update,
runs the matching hook and records the outcome. Any number of dispatchers may
share a store; an item is fired by whichever one wins the claim.
"""
import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from crm_scheduler.core.config import settings
from crm_scheduler.utils.timezone import now_utc, to_local, to_utc, to_utc_aware
from .exceptions import ClaimConflict, DispatchFailure
from .hooks import CeleryNotifier, DatabaseTaskInstantiator, InstantiateHook, NotifyHook
from .metrics import (
    claim_conflicts_total,
    dispatch_failures_total,
    dispatcher_tick_errors_total,
    dispatcher_ticks_total,
    items_failed_total,
    last_tick_timestamp,
    reminders_fired_total,
    schedules_fired_total,
    stale_claims_released_total,
)
from .models import RecurringTask, TaskReminder, STATUS_FAILED
from .recurrence_models import RecurrenceCalculator
from .repository import ItemKind, ScheduleAdvance, SqlAlchemyStoreGateway, StoreGateway

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    now: datetime
    stale_released: int = 0
    reminders_fired: int = 0
    schedules_fired: int = 0
    conflicts: int = 0
    failures: int = 0
    failed: int = 0

    @property
    def fired(self) -> int:
        return self.reminders_fired + self.schedules_fired


class Dispatcher:
    def __init__(
        self,
        gateway: StoreGateway,
        notify: NotifyHook,
        instantiate: InstantiateHook,
        *,
        retry_limit: Optional[int] = None,
        hook_timeout: Optional[float] = None,
        batch_size: Optional[int] = None,
        claim_lease_seconds: Optional[int] = None,
        tick_interval: Optional[float] = None,
        executor: Optional[Executor] = None,
        tz=None,
    ):
        self.gateway = gateway
        self.notify = notify
        self.instantiate = instantiate
        self.retry_limit = retry_limit or settings.RETRY_LIMIT
        self.hook_timeout = hook_timeout or settings.HOOK_TIMEOUT_SECONDS
        self.batch_size = batch_size or settings.BATCH_SIZE
        self.claim_lease = timedelta(seconds=claim_lease_seconds or settings.CLAIM_LEASE_SECONDS)
        self.tick_interval = tick_interval or settings.TICK_INTERVAL_SECONDS
        self.tz = tz
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=settings.HOOK_WORKERS, thread_name_prefix="scheduler-hook"
        )

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Run one scan/claim/fire pass. ``now`` defaults to the current instant."""
        now = to_utc_aware(now) if now is not None else now_utc()
        report = TickReport(now=now)

        # claimed_at is stamped from the real clock, so the lease is measured against it too
        report.stale_released = self.gateway.release_stale_claims(now_utc() - self.claim_lease)
        if report.stale_released:
            stale_claims_released_total.inc(report.stale_released)
            logger.warning(f"♻️ [Dispatcher] Released {report.stale_released} stale claim(s)")

        for reminder in self.gateway.list_due_reminders(now, self.batch_size):
            self._dispatch_reminder(reminder, report)

        for schedule in self.gateway.list_due_schedules(now, self.batch_size):
            self._dispatch_schedule(schedule, report)

        dispatcher_ticks_total.inc()
        last_tick_timestamp.set_to_current_time()
        if report.fired or report.failures or report.conflicts:
            logger.info(
                f"🕒 [Dispatcher] Tick at {now.isoformat()}: reminders={report.reminders_fired} "
                f"schedules={report.schedules_fired} conflicts={report.conflicts} "
                f"failures={report.failures} failed={report.failed}"
            )
        return report

    def run_forever(self, stop_event: Optional[threading.Event] = None, max_ticks: Optional[int] = None) -> int:
        """Tick on a fixed interval until ``stop_event`` is set. Returns the number of ticks run."""
        stop_event = stop_event or threading.Event()
        ticks = 0
        deadline = time.monotonic()
        logger.info(f"🚀 [Dispatcher] Started, interval={self.tick_interval}s owner={getattr(self.gateway, 'owner', None)}")
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                dispatcher_tick_errors_total.inc()
                logger.exception("❌ [Dispatcher] Tick failed")
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            deadline += self.tick_interval
            delay = deadline - time.monotonic()
            if delay < 0:
                # overran the interval; no catch-up burst
                deadline = time.monotonic()
                delay = 0
            stop_event.wait(delay)
        logger.info(f"🛑 [Dispatcher] Stopped after {ticks} tick(s)")
        return ticks

    def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=False, cancel_futures=True)

    def _dispatch_reminder(self, reminder: TaskReminder, report: TickReport) -> None:
        kind = ItemKind.REMINDER
        expected = to_utc_aware(reminder.calculated_trigger_utc)
        if not self.gateway.try_claim(kind, reminder.id, expected):
            self._conflict(ClaimConflict(kind.value, reminder.id), report)
            return

        try:
            self._call_hook(kind, reminder.id, self.notify, reminder)
        except DispatchFailure as exc:
            self._handle_failure(kind, reminder.id, exc, report)
            return

        if self.gateway.mark_fired(kind, reminder.id):
            report.reminders_fired += 1
            reminders_fired_total.inc()
            logger.info(f"🔔 [Dispatcher] Reminder {reminder.id} fired (trigger {expected.isoformat()})")
        else:
            logger.warning(f"⚠️ [Dispatcher] Lost claim on reminder {reminder.id} before it could be marked sent")

    def _dispatch_schedule(self, schedule: RecurringTask, report: TickReport) -> None:
        kind = ItemKind.SCHEDULE
        occurrence_utc = to_utc_aware(schedule.next_occurrence_utc)
        if not self.gateway.try_claim(kind, schedule.id, occurrence_utc):
            self._conflict(ClaimConflict(kind.value, schedule.id), report)
            return

        # next occurrence is computed from the fired occurrence, not from now
        try:
            next_local = RecurrenceCalculator.next_occurrence(schedule.to_rule(), to_local(occurrence_utc, self.tz))
            advance = ScheduleAdvance(occurrence_utc, to_utc(next_local, self.tz))
        except ValueError as exc:
            self.gateway.mark_failed(kind, schedule.id, f"Invalid recurrence rule: {exc}")
            report.failed += 1
            items_failed_total.labels(kind=kind.value).inc()
            logger.error(f"❌ [Dispatcher] Recurring task {schedule.id} has an unusable rule: {exc}")
            return

        try:
            self._call_hook(kind, schedule.id, self.instantiate, schedule, occurrence_utc)
        except DispatchFailure as exc:
            self._handle_failure(kind, schedule.id, exc, report)
            return

        if self.gateway.mark_fired(kind, schedule.id, advance):
            report.schedules_fired += 1
            schedules_fired_total.inc()
            logger.info(
                f"📌 [Dispatcher] Recurring task {schedule.id} fired for {occurrence_utc.isoformat()}, "
                f"next {advance.next_occurrence_utc.isoformat()}"
            )
        else:
            logger.warning(f"⚠️ [Dispatcher] Lost claim on recurring task {schedule.id} before it could be advanced")

    def _call_hook(self, kind: ItemKind, item_id: str, hook: Callable, *args) -> None:
        future = self.executor.submit(hook, *args)
        try:
            future.result(timeout=self.hook_timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise DispatchFailure(kind.value, item_id, cause=exc, timed_out=True) from exc
        except Exception as exc:
            raise DispatchFailure(kind.value, item_id, cause=exc) from exc

    def _conflict(self, conflict: ClaimConflict, report: TickReport) -> None:
        report.conflicts += 1
        claim_conflicts_total.labels(kind=conflict.kind).inc()
        logger.debug(f"[Dispatcher] {conflict}")

    def _handle_failure(self, kind: ItemKind, item_id: str, exc: DispatchFailure, report: TickReport) -> None:
        report.failures += 1
        dispatch_failures_total.labels(kind=kind.value, reason="timeout" if exc.timed_out else "error").inc()

        status = self.gateway.rollback_claim(kind, item_id, str(exc), self.retry_limit)
        if status == STATUS_FAILED:
            report.failed += 1
            items_failed_total.labels(kind=kind.value).inc()
            logger.error(f"❌ [Dispatcher] Giving up on {kind.value} {item_id} after {self.retry_limit} attempt(s): {exc}")
        elif status is None:
            logger.warning(f"⚠️ [Dispatcher] Lost claim on {kind.value} {item_id} before rollback: {exc}")
        else:
            logger.warning(f"⚠️ [Dispatcher] {exc}; will retry on a later tick")


def build_dispatcher(session_factory: Optional[Callable[[], Session]] = None, **overrides) -> Dispatcher:
    """Dispatcher wired to the configured database and the default hooks."""
    if session_factory is None:
        from crm_scheduler.db.session import SessionLocal as session_factory
    gateway = SqlAlchemyStoreGateway(session_factory)
    return Dispatcher(
        gateway,
        overrides.pop("notify", None) or CeleryNotifier(),
        overrides.pop("instantiate", None) or DatabaseTaskInstantiator(session_factory),
        **overrides,
    )
