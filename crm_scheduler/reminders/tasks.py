import logging

from celery import shared_task

from .dispatcher import build_dispatcher

logger = logging.getLogger(__name__)


@shared_task(name="reminders.dispatch_tick")
def dispatch_tick_task() -> dict:
    """Run one dispatcher tick. Scheduled by celery beat every TICK_INTERVAL_SECONDS."""
    dispatcher = build_dispatcher()
    try:
        report = dispatcher.tick()
    finally:
        dispatcher.close()
    return {
        "reminders_fired": report.reminders_fired,
        "schedules_fired": report.schedules_fired,
        "conflicts": report.conflicts,
        "failures": report.failures,
        "failed": report.failed,
        "stale_released": report.stale_released,
    }
