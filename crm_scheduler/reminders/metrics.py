from prometheus_client import Counter, Gauge


reminders_created_total = Counter(
    "task_reminders_created_total",
    "Total task reminders created",
    ["anchor_kind"],
)

recurring_tasks_created_total = Counter(
    "recurring_tasks_created_total",
    "Total recurring task templates created",
    ["recurrence_type"],
)

dispatcher_ticks_total = Counter(
    "scheduler_dispatcher_ticks_total",
    "Total dispatcher tick cycles",
)

dispatcher_tick_errors_total = Counter(
    "scheduler_dispatcher_tick_errors_total",
    "Dispatcher ticks that raised before completing",
)

reminders_fired_total = Counter(
    "scheduler_reminders_fired_total",
    "Total task reminders handed to the notify hook and marked sent",
)

schedules_fired_total = Counter(
    "scheduler_schedules_fired_total",
    "Total recurring task occurrences instantiated",
)

claim_conflicts_total = Counter(
    "scheduler_claim_conflicts_total",
    "Claims lost to another dispatcher or to a cancellation",
    ["kind"],
)

dispatch_failures_total = Counter(
    "scheduler_dispatch_failures_total",
    "Hook calls that raised or timed out",
    ["kind", "reason"],
)

items_failed_total = Counter(
    "scheduler_items_failed_total",
    "Items moved to Failed after reaching the retry limit",
    ["kind"],
)

stale_claims_released_total = Counter(
    "scheduler_stale_claims_released_total",
    "Claims released after their lease expired",
)

last_tick_timestamp = Gauge(
    "scheduler_last_tick_timestamp_seconds",
    "Unix time at which the last dispatcher tick finished",
)
