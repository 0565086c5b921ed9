"""Recurrence and reminder scheduling (calculators, store gateway, dispatcher, API).

The dispatcher runs either as a Celery beat task or as the standalone
``crm_scheduler.worker`` process; both share the same claim protocol so they
may run side by side.
"""
