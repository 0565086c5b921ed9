"""
CRM scheduling engine package.

Recurring task templates, task reminders and the dispatcher that fires them.
"""
