import os

# Settings are read at import time; pin them before anything from the package loads
os.environ["SCHEDULER_DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_CIVIL_UTC_OFFSET_MINUTES"] = "330"
os.environ["SCHEDULER_METRICS_ENABLED"] = "false"

import pytest
from sqlalchemy.orm import sessionmaker

from crm_scheduler.db.base import Base
from crm_scheduler.db.session import make_engine
from crm_scheduler.reminders.models import RecurringTask, Task, TaskReminder
from crm_scheduler.reminders.repository import SqlAlchemyStoreGateway


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'scheduler.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def gateway(session_factory):
    return SqlAlchemyStoreGateway(session_factory, owner="dispatcher-a")


@pytest.fixture
def make_task(session_factory):
    def _make(start_date=None, due_date=None, **kwargs):
        with session_factory() as db:
            task = Task(title=kwargs.pop("title", "Call back"), start_date=start_date, due_date=due_date, **kwargs)
            db.add(task)
            db.commit()
            return task
    return _make


@pytest.fixture
def make_reminder(session_factory, make_task):
    def _make(trigger_utc, task=None, **kwargs):
        task = task or make_task(due_date=trigger_utc)
        values = dict(
            anchor_kind="due_date",
            offset_timing="before",
            offset_value=0,
            offset_unit="minutes",
        )
        values.update(kwargs)
        with session_factory() as db:
            reminder = TaskReminder(task_id=task.id, calculated_trigger_utc=trigger_utc, **values)
            db.add(reminder)
            db.commit()
            return reminder
    return _make


@pytest.fixture
def make_template(session_factory):
    def _make(next_occurrence_utc, **kwargs):
        values = dict(
            title="Pipeline review",
            recurrence_type="daily",
            start_time="09:00",
            due_time="18:00",
            priority="high",
            is_active=True,
        )
        values.update(kwargs)
        with session_factory() as db:
            template = RecurringTask(next_occurrence_utc=next_occurrence_utc, **values)
            db.add(template)
            db.commit()
            return template
    return _make
