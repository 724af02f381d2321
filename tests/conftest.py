"""Shared test fixtures for rule flow tests."""

import pytest

from ruleflow.config import Config
from ruleflow.db import RuleDB
from ruleflow.models import Rule
from ruleflow.service import RuleService


@pytest.fixture()
def tmp_config(tmp_path):
    return Config(db_path=str(tmp_path / "test.db"))


@pytest.fixture()
def tmp_db(tmp_config):
    """Create a RuleDB backed by a temp file."""
    db = RuleDB(tmp_config)
    db.init_db()
    yield db
    db.close()


@pytest.fixture()
def populated_db(tmp_db):
    """DB with a task ← incident hierarchy, 5 rules on incident and 2 on task."""
    db = tmp_db
    db.upsert_subject("task", "Task")
    db.upsert_subject("incident", "Incident", parent="task")
    db.upsert_subject("problem", "Problem", parent="task")

    incident_rules = [
        Rule(id="inc-b1", name="Set priority", phase="before", order=200,
             triggers_insert=True, triggers_update=True, script_body="current.priority = 1;"),
        Rule(id="inc-b2", name="Validate caller", phase="before", order=50,
             triggers_insert=True, aborts_on_condition=True),
        Rule(id="inc-a1", name="Notify assignee", phase="after", order=100,
             triggers_update=True),
        Rule(id="inc-as1", name="Sync to CMDB", phase="async", order=100,
             triggers_insert=True, active=False),
        Rule(id="inc-d1", name="Show SLA banner", phase="display", order=100,
             triggers_query=True),
    ]
    for r in incident_rules:
        db.upsert_rule("incident", r)

    db.upsert_rule("task", Rule(id="task-b1", name="Stamp number", phase="before", order=10,
                                triggers_insert=True))
    db.upsert_rule("task", Rule(id="task-a1", name="Audit change", phase="after", order=900,
                                triggers_update=True))
    db.conn.commit()
    return db


@pytest.fixture()
def service(populated_db, tmp_config):
    return RuleService(populated_db, tmp_config)
