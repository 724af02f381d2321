"""Rule source and preference store backed by RuleDB."""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager

from ruleflow.config import Config
from ruleflow.db import RuleDB
from ruleflow.errors import InputMissing, NotFound, TransportFailure
from ruleflow.models import Rule, RuleScript

logger = logging.getLogger(__name__)

RECENT_SUBJECTS_KEY = "ruleflow.recent_subjects"


@contextmanager
def _store_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise TransportFailure(f"Rule store unavailable: {e}") from e


class RuleService:
    """Serves rules, scripts and recent-subject preferences for one user."""

    def __init__(self, db: RuleDB, config: Config, user: str | None = None) -> None:
        self.db = db
        self.user = user or config.user
        self.recent_limit = config.recent_limit
        self.search_limit = config.search_limit

    # --- Rule source ---

    async def fetch_rules(self, subject: str) -> list[Rule]:
        """All rules for ``subject``, including those inherited from its ancestors.

        Rules defined on an ancestor carry ``inherited_from_ancestor`` set to
        that ancestor's name.
        """
        subject = (subject or "").strip()
        if not subject:
            raise InputMissing("Missing subject name")
        with _store_errors():
            if self.db.get_subject(subject) is None:
                raise NotFound(f"Unknown subject: {subject}")
            rules = self.db.get_rules_with_inheritance(subject)
        logger.debug("Fetched %d rules for %s", len(rules), subject)
        return rules

    async def fetch_script(self, rule_id: str) -> RuleScript:
        if not rule_id:
            raise InputMissing("Missing rule id")
        with _store_errors():
            script = self.db.get_script(rule_id)
        if script is None:
            raise NotFound(f"Record not found: {rule_id}")
        return RuleScript(rule_id=rule_id, script_body=script)

    def list_subjects(self) -> list[str]:
        with _store_errors():
            return self.db.list_subjects_with_rules()

    def search_subjects(self, query: str) -> list[dict[str, str]]:
        """Autocomplete matches as ``{"value": name, "label": "Label (name)"}``."""
        if not query:
            return []
        with _store_errors():
            rows = self.db.search_subjects(query, limit=self.search_limit)
        return [
            {"value": r.name, "label": f"{r.label or r.name} ({r.name})"}
            for r in rows
        ]

    # --- Preference store ---

    async def get_recent_subjects(self) -> list[str]:
        return self._read_recent()

    async def save_subject_preference(self, name: str) -> None:
        """Move ``name`` to the front of the recent list, keeping at most recent_limit entries."""
        if not name:
            raise InputMissing("Missing subject name")
        recent = [s for s in self._read_recent() if s != name]
        recent.insert(0, name)
        self._write_recent(recent[: self.recent_limit])

    async def delete_subject_preference(self, name: str) -> None:
        if not name:
            raise InputMissing("Missing subject name")
        self._write_recent([s for s in self._read_recent() if s != name])

    def _read_recent(self) -> list[str]:
        with _store_errors():
            raw = self.db.get_preference(self.user, RECENT_SUBJECTS_KEY)
        if not raw:
            return []
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed recent subjects preference for %s", self.user)
            return []
        if not isinstance(value, list):
            return []
        return [str(v) for v in value]

    def _write_recent(self, subjects: list[str]) -> None:
        with _store_errors():
            self.db.save_preference(self.user, RECENT_SUBJECTS_KEY, json.dumps(subjects))
