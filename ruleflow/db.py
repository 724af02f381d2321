"""SQLite database setup and operations for rule flow."""

import logging
import sqlite3

from ruleflow.config import Config
from ruleflow.models import Rule, SubjectRow

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS subjects (
    name TEXT PRIMARY KEY,
    label TEXT,
    parent TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS rules (
    id TEXT PRIMARY KEY,
    subject TEXT NOT NULL REFERENCES subjects(name),
    name TEXT NOT NULL DEFAULT '',
    phase TEXT NOT NULL DEFAULT '',
    rule_order INTEGER,
    priority INTEGER,
    active INTEGER NOT NULL DEFAULT 1,
    triggers_insert INTEGER NOT NULL DEFAULT 0,
    triggers_update INTEGER NOT NULL DEFAULT 0,
    triggers_delete INTEGER NOT NULL DEFAULT 0,
    triggers_query INTEGER NOT NULL DEFAULT 0,
    aborts_on_condition INTEGER NOT NULL DEFAULT 0,
    filter_expression TEXT,
    condition TEXT,
    description TEXT,
    script_body TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS preferences (
    user TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (user, key)
);

CREATE INDEX IF NOT EXISTS idx_rules_subject ON rules(subject, phase, rule_order);
CREATE INDEX IF NOT EXISTS idx_subjects_parent ON subjects(parent);
"""

# The list payload leaves script_body out; it is fetched per rule on demand.
_RULE_COLUMNS = """id, name, phase, rule_order, priority, active,
    triggers_insert, triggers_update, triggers_delete, triggers_query,
    aborts_on_condition, filter_expression, condition, description"""


class RuleDB:
    """SQLite database wrapper for rule flow."""

    def __init__(self, config: Config) -> None:
        self.db_path = config.resolved_db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call init_db() first.")
        return self._conn

    def init_db(self) -> None:
        """Create database and tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(SCHEMA_SQL)
        logger.info("Database initialized at %s", self.db_path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # --- Subject operations ---

    def upsert_subject(
        self,
        name: str,
        label: str | None = None,
        parent: str | None = None,
    ) -> None:
        """Insert a subject or update its label/parent."""
        self.conn.execute(
            """INSERT INTO subjects (name, label, parent) VALUES (?, ?, ?)
               ON CONFLICT(name) DO UPDATE SET
                   label = COALESCE(excluded.label, subjects.label),
                   parent = COALESCE(excluded.parent, subjects.parent)""",
            (name, label, parent),
        )

    def get_subject(self, name: str) -> SubjectRow | None:
        row = self.conn.execute(
            "SELECT * FROM subjects WHERE name = ?", (name,)
        ).fetchone()
        return SubjectRow(**dict(row)) if row else None

    def get_hierarchy(self, name: str) -> list[str]:
        """Return [name, parent, grandparent, ...]. Stops on a cycle."""
        chain: list[str] = []
        current: str | None = name
        while current and current not in chain:
            chain.append(current)
            row = self.conn.execute(
                "SELECT parent FROM subjects WHERE name = ?", (current,)
            ).fetchone()
            current = row["parent"] if row else None
        return chain

    def list_subjects_with_rules(self) -> list[str]:
        """Distinct subjects that own at least one active rule."""
        rows = self.conn.execute(
            "SELECT DISTINCT subject FROM rules WHERE active = 1 ORDER BY subject"
        ).fetchall()
        return [r["subject"] for r in rows]

    def search_subjects(self, query: str, limit: int = 20) -> list[SubjectRow]:
        """Subjects whose name or label contains ``query``, ordered by label."""
        pattern = f"%{query.lower()}%"
        rows = self.conn.execute(
            """SELECT * FROM subjects
               WHERE LOWER(name) LIKE ? OR LOWER(COALESCE(label, '')) LIKE ?
               ORDER BY COALESCE(label, name)
               LIMIT ?""",
            (pattern, pattern, limit),
        ).fetchall()
        return [SubjectRow(**dict(r)) for r in rows]

    # --- Rule operations ---

    def upsert_rule(self, subject: str, rule: Rule) -> None:
        """Store ``rule`` on ``subject``, registering the subject if needed."""
        self.upsert_subject(subject)
        self.conn.execute(
            """INSERT INTO rules (
                   id, subject, name, phase, rule_order, priority, active,
                   triggers_insert, triggers_update, triggers_delete, triggers_query,
                   aborts_on_condition, filter_expression, condition, description, script_body)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   subject = excluded.subject, name = excluded.name,
                   phase = excluded.phase, rule_order = excluded.rule_order,
                   priority = excluded.priority, active = excluded.active,
                   triggers_insert = excluded.triggers_insert,
                   triggers_update = excluded.triggers_update,
                   triggers_delete = excluded.triggers_delete,
                   triggers_query = excluded.triggers_query,
                   aborts_on_condition = excluded.aborts_on_condition,
                   filter_expression = excluded.filter_expression,
                   condition = excluded.condition,
                   description = excluded.description,
                   script_body = excluded.script_body""",
            (
                rule.id, subject, rule.name, rule.phase, rule.order, rule.priority,
                int(rule.active), int(rule.triggers_insert), int(rule.triggers_update),
                int(rule.triggers_delete), int(rule.triggers_query),
                int(rule.aborts_on_condition), rule.filter_expression, rule.condition,
                rule.description, rule.script_body,
            ),
        )

    def get_rules(self, subject: str, inherited_from: str | None = None) -> list[Rule]:
        """Rules defined directly on ``subject``, ordered by phase then order."""
        rows = self.conn.execute(
            f"""SELECT {_RULE_COLUMNS} FROM rules
                WHERE subject = ?
                ORDER BY phase, rule_order, rowid""",
            (subject,),
        ).fetchall()
        return [_row_to_rule(r, inherited_from) for r in rows]

    def get_rules_with_inheritance(self, subject: str) -> list[Rule]:
        """Rules on ``subject`` followed by those on each ancestor, marked as inherited."""
        rules: list[Rule] = []
        for i, table in enumerate(self.get_hierarchy(subject)):
            rules.extend(self.get_rules(table, inherited_from=None if i == 0 else table))
        return rules

    def get_script(self, rule_id: str) -> str | None:
        row = self.conn.execute(
            "SELECT script_body FROM rules WHERE id = ?", (rule_id,)
        ).fetchone()
        if row is None:
            return None
        return row["script_body"] or ""

    def count_rules(self, subject: str | None = None) -> int:
        if subject is None:
            row = self.conn.execute("SELECT COUNT(*) AS cnt FROM rules").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) AS cnt FROM rules WHERE subject = ?", (subject,)
            ).fetchone()
        return row["cnt"]

    # --- Preference operations ---

    def get_preference(self, user: str, key: str) -> str | None:
        row = self.conn.execute(
            "SELECT value FROM preferences WHERE user = ? AND key = ?", (user, key)
        ).fetchone()
        return row["value"] if row else None

    def save_preference(self, user: str, key: str, value: str) -> None:
        self.conn.execute(
            """INSERT INTO preferences (user, key, value) VALUES (?, ?, ?)
               ON CONFLICT(user, key) DO UPDATE SET
                   value = excluded.value, updated_at = datetime('now')""",
            (user, key, value),
        )
        self.conn.commit()


def _row_to_rule(row: sqlite3.Row, inherited_from: str | None) -> Rule:
    return Rule(
        id=row["id"],
        name=row["name"],
        phase=row["phase"],
        order=row["rule_order"],
        priority=row["priority"],
        active=bool(row["active"]),
        triggers_insert=bool(row["triggers_insert"]),
        triggers_update=bool(row["triggers_update"]),
        triggers_delete=bool(row["triggers_delete"]),
        triggers_query=bool(row["triggers_query"]),
        aborts_on_condition=bool(row["aborts_on_condition"]),
        filter_expression=row["filter_expression"],
        condition=row["condition"],
        description=row["description"],
        inherited_from_ancestor=inherited_from,
    )
