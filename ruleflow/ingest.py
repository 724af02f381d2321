"""Import subjects and rules from a YAML or JSON document into the rule store."""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ruleflow.db import RuleDB
from ruleflow.models import Rule

logger = logging.getLogger(__name__)


class ImportResult:
    """Summary of an import run."""

    def __init__(self, source: str) -> None:
        self.source = source
        self.subjects = 0
        self.rules = 0
        self.skipped = 0

    def __repr__(self) -> str:
        parts = [
            f"ImportResult({self.source}: ",
            f"{self.subjects} subjects, {self.rules} rules",
        ]
        if self.skipped:
            parts.append(f", skipped={self.skipped}")
        parts.append(")")
        return "".join(parts)


def ingest_file(path: Path, db: RuleDB) -> ImportResult:
    """Import a rule document. JSON is read through the YAML loader."""
    raw = yaml.safe_load(path.read_text()) or {}
    return ingest_document(raw, db, source=path.name)


def ingest_document(
    doc: dict[str, Any] | list[dict[str, Any]],
    db: RuleDB,
    source: str = "<document>",
) -> ImportResult:
    """Import ``doc``.

    Accepts either a mapping with ``subjects`` and ``rules`` lists (and an
    optional top-level ``subject`` used as the default owner) or a bare list
    of rule records such as an exported rule dump.
    """
    result = ImportResult(source)
    if isinstance(doc, list):
        doc = {"rules": doc}

    for entry in doc.get("subjects") or []:
        if not isinstance(entry, dict) or not entry.get("name"):
            logger.warning("Skipping invalid subject record in %s: %r", source, entry)
            result.skipped += 1
            continue
        db.upsert_subject(entry["name"], entry.get("label"), entry.get("parent"))
        result.subjects += 1

    default_subject = doc.get("subject")
    for entry in doc.get("rules") or []:
        try:
            rule = Rule.model_validate(entry)
        except ValidationError:
            logger.warning("Skipping invalid rule record in %s: %r", source, entry)
            result.skipped += 1
            continue

        # Rules exported with an ancestor marker belong to that ancestor.
        subject = (
            entry.get("subject")
            or entry.get("collection")
            or rule.inherited_from_ancestor
            or default_subject
        )
        if not subject:
            logger.warning("Skipping rule %s in %s: no subject", rule.id, source)
            result.skipped += 1
            continue

        db.upsert_rule(subject, rule.model_copy(update={"inherited_from_ancestor": None}))
        result.rules += 1

    db.conn.commit()
    logger.info("Import complete: %s", result)
    return result
