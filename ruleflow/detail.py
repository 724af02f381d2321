"""Rule card text and the lazily loaded rule detail view."""

import logging
from typing import Protocol

from pydantic import BaseModel

from ruleflow.errors import NotFound
from ruleflow.models import Rule, RuleScript

logger = logging.getLogger(__name__)

DESCRIPTION_PREVIEW_CHARS = 60


class ScriptSource(Protocol):
    async def fetch_script(self, rule_id: str) -> RuleScript: ...


class RuleDetail(BaseModel):
    rule: Rule
    operations: list[str]
    script_body: str | None = None
    script_error: str | None = None


def triggered_operations(rule: Rule) -> list[str]:
    ops: list[str] = []
    if rule.triggers_insert:
        ops.append("Insert")
    if rule.triggers_update:
        ops.append("Update")
    if rule.triggers_delete:
        ops.append("Delete")
    if rule.triggers_query:
        ops.append("Query")
    return ops


def action_label(rule: Rule) -> str:
    """Compact 'Insert · Update' style label for a rule card."""
    ops = triggered_operations(rule)
    return " · ".join(ops) if ops else "No operations"


def description_preview(text: str, limit: int = DESCRIPTION_PREVIEW_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "…"


async def load_rule_detail(source: ScriptSource, rule: Rule) -> RuleDetail:
    """Fetch the script body for ``rule``. A missing record is reported, not raised."""
    detail = RuleDetail(rule=rule, operations=triggered_operations(rule))
    try:
        script = await source.fetch_script(rule.id)
    except NotFound as e:
        logger.info("Script not found for rule %s", rule.id)
        detail.script_error = str(e)
        return detail
    detail.script_body = script.script_body
    return detail
