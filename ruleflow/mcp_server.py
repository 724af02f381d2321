#!/usr/bin/env python3
"""Rule Flow MCP Server: rule diagrams for a subject."""

import json
import logging
import sys
from typing import Optional

from mcp.server.fastmcp import FastMCP

from ruleflow.config import Config, load_config
from ruleflow.controller import LoadStatus, ViewStateController
from ruleflow.db import RuleDB
from ruleflow.errors import RuleflowError
from ruleflow.models import FilterName
from ruleflow.service import RuleService

mcp = FastMCP("ruleflow")
logger = logging.getLogger(__name__)

# Redirect all logging to stderr so stdout stays clean for MCP stdio transport
logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

_db: RuleDB | None = None
_config: Config | None = None


def _get_config() -> Config:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _get_db() -> RuleDB:
    global _db
    if _db is None:
        _db = RuleDB(_get_config())
        _db.init_db()
    return _db


def _get_service() -> RuleService:
    return RuleService(_get_db(), _get_config())


@mcp.tool()
async def get_rules(subject: str) -> str:
    """Get all rules for a subject, including rules inherited from ancestor subjects."""
    try:
        rules = await _get_service().fetch_rules(subject)
        return json.dumps([r.model_dump() for r in rules])
    except RuleflowError as e:
        return json.dumps({"error": str(e)})


@mcp.tool()
async def get_rule_script(rule_id: str) -> str:
    """Get the script body of a single rule."""
    try:
        script = await _get_service().fetch_script(rule_id)
        return json.dumps(script.model_dump())
    except RuleflowError as e:
        return json.dumps({"error": str(e)})


@mcp.tool()
async def get_diagram(
    subject: str,
    expand: Optional[list[str]] = None,
    expand_all: bool = False,
    hide_inherited: bool = False,
    hide_active: bool = False,
    hide_inactive: bool = False,
    selected_rule_id: Optional[str] = None,
) -> str:
    """Lay out the rule diagram for a subject. Groups start collapsed; pass phases in `expand`."""
    service = _get_service()
    controller = ViewStateController(service, service, layout_config=_get_config().layout)
    outcome = await controller.load_subject(subject)
    await controller.flush_background()
    if outcome.status != LoadStatus.LOADED or controller.diagram is None:
        return json.dumps({"error": outcome.message, "status": outcome.status.value})

    flags = {
        FilterName.HIDE_INHERITED: hide_inherited,
        FilterName.HIDE_ACTIVE: hide_active,
        FilterName.HIDE_INACTIVE: hide_inactive,
    }
    for name, value in flags.items():
        if value:
            controller.set_filter(name, True)
    if expand_all:
        controller.expand_all()
    else:
        for group in expand or []:
            controller.toggle_group(group if group.startswith("group-") else f"group-{group}")
    if selected_rule_id:
        controller.select_rule(selected_rule_id)

    return json.dumps(controller.diagram.model_dump(mode="json"))


@mcp.tool()
def list_subjects() -> str:
    """List subjects that have at least one active rule."""
    try:
        return json.dumps(_get_service().list_subjects())
    except RuleflowError as e:
        return json.dumps({"error": str(e)})


@mcp.tool()
def search_subjects(query: str) -> str:
    """Search subjects by name or label (max 20 matches)."""
    try:
        return json.dumps(_get_service().search_subjects(query))
    except RuleflowError as e:
        return json.dumps({"error": str(e)})


@mcp.tool()
async def recent_subjects() -> str:
    """List recently viewed subjects, most recent first."""
    try:
        return json.dumps(await _get_service().get_recent_subjects())
    except RuleflowError as e:
        return json.dumps({"error": str(e)})


@mcp.tool()
async def forget_subject(subject: str) -> str:
    """Remove a subject from the recently viewed list."""
    try:
        await _get_service().delete_subject_preference(subject)
        return json.dumps({"success": True})
    except RuleflowError as e:
        return json.dumps({"success": False, "error": str(e)})


if __name__ == "__main__":
    mcp.run()
