"""Pydantic models for rule flow."""

from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DEFAULT_RANK = 100


class Phase(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    ASYNC = "async"
    DISPLAY = "display"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def group_id(self) -> str:
        return f"group-{self.value}"


RECOGNIZED_PHASES = frozenset(p.value for p in Phase)
ALL_GROUP_IDS = frozenset(p.group_id for p in Phase)


def _alias(name: str, wire_name: str) -> AliasChoices:
    return AliasChoices(name, wire_name)


# --- Rule records (what the rule source returns) ---


class Rule(BaseModel):
    """A single event-triggered rule attached to a subject.

    Accepts both the snake_case field names and the rule export names
    (``sys_id``, ``when``, ``action_insert`` ...). Missing, zero or non-numeric
    ``order``/``priority`` values fall back to 100.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(validation_alias=_alias("id", "sys_id"))
    name: str = ""
    phase: str = Field(default="", validation_alias=_alias("phase", "when"))
    order: int = DEFAULT_RANK
    priority: int = DEFAULT_RANK
    active: bool = True
    triggers_insert: bool = Field(default=False, validation_alias=_alias("triggers_insert", "action_insert"))
    triggers_update: bool = Field(default=False, validation_alias=_alias("triggers_update", "action_update"))
    triggers_delete: bool = Field(default=False, validation_alias=_alias("triggers_delete", "action_delete"))
    triggers_query: bool = Field(default=False, validation_alias=_alias("triggers_query", "action_query"))
    aborts_on_condition: bool = Field(
        default=False, validation_alias=_alias("aborts_on_condition", "abort_action"),
    )
    filter_expression: str = Field(
        default="", validation_alias=_alias("filter_expression", "filter_condition"),
    )
    condition: str = ""
    description: str = ""
    script_body: str = Field(default="", validation_alias=_alias("script_body", "script"))
    inherited_from_ancestor: str | None = Field(
        default=None, validation_alias=_alias("inherited_from_ancestor", "inherited_from"),
    )

    @field_validator("order", "priority", mode="before")
    @classmethod
    def _default_rank(cls, value: Any) -> int:
        if isinstance(value, bool):
            return DEFAULT_RANK
        try:
            rank = int(value)
        except (TypeError, ValueError, OverflowError):
            return DEFAULT_RANK
        # 0 counts as unset, same as a blank field in a rule export.
        return rank or DEFAULT_RANK

    @field_validator(
        "name", "phase", "filter_expression", "condition", "description", "script_body",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator(
        "active", "triggers_insert", "triggers_update", "triggers_delete",
        "triggers_query", "aborts_on_condition",
        mode="before",
    )
    @classmethod
    def _none_to_false(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("inherited_from_ancestor", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return value or None

    @property
    def recognized_phase(self) -> Phase | None:
        """The rule's phase, or None when it is not one of the four known phases."""
        if self.phase in RECOGNIZED_PHASES:
            return Phase(self.phase)
        return None

    @property
    def is_inherited(self) -> bool:
        return self.inherited_from_ancestor is not None


class RuleScript(BaseModel):
    """Script body fetched lazily for the detail view."""
    rule_id: str
    script_body: str = Field(default="", validation_alias=_alias("script_body", "script"))


class SubjectRow(BaseModel):
    name: str
    label: str | None = None
    parent: str | None = None
    created_at: str


# --- View filters ---


class FilterName(str, Enum):
    HIDE_INHERITED = "hide_inherited"
    HIDE_ACTIVE = "hide_active"
    HIDE_INACTIVE = "hide_inactive"


class ViewFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    hide_inherited: bool = False
    hide_active: bool = False
    hide_inactive: bool = False

    def hides(self, rule: Rule) -> bool:
        """True if any enabled filter removes ``rule`` from the diagram."""
        if self.hide_inherited and rule.is_inherited:
            return True
        if self.hide_active and rule.active:
            return True
        if self.hide_inactive and not rule.active:
            return True
        return False

    def apply(self, rules: list[Rule]) -> list[Rule]:
        return [r for r in rules if not self.hides(r)]
