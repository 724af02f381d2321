"""View state controller: owns session state and re-runs the layout on every change.

Each mutation produces a new immutable ViewState snapshot (with a bumped
version) and hands that snapshot to build_layout(). Rule fetches are tagged
with a generation counter so a slow response for an older subject can never
overwrite the state of a newer request.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Protocol

from pydantic import BaseModel, ConfigDict, Field

from ruleflow.config import LayoutConfig
from ruleflow.detail import RuleDetail, load_rule_detail
from ruleflow.errors import InputMissing, NotFound
from ruleflow.layout import Diagram, build_layout
from ruleflow.models import ALL_GROUP_IDS, FilterName, Rule, RuleScript, ViewFilters

logger = logging.getLogger(__name__)


class RuleSource(Protocol):
    async def fetch_rules(self, subject: str) -> list[Rule]: ...

    async def fetch_script(self, rule_id: str) -> RuleScript: ...


class PreferenceStore(Protocol):
    async def get_recent_subjects(self) -> list[str]: ...

    async def save_subject_preference(self, name: str) -> None: ...

    async def delete_subject_preference(self, name: str) -> None: ...


class LoadStatus(str, Enum):
    LOADED = "loaded"
    EMPTY = "empty"
    FAILED = "failed"
    INPUT_MISSING = "input_missing"
    STALE = "stale"


class LoadOutcome(BaseModel):
    subject: str
    status: LoadStatus
    rule_count: int = 0
    message: str | None = None


class ViewState(BaseModel):
    """Snapshot of everything the layout depends on."""

    model_config = ConfigDict(frozen=True)

    version: int = 0
    subject: str | None = None
    rules: tuple[Rule, ...] = ()
    collapsed_group_ids: frozenset[str] = frozenset()
    selected_rule_id: str | None = None
    filters: ViewFilters = Field(default_factory=ViewFilters)

    def visible_rules(self) -> list[Rule]:
        return self.filters.apply(list(self.rules))


class ViewStateController:
    """Mediates between the rule source, the preference store and the layout builder."""

    def __init__(
        self,
        source: RuleSource,
        preferences: PreferenceStore | None = None,
        layout_config: LayoutConfig | None = None,
        on_render: Callable[[Diagram], None] | None = None,
    ) -> None:
        self.source = source
        self.preferences = preferences
        self.layout_config = layout_config or LayoutConfig()
        self.on_render = on_render
        self.message: str | None = None
        self.loading = False
        self.recent_subjects: list[str] = []
        self._state = ViewState()
        self._diagram: Diagram | None = None
        self._generation = 0
        self._background: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ViewState:
        return self._state

    @property
    def diagram(self) -> Diagram | None:
        return self._diagram

    @property
    def selected_rule(self) -> Rule | None:
        return self._find_rule(self._state.selected_rule_id)

    def visible_rules(self) -> list[Rule]:
        return self._state.visible_rules()

    # --- Loading ---

    async def load_subject(self, name: str) -> LoadOutcome:
        """Fetch rules for ``name`` and, if any come back, make them the active set."""
        subject = name.strip()
        if not subject:
            self.message = "Enter a subject name to visualize."
            return LoadOutcome(subject=name, status=LoadStatus.INPUT_MISSING, message=self.message)

        self._generation += 1
        generation = self._generation
        self.loading = True
        self.message = None

        try:
            rules = await self.source.fetch_rules(subject)
        except InputMissing as e:
            if generation != self._generation:
                return self._stale(subject)
            self.loading = False
            self.message = str(e)
            return LoadOutcome(subject=subject, status=LoadStatus.INPUT_MISSING, message=self.message)
        except (NotFound, ConnectionError) as e:
            if generation != self._generation:
                return self._stale(subject)
            self.loading = False
            self.message = f"Failed to load rules: {e}"
            logger.warning("Rule fetch for %s failed: %s", subject, e)
            return LoadOutcome(subject=subject, status=LoadStatus.FAILED, message=self.message)

        if generation != self._generation:
            return self._stale(subject)

        self.loading = False
        self._persist_in_background(subject)

        if not rules:
            self.message = (
                f'No rules found on subject "{subject}". Check the name and try again.'
            )
            return LoadOutcome(subject=subject, status=LoadStatus.EMPTY, message=self.message)

        self._commit(
            subject=subject,
            rules=tuple(rules),
            selected_rule_id=None,
            collapsed_group_ids=ALL_GROUP_IDS,
            filters=ViewFilters(),
        )
        logger.info("Loaded %d rules for %s", len(rules), subject)
        return LoadOutcome(subject=subject, status=LoadStatus.LOADED, rule_count=len(rules))

    def _stale(self, subject: str) -> LoadOutcome:
        logger.info("Discarding stale response for %s", subject)
        return LoadOutcome(subject=subject, status=LoadStatus.STALE)

    # --- Interactions ---

    def toggle_group(self, group_id: str) -> None:
        if self._diagram is None or group_id not in self._diagram.group_ids:
            logger.debug("Ignoring toggle for unknown group %s", group_id)
            return
        collapsed = set(self._state.collapsed_group_ids)
        if group_id in collapsed:
            collapsed.remove(group_id)
        else:
            collapsed.add(group_id)
        self._commit(collapsed_group_ids=frozenset(collapsed))

    def expand_all(self) -> None:
        self._commit(collapsed_group_ids=frozenset())

    def select_rule(self, rule_id: str | None) -> None:
        self._commit(selected_rule_id=rule_id)

    def set_filter(self, name: FilterName | str, value: bool) -> None:
        """Set one view filter. Enabling a filter that hides the selected rule clears the selection."""
        filter_name = FilterName(name)
        filters = self._state.filters.model_copy(update={filter_name.value: bool(value)})
        selected_id = self._state.selected_rule_id
        selected = self._find_rule(selected_id)
        if value and selected is not None and filters.hides(selected):
            selected_id = None
        self._commit(filters=filters, selected_rule_id=selected_id)

    def dismiss_message(self) -> None:
        self.message = None

    async def open_detail(self) -> RuleDetail | None:
        """Lazily fetch the script for the selected rule."""
        rule = self.selected_rule
        if rule is None:
            return None
        return await load_rule_detail(self.source, rule)

    # --- Preferences ---

    async def refresh_recent(self) -> list[str]:
        if self.preferences is None:
            return self.recent_subjects
        try:
            self.recent_subjects = await self.preferences.get_recent_subjects()
        except Exception:
            logger.warning("Could not read recent subjects", exc_info=True)
        return self.recent_subjects

    async def forget_subject(self, name: str) -> None:
        if self.preferences is None:
            return
        try:
            await self.preferences.delete_subject_preference(name)
        except Exception:
            logger.warning("Could not remove %s from recent subjects", name, exc_info=True)
            return
        await self.refresh_recent()

    async def flush_background(self) -> None:
        """Wait for pending preference writes."""
        if self._background:
            await asyncio.gather(*list(self._background))

    def _persist_in_background(self, subject: str) -> None:
        if self.preferences is None:
            return
        task = asyncio.get_running_loop().create_task(self._save_preference(subject))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _save_preference(self, subject: str) -> None:
        if self.preferences is None:
            return
        try:
            await self.preferences.save_subject_preference(subject)
            self.recent_subjects = await self.preferences.get_recent_subjects()
        except Exception:
            logger.warning("Could not save subject preference for %s", subject, exc_info=True)

    # --- Internals ---

    def _find_rule(self, rule_id: str | None) -> Rule | None:
        if rule_id is None:
            return None
        for rule in self._state.rules:
            if rule.id == rule_id:
                return rule
        return None

    def _commit(self, **changes: object) -> None:
        self._state = self._state.model_copy(
            update={**changes, "version": self._state.version + 1},
        )
        self._recompute()

    def _recompute(self) -> None:
        state = self._state
        if state.subject is None:
            return
        self._diagram = build_layout(
            state.subject,
            state.visible_rules(),
            state.collapsed_group_ids,
            state.selected_rule_id,
            self.layout_config,
        )
        if self.on_render is not None:
            self.on_render(self._diagram)
