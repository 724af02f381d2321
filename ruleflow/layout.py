"""Layout builder: flat rule records → positioned nodes and directed edges.

Two pipeline rows, each under a section label, stacked top to bottom:

    Form Load     [Query] → [Display group] → [Form Render]
    Record Write  [Before group] → [Database] → [After group]    [Async group]

The Form Load row only exists when at least one display rule is present.
Async rules run outside the write transaction, so their group never gets an
edge to the database pivot.

build_layout() is pure: identical arguments always produce an identical
Diagram (same ids, positions and ordering). Container nodes (labels, groups,
pivots) are collected in a first pass and rule leaves appended after them,
so any renderer resolving parent_id by first occurrence sees the parent first.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Iterable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from ruleflow.config import LayoutConfig
from ruleflow.models import Phase, Rule

logger = logging.getLogger(__name__)

SOURCE_HANDLE = "group-source"
TARGET_HANDLE = "group-target"

FORM_LOAD_LABEL_ID = "label-form-load"
RECORD_WRITE_LABEL_ID = "label-record-write"


# --- Output types ---


class Position(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float
    y: float


class Size(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: float
    height: float


class _Node(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    position: Position
    size: Size


class SectionLabelNode(_Node):
    """Non-interactive divider above a pipeline row."""
    type: Literal["section-label"] = "section-label"
    label: str
    sublabel: str | None = None


class GroupNode(_Node):
    """Collapsible container holding every rule of one phase."""
    type: Literal["group"] = "group"
    phase: Phase
    label: str
    rule_count: int
    collapsed: bool


class RuleNode(_Node):
    """Leaf rule card. Position is relative to the parent group."""
    type: Literal["rule"] = "rule"
    parent_id: str
    rule: Rule
    selected: bool = False


class PivotRole(str, Enum):
    READ = "read"
    WRITE = "write"
    RENDER = "render"

    @property
    def node_id(self) -> str:
        return f"pivot-{self.value}"


PIVOT_LABELS = {
    PivotRole.READ: "Database Query",
    PivotRole.WRITE: "Database Operation",
    PivotRole.RENDER: "Form Render",
}


class PivotNode(_Node):
    """Fixed anchor for the underlying data operation."""
    type: Literal["pivot"] = "pivot"
    role: PivotRole
    label: str
    subject: str


LayoutNode = Annotated[
    Union[SectionLabelNode, GroupNode, RuleNode, PivotNode],
    Field(discriminator="type"),
]


class EdgeKind(str, Enum):
    SEQUENTIAL = "sequential"
    PIVOT_LINK = "pivot-link"


class Edge(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None
    kind: EdgeKind
    intent: str  # visual intent, passed through to the renderer untouched
    label: str | None = None
    animated: bool = False


class Diagram(BaseModel):
    """The (nodes, edges) pair handed to the renderer."""

    subject: str
    nodes: list[LayoutNode] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    def node(self, node_id: str) -> _Node | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def edge(self, edge_id: str) -> Edge | None:
        for e in self.edges:
            if e.id == edge_id:
                return e
        return None

    @property
    def groups(self) -> list[GroupNode]:
        return [n for n in self.nodes if isinstance(n, GroupNode)]

    @property
    def rule_nodes(self) -> list[RuleNode]:
        return [n for n in self.nodes if isinstance(n, RuleNode)]

    @property
    def group_ids(self) -> set[str]:
        return {g.id for g in self.groups}

    @property
    def has_content(self) -> bool:
        """False when every group is empty (e.g. all rules filtered out)."""
        return any(g.rule_count for g in self.groups)


# --- Grouping and sizing ---


@dataclass(frozen=True)
class PhaseGroup:
    phase: Phase
    rules: tuple[Rule, ...] = ()

    @property
    def id(self) -> str:
        return self.phase.group_id


def partition_rules(rules: Iterable[Rule]) -> dict[Phase, PhaseGroup]:
    """Bucket rules by phase, each bucket sorted by order (stable).

    Rules whose phase is not one of the four recognized values are dropped,
    as is any rule repeating an id already seen (the first one wins).
    """
    buckets: dict[Phase, list[Rule]] = {p: [] for p in Phase}
    seen: set[str] = set()
    dropped = 0
    for rule in rules:
        if rule.id in seen:
            logger.debug("Skipped duplicate rule id %s", rule.id)
            continue
        seen.add(rule.id)
        phase = rule.recognized_phase
        if phase is None:
            dropped += 1
            continue
        buckets[phase].append(rule)
    if dropped:
        logger.debug("Skipped %d rules with unrecognized phase", dropped)
    return {
        phase: PhaseGroup(phase, tuple(sorted(bucket, key=lambda r: r.order)))
        for phase, bucket in buckets.items()
    }


def group_height(rule_count: int, collapsed: bool, config: LayoutConfig) -> int:
    if collapsed:
        return config.group_collapsed_height
    body = config.group_header + rule_count * (config.node_height + config.node_gap)
    return max(config.group_min_height, body + config.group_padding_bottom)


def rule_node_id(rule: Rule) -> str:
    return f"rule-{rule.id}"


# --- Builder ---


@dataclass
class _DiagramBuilder:
    subject: str
    collapsed: frozenset[str]
    selected_rule_id: str | None
    config: LayoutConfig
    containers: list[LayoutNode] = field(default_factory=list)
    leaves: list[RuleNode] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)

    def is_expanded(self, group: PhaseGroup) -> bool:
        return group.id not in self.collapsed

    def add_form_load_row(self, top: float, display: PhaseGroup) -> float:
        """Query → display group → form render. Returns the next row's top."""
        c = self.config
        row_top = self._add_section_label(
            FORM_LOAD_LABEL_ID, "Form Load Pipeline", "query → display → render",
            top, right=c.render_x + c.pivot_width,
        )
        tallest = self._add_group(display, c.display_x, row_top)
        pivot_y = self._pivot_y(row_top, tallest)
        self._add_pivot(PivotRole.READ, c.read_x, pivot_y)
        self._add_pivot(PivotRole.RENDER, c.render_x, pivot_y)
        self._link_pivot_to_group(PivotRole.READ, display)
        self._link_group_to_pivot(display, PivotRole.RENDER)
        return row_top + max(tallest, c.pivot_height) + c.row_gap

    def add_record_write_row(self, top: float, groups: dict[Phase, PhaseGroup]) -> float:
        """Before → database → after, with async alongside. Returns the next row's top."""
        c = self.config
        before, after, async_ = groups[Phase.BEFORE], groups[Phase.AFTER], groups[Phase.ASYNC]
        right = (c.async_x if async_.rules else c.after_x) + c.group_width
        row_top = self._add_section_label(
            RECORD_WRITE_LABEL_ID, "Record Write Pipeline", "before → database → after",
            top, right=right,
        )
        heights = [
            self._add_group(before, c.before_x, row_top),
            self._add_group(after, c.after_x, row_top),
        ]
        if async_.rules:
            heights.append(self._add_group(async_, c.async_x, row_top))
        tallest = max(heights)
        self._add_pivot(PivotRole.WRITE, c.write_x, self._pivot_y(row_top, tallest))
        self._link_group_to_pivot(before, PivotRole.WRITE)
        self._link_pivot_to_group(PivotRole.WRITE, after)
        return row_top + max(tallest, c.pivot_height) + c.row_gap

    def diagram(self) -> Diagram:
        return Diagram(
            subject=self.subject,
            nodes=[*self.containers, *self.leaves],
            edges=list(self.edges),
        )

    def _pivot_y(self, row_top: float, tallest: int) -> float:
        # Never above the row top, even when every group is collapsed.
        return row_top + max(0, (tallest - self.config.pivot_height) / 2)

    def _add_section_label(
        self, node_id: str, label: str, sublabel: str, top: float, right: float,
    ) -> float:
        c = self.config
        self.containers.append(SectionLabelNode(
            id=node_id,
            position=Position(x=c.left_margin, y=top),
            size=Size(width=right - c.left_margin, height=c.label_height),
            label=label,
            sublabel=sublabel,
        ))
        return top + c.label_height + c.label_gap

    def _add_pivot(self, role: PivotRole, x: float, y: float) -> None:
        c = self.config
        self.containers.append(PivotNode(
            id=role.node_id,
            position=Position(x=x, y=y),
            size=Size(width=c.pivot_width, height=c.pivot_height),
            role=role,
            label=PIVOT_LABELS[role],
            subject=self.subject,
        ))

    def _add_group(self, group: PhaseGroup, x: float, y: float) -> int:
        """Add a group container and, unless collapsed, its rules. Returns its height."""
        c = self.config
        expanded = self.is_expanded(group)
        height = group_height(len(group.rules), not expanded, c)
        self.containers.append(GroupNode(
            id=group.id,
            position=Position(x=x, y=y),
            size=Size(width=c.group_width, height=height),
            phase=group.phase,
            label=group.phase.label,
            rule_count=len(group.rules),
            collapsed=not expanded,
        ))
        if not expanded:
            return height

        for idx, rule in enumerate(group.rules):
            node_id = rule_node_id(rule)
            self.leaves.append(RuleNode(
                id=node_id,
                parent_id=group.id,
                position=Position(
                    x=c.group_padding_x,
                    y=c.group_header + idx * (c.node_height + c.node_gap),
                ),
                size=Size(width=c.node_width, height=c.node_height),
                rule=rule,
                selected=rule.id == self.selected_rule_id,
            ))
            if idx < len(group.rules) - 1:
                next_id = rule_node_id(group.rules[idx + 1])
                self.edges.append(Edge(
                    id=f"seq-{node_id}-{next_id}",
                    source=node_id,
                    target=next_id,
                    kind=EdgeKind.SEQUENTIAL,
                    intent="sequence",
                ))
        return height

    def _empty_label(self, group: PhaseGroup) -> str | None:
        # Only an expanded group announces that it is empty.
        if not group.rules and self.is_expanded(group):
            return f"No {group.phase.label} rules"
        return None

    def _link_group_to_pivot(self, group: PhaseGroup, role: PivotRole) -> None:
        if group.rules and self.is_expanded(group):
            source, handle = rule_node_id(group.rules[-1]), None
        else:
            source, handle = group.id, SOURCE_HANDLE
        self.edges.append(Edge(
            id=f"edge-{group.phase.value}-{role.value}",
            source=source,
            source_handle=handle,
            target=role.node_id,
            kind=EdgeKind.PIVOT_LINK,
            intent=group.phase.value,
            label=self._empty_label(group),
            animated=True,
        ))

    def _link_pivot_to_group(self, role: PivotRole, group: PhaseGroup) -> None:
        if group.rules and self.is_expanded(group):
            target, handle = rule_node_id(group.rules[0]), None
        else:
            target, handle = group.id, TARGET_HANDLE
        self.edges.append(Edge(
            id=f"edge-{role.value}-{group.phase.value}",
            source=role.node_id,
            target=target,
            target_handle=handle,
            kind=EdgeKind.PIVOT_LINK,
            intent=group.phase.value,
            label=self._empty_label(group),
            animated=True,
        ))


def build_layout(
    subject: str,
    rules: Iterable[Rule],
    collapsed_group_ids: Iterable[str] = (),
    selected_rule_id: str | None = None,
    config: LayoutConfig | None = None,
) -> Diagram:
    """Lay out ``rules`` for ``subject`` as a Form Load row (optional) above a Record Write row."""
    config = config or LayoutConfig()
    groups = partition_rules(rules)
    builder = _DiagramBuilder(
        subject=subject,
        collapsed=frozenset(collapsed_group_ids),
        selected_rule_id=selected_rule_id,
        config=config,
    )

    top: float = config.top_offset
    display = groups[Phase.DISPLAY]
    if display.rules:
        top = builder.add_form_load_row(top, display)
    builder.add_record_write_row(top, groups)

    diagram = builder.diagram()
    logger.debug(
        "Laid out %s: %d nodes, %d edges", subject, len(diagram.nodes), len(diagram.edges),
    )
    return diagram
