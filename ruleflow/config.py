"""Configuration loading for rule flow."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


class LayoutConfig(BaseModel):
    node_width: int = 220
    node_height: int = 120
    node_gap: int = 20
    group_header: int = 70
    group_padding_x: int = 20
    group_padding_bottom: int = 20
    group_min_height: int = 140
    group_collapsed_height: int = 56  # header only
    pivot_width: int = 160
    pivot_height: int = 160
    top_offset: int = 40
    label_height: int = 40
    label_gap: int = 20
    row_gap: int = 80
    left_margin: int = 50
    # Record Write row columns
    before_x: int = 50
    write_x: int = 390
    after_x: int = 630
    async_x: int = 1040
    # Form Load row columns
    read_x: int = 100
    display_x: int = 340
    render_x: int = 680

    @property
    def group_width(self) -> int:
        return self.node_width + self.group_padding_x * 2


class Config(BaseModel):
    db_path: str = "data/ruleflow.db"
    user: str = "default"
    recent_limit: int = 10
    search_limit: int = 20
    layout: LayoutConfig = Field(default_factory=LayoutConfig)

    @property
    def resolved_db_path(self) -> Path:
        """Resolve db_path relative to project root."""
        p = Path(self.db_path).expanduser()
        if p.is_absolute():
            return p
        return _project_root() / p


def _project_root() -> Path:
    """Return the ruleflow project root directory."""
    return Path(__file__).parent.parent


def load_config(config_path: Path | None = None) -> Config:
    """Load config from YAML file. Falls back to defaults if file missing."""
    if config_path is None:
        config_path = _project_root() / "config.yaml"

    if config_path.exists():
        raw: dict[str, Any] = yaml.safe_load(config_path.read_text()) or {}
        return Config(**raw)

    return Config()
