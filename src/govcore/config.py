"""
Configuration

Runtime settings for a governance store, loadable from YAML.
"""

from enum import Enum
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator


class TieBreakRule(str, Enum):
    """How to order two assignments of equal specificity for the same policy.

    ``most_recent`` is an assumption awaiting product clarification, not a
    confirmed requirement; ``earliest`` is offered so the choice can be
    flipped per deployment without a code change.
    """

    MOST_RECENT = "most_recent"
    EARLIEST = "earliest"


class GovernanceConfig(BaseModel):
    """Configuration for a governance store and its engines."""

    journal_backend: Literal["memory", "jsonl"] = Field(
        default="memory", description="Where change records are made durable"
    )
    journal_path: Optional[str] = Field(default=None, description="File for the jsonl journal")
    journal_fsync: bool = Field(default=True, description="fsync after every journal batch")

    lock_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    max_reader_streak: int = Field(
        default=32,
        ge=1,
        description="Readers admitted ahead of a waiting writer before the writer goes first",
    )

    tie_break: TieBreakRule = Field(default=TieBreakRule.MOST_RECENT)
    default_actor: str = Field(default="system")

    @model_validator(mode="after")
    def _check_journal(self) -> "GovernanceConfig":
        if self.journal_backend == "jsonl" and not self.journal_path:
            raise ValueError("journal_path is required for the jsonl journal backend")
        return self

    @classmethod
    def from_yaml(cls, path: str | Path) -> "GovernanceConfig":
        """Load configuration from a YAML file."""
        path = Path(path)
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self, path: str | Path) -> None:
        """Save this configuration to a YAML file."""
        path = Path(path)
        data = self.model_dump(mode="json")
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
