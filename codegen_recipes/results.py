"""Step and recipe result types."""

import datetime
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any

from .output import FileOutput


class StepStatus(str, Enum):
    """Lifecycle state of a step within one run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Condition false, collect pass, or skip_remaining
    BLOCKED = "blocked"  # A dependency failed
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)


class RecipeStatus(str, Enum):
    """Aggregate outcome of a recipe run."""

    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StepResult:
    """Outcome of executing one step."""

    step_name: str
    tool: str
    status: StepStatus = StepStatus.PENDING
    value: Any = None
    files: list[FileOutput] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    attempts: int = 0
    accepted_failure: bool = False  # Failed under on_error: continue
    started_at: datetime.datetime | None = None
    finished_at: datetime.datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class ToolOutput:
    """What a tool returns from ``execute``."""

    value: Any = None
    files: list[FileOutput] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)


@dataclass
class RecipeResult:
    """Aggregate outcome of a recipe run.

    Steps are kept in declaration order. ``variables`` is the final variable
    scope including every published step output.
    """

    recipe_name: str
    status: RecipeStatus
    steps: list[StepResult] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)  # Recipe-level (e.g. validation)
    started_at: datetime.datetime | None = None
    finished_at: datetime.datetime | None = None

    @property
    def success(self) -> bool:
        return self.status == RecipeStatus.COMPLETED

    @property
    def is_partial(self) -> bool:
        """True when some work completed but not all of it succeeded."""
        if self.status not in (RecipeStatus.COMPLETED_WITH_ERRORS, RecipeStatus.FAILED, RecipeStatus.CANCELLED):
            return False
        return any(r.status == StepStatus.COMPLETED for r in self.steps)

    @property
    def files(self) -> list[FileOutput]:
        return [f for r in self.steps for f in r.files]

    @property
    def failed_steps(self) -> list[StepResult]:
        return [r for r in self.steps if r.status == StepStatus.FAILED]

    def get(self, step_name: str) -> StepResult | None:
        for result in self.steps:
            if result.step_name == step_name:
                return result
        return None

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for result in self.steps:
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        return counts

    def summary(self) -> dict[str, Any]:
        """Compact, serializable summary of the run."""
        return {
            "recipe": self.recipe_name,
            "status": self.status.value,
            "counts": self.counts(),
            "failed_steps": [{"step": r.step_name, "error": r.error} for r in self.failed_steps],
            "files": [f.path for f in self.files],
            "errors": list(self.errors),
        }


def aggregate_status(results: list[StepResult], cancelled: bool = False) -> RecipeStatus:
    """Derive the recipe status from its step results."""
    if cancelled or any(r.status == StepStatus.CANCELLED for r in results):
        return RecipeStatus.CANCELLED
    blocking = [r for r in results if r.status == StepStatus.FAILED and not r.accepted_failure]
    if blocking:
        return RecipeStatus.FAILED
    if any(r.status == StepStatus.FAILED for r in results):
        return RecipeStatus.COMPLETED_WITH_ERRORS
    return RecipeStatus.COMPLETED
