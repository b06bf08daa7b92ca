from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class CapabilityKind(str, Enum):
    """Effect families a task can assert."""

    PACKAGE = "package"
    FILE = "file"
    LINE = "line"
    EXEC = "exec"


class TaskOutcome(str, Enum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"


class RunStatus(str, Enum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    FAILED = "failed"
    ERROR = "error"


@dataclass(frozen=True)
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    credential: Optional[str] = None
    groups: tuple[str, ...] = ()
    variables: dict[str, Any] = field(default_factory=dict)
    vars_files: tuple[str, ...] = ()
    vault_files: tuple[str, ...] = ()


@dataclass(frozen=True)
class GroupConfig:
    name: str
    hosts: tuple[str, ...] = ()
    children: tuple[str, ...] = ()
    variables: dict[str, Any] = field(default_factory=dict)
    vars_files: tuple[str, ...] = ()
    vault_files: tuple[str, ...] = ()


@dataclass
class IdempotencyGuard:
    """Side-effect markers for capabilities that cannot inspect live state."""

    creates: Optional[str] = None
    removes: Optional[str] = None
    only_if: Any = None
    unless: Any = None

    def is_empty(self) -> bool:
        return not any(
            value is not None for value in (self.creates, self.removes, self.only_if, self.unless)
        )


@dataclass
class TaskSpec:
    name: str
    kind: CapabilityKind
    params: dict[str, Any] = field(default_factory=dict)
    when: Optional[str] = None
    tags: tuple[str, ...] = ()
    guard: IdempotencyGuard = field(default_factory=IdempotencyGuard)
    continue_on_error: bool = False
    timeout: Optional[float] = None
    defaults: dict[str, Any] = field(default_factory=dict)
    on_success: list["TaskSpec"] = field(default_factory=list)
    on_failure: list["TaskSpec"] = field(default_factory=list)


@dataclass
class TaskSet:
    """Role defaults plus the ordered task list of one task file."""

    tasks: list[TaskSpec]
    defaults: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskResult:
    host: str
    task: str
    kind: str
    outcome: TaskOutcome
    details: str = ""
    resource: Optional[str] = None
    ignored: bool = False

    @property
    def changed(self) -> bool:
        return self.outcome is TaskOutcome.CHANGED

    @property
    def failed(self) -> bool:
        return self.outcome is TaskOutcome.FAILED


@dataclass
class RunResult:
    run_id: str
    host: str
    started_at: datetime
    finished_at: datetime
    status: RunStatus
    results: list[TaskResult] = field(default_factory=list)

    @property
    def failures(self) -> list[TaskResult]:
        return [r for r in self.results if r.failed and not r.ignored]
