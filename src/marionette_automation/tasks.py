from __future__ import annotations

from pathlib import Path
from typing import Any, Optional
import tomllib

from .errors import TaskDefinitionError
from .operations import OPERATION_REGISTRY
from .types import CapabilityKind, IdempotencyGuard, TaskSet, TaskSpec

RESERVED_KEYS = {
    "name",
    "type",
    "tags",
    "when",
    "creates",
    "removes",
    "only_if",
    "unless",
    "continue_on_error",
    "timeout",
    "defaults",
    "on_success",
    "on_failure",
}


class TaskLoader:
    """Loads ordered task declarations from TOML task files."""

    def load(self, path: Path) -> TaskSet:
        path = Path(path)
        try:
            data = tomllib.loads(path.read_text())
        except FileNotFoundError:
            raise TaskDefinitionError(f"{path}: task file not found") from None
        except tomllib.TOMLDecodeError as exc:
            raise TaskDefinitionError(f"{path}: {exc}") from None
        try:
            task_set = self.parse(data)
        except TaskDefinitionError as exc:
            raise TaskDefinitionError(f"{path}: {exc}") from None
        self._attach_task_dir(task_set.tasks, path.parent)
        return task_set

    def parse(self, data: dict[str, Any]) -> TaskSet:
        defaults = data.get("defaults", {})
        if not isinstance(defaults, dict):
            raise TaskDefinitionError("defaults must be a table")
        raw_tasks = data.get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise TaskDefinitionError("tasks must be an array of tables")
        tasks = [self._parse_task(raw, f"{index}") for index, raw in enumerate(raw_tasks, start=1)]
        return TaskSet(tasks=tasks, defaults=dict(defaults))

    def _parse_task(self, raw: Any, task_index: str) -> TaskSpec:
        if not isinstance(raw, dict):
            raise TaskDefinitionError(f"task {task_index} must be a table")
        raw_kind = raw.get("type")
        if not raw_kind:
            raise TaskDefinitionError(f"task {task_index} is missing a type")
        try:
            kind = CapabilityKind(str(raw_kind))
        except ValueError:
            known = ", ".join(k.value for k in CapabilityKind)
            raise TaskDefinitionError(
                f"task {task_index} has unknown type '{raw_kind}' (expected one of: {known})"
            ) from None
        name = str(raw.get("name") or f"{kind.value}-{task_index}")

        guard = IdempotencyGuard(
            creates=_optional_str(raw.get("creates")),
            removes=_optional_str(raw.get("removes")),
            only_if=raw.get("only_if"),
            unless=raw.get("unless"),
        )
        if not OPERATION_REGISTRY[kind].inspectable and guard.is_empty():
            raise TaskDefinitionError(
                f"task '{name}' ({kind.value}) cannot inspect current state and declares no "
                "idempotency guard (creates, removes, only_if or unless)"
            )

        when = raw.get("when")
        if when is not None and not isinstance(when, str):
            if isinstance(when, list):
                when = " and ".join(f"({clause})" for clause in when)
            else:
                raise TaskDefinitionError(f"task '{name}' when must be a string or list of strings")

        task_defaults = raw.get("defaults", {})
        if not isinstance(task_defaults, dict):
            raise TaskDefinitionError(f"task '{name}' defaults must be a table")

        return TaskSpec(
            name=name,
            kind=kind,
            params={k: v for k, v in raw.items() if k not in RESERVED_KEYS},
            when=when,
            tags=_tags(raw.get("tags"), name),
            guard=guard,
            continue_on_error=bool(raw.get("continue_on_error", False)),
            timeout=_timeout(raw.get("timeout"), name),
            defaults=dict(task_defaults),
            on_success=self._parse_nested(raw.get("on_success"), f"{task_index}.s"),
            on_failure=self._parse_nested(raw.get("on_failure"), f"{task_index}.f"),
        )

    def _parse_nested(self, value: Any, task_index: str) -> list[TaskSpec]:
        if not value:
            return []
        items = value if isinstance(value, list) else [value]
        return [self._parse_task(raw, f"{task_index}.{idx}") for idx, raw in enumerate(items, start=1)]

    @staticmethod
    def _attach_task_dir(tasks: list[TaskSpec], base_dir: Path) -> None:
        base = str(base_dir)
        for task in tasks:
            task.params.setdefault("_task_dir", base)
            TaskLoader._attach_task_dir(task.on_success, base_dir)
            TaskLoader._attach_task_dir(task.on_failure, base_dir)


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _tags(value: Any, name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        raise TaskDefinitionError(f"task '{name}' tags must be a string or list of strings")
    tags: list[str] = []
    for tag in value:
        text = str(tag).strip()
        if text and text not in tags:
            tags.append(text)
    return tuple(tags)


def _timeout(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise TaskDefinitionError(f"task '{name}' timeout must be numeric") from None
    if timeout <= 0:
        raise TaskDefinitionError(f"task '{name}' timeout must be positive")
    return timeout
