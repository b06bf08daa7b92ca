from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional

from .base import Operation, OperationResult, StateProbe
from .. import templating
from ..executors import Executor
from ..types import CapabilityKind, HostConfig


class FileOperation(Operation):
    """Ensure files, directories and symlinks match the declared state."""

    kind = CapabilityKind.FILE

    def __init__(self, params: dict[str, Any], *, context: Optional[Mapping[str, Any]] = None):
        super().__init__(params, context=context)
        raw_path = params.get("path")
        if not raw_path:
            raise ValueError("file task requires a path")
        self.path = Path(str(raw_path)).expanduser()
        self.state = str(params.get("state", "present"))
        if self.state not in {"present", "absent", "directory", "link"}:
            raise ValueError("file task state must be 'present', 'absent', 'directory' or 'link'")
        raw_content = params.get("content")
        self.content = "" if raw_content is None else str(raw_content)
        self.mode = self._parse_mode(params.get("mode"))
        self.template = params.get("template")
        self.task_dir = params.get("_task_dir")
        self.link_target = params.get("link_target") or params.get("target")
        if self.state == "link" and not self.link_target:
            raise ValueError("file task with state 'link' requires link_target")
        if self.template is not None:
            self.template = str(self.template)
        if self.link_target is not None:
            self.link_target = str(self.link_target)
        self._rendered: Optional[str] = None

    def check(self, host: HostConfig, executor: Executor) -> StateProbe:
        if self.state == "absent":
            if executor.path_exists(self.path):
                return StateProbe(False, "present")
            return StateProbe(True, "absent")
        if self.state == "link":
            current = executor.read_link(self.path)
            if current == self.link_target:
                return StateProbe(True, f"link->{current}")
            return StateProbe(False, f"link->{current}" if current else "no link")
        if self.state == "directory":
            if not executor.is_dir(self.path):
                return StateProbe(False, "missing directory")
            return self._check_mode(executor, "directory")

        if executor.read_file(self.path) != self._render_content():
            return StateProbe(False, "content differs")
        return self._check_mode(executor, "content matches")

    def apply(self, host: HostConfig, executor: Executor) -> OperationResult:
        if self.state == "link":
            return self._apply_symlink(executor)
        if self.state == "directory":
            changed, detail = executor.ensure_directory(self.path, mode=self.mode)
        elif self.state == "absent":
            changed = executor.remove_path(self.path)
            detail = "removed" if changed else "noop"
        else:
            content = self._render_content()
            changed, detail = executor.write_file(self.path, content=content, mode=self.mode)
        return OperationResult(changed, detail)

    def _check_mode(self, executor: Executor, detail: str) -> StateProbe:
        if self.mode is None:
            return StateProbe(True, detail)
        current = executor.file_mode(self.path)
        if current != self.mode:
            shown = f"{current:04o}" if current is not None else "none"
            return StateProbe(False, f"mode {shown} != {self.mode:04o}")
        return StateProbe(True, detail)

    def _render_content(self) -> str:
        if self._rendered is not None:
            return self._rendered
        if not self.template:
            self._rendered = self.content
            return self._rendered
        template_path = Path(self.template).expanduser()
        if not template_path.is_absolute() and self.task_dir is not None:
            template_path = Path(str(self.task_dir)) / template_path
        template_text = template_path.read_text()
        rendered = templating.render(template_text, self.context)
        self._rendered = str(rendered)
        return self._rendered

    def _apply_symlink(self, executor: Executor) -> OperationResult:
        if not executor.ensure_symlink(self.path, str(self.link_target)):
            return OperationResult(False, "noop")
        return OperationResult(True, f"link->{self.link_target}")

    @staticmethod
    def _parse_mode(value: Optional[object]) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if not text:
            return None
        # String modes are always octal: "644", "0644" and "0o644" are equal.
        return int(text.removeprefix("0o"), 8)
