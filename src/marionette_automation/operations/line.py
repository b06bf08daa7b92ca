from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Mapping, Optional

from .base import Operation, OperationResult, StateProbe
from ..errors import TaskFailure
from ..executors import Executor
from ..types import CapabilityKind, HostConfig


class LineOperation(Operation):
    """Ensure a single line is present in, or absent from, a text file.

    With ``regexp`` the last matching line is replaced by ``line`` (or every
    matching line removed for ``state = "absent"``); otherwise the line is
    compared literally and appended when missing.
    """

    kind = CapabilityKind.LINE

    def __init__(self, params: dict[str, Any], *, context: Optional[Mapping[str, Any]] = None):
        super().__init__(params, context=context)
        raw_path = params.get("path")
        if not raw_path:
            raise ValueError("line task requires a path")
        self.path = Path(str(raw_path)).expanduser()
        self.state = str(params.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("line task state must be 'present' or 'absent'")
        line = params.get("line")
        if self.state == "present" and line is None:
            raise ValueError("line task with state 'present' requires a line")
        self.line = None if line is None else str(line)
        if self.line is not None and "\n" in self.line:
            raise ValueError("line task line must not contain a newline")
        regexp = params.get("regexp")
        if self.state == "absent" and regexp is None and self.line is None:
            raise ValueError("line task with state 'absent' requires a line or regexp")
        self.regexp = re.compile(str(regexp)) if regexp is not None else None
        self.create = bool(params.get("create", False))

    def check(self, host: HostConfig, executor: Executor) -> StateProbe:
        current = executor.read_file(self.path)
        desired, detail = self._desired(current)
        if desired == current:
            return StateProbe(True, detail)
        return StateProbe(False, detail)

    def apply(self, host: HostConfig, executor: Executor) -> OperationResult:
        current = executor.read_file(self.path)
        desired, detail = self._desired(current)
        if desired is None or desired == current:
            return OperationResult(False, "noop")
        executor.write_file(self.path, content=desired, mode=None)
        return OperationResult(True, detail)

    def _desired(self, current: Optional[str]) -> tuple[Optional[str], str]:
        if current is None:
            if self.state == "absent":
                return None, "file absent"
            if not self.create:
                raise TaskFailure(f"{self.path} does not exist (set create = true to create it)")
            return f"{self.line}\n", "line added"

        lines = current.splitlines()
        trailing = current.endswith("\n") or not current
        if self.state == "absent":
            kept = [ln for ln in lines if not self._matches(ln)]
            if len(kept) == len(lines):
                return current, "line absent"
            return _join(kept, trailing), f"removed {len(lines) - len(kept)} line(s)"

        if self.regexp is not None:
            matches = [idx for idx, ln in enumerate(lines) if self.regexp.search(ln)]
            if matches:
                idx = matches[-1]
                if lines[idx] == self.line:
                    return current, "line present"
                lines[idx] = self.line  # type: ignore[assignment]
                return _join(lines, trailing), "line replaced"
        if self.line in lines:
            return current, "line present"
        lines.append(self.line)  # type: ignore[arg-type]
        return _join(lines, True), "line added"

    def _matches(self, line: str) -> bool:
        if self.regexp is not None:
            return bool(self.regexp.search(line))
        return line == self.line

    def resource(self) -> Optional[str]:
        return str(self.path)


def _join(lines: list[str], trailing_newline: bool) -> str:
    text = "\n".join(lines)
    if trailing_newline and lines:
        text += "\n"
    return text
