from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional, Sequence
import logging

from .base import Operation, OperationResult, shorten
from ..executors import CommandResult, Executor
from ..types import CapabilityKind, HostConfig

logger = logging.getLogger(__name__)

_MAX_DETAIL = 160


class ExecOperation(Operation):
    """Run an opaque command; idempotency comes from the task's guard.

    Params: ``command`` (string run through ``sh -c``, or an argv list),
    optional ``cwd``, ``env`` (mapping or ``KEY=VALUE`` list) and ``returns``
    (accepted exit codes, default ``[0]``).
    """

    kind = CapabilityKind.EXEC
    inspectable = False
    resource_width = 40

    def __init__(self, params: dict[str, Any], *, context: Optional[Mapping[str, Any]] = None):
        super().__init__(params, context=context)
        command = params.get("command", params.get("cmd"))
        if command is None:
            raise ValueError("exec task requires a command")
        self.command = normalize_command(command)
        cwd = params.get("cwd")
        self.cwd = Path(str(cwd)).expanduser() if cwd else None
        self.env = parse_env(params.get("env", params.get("environment")))
        self.accepted_codes = parse_returns(params.get("returns"))

    def apply(self, host: HostConfig, executor: Executor) -> OperationResult:
        result = executor.run(self.command, check=False, env=self.env, cwd=self.cwd)
        if result.returncode in self.accepted_codes:
            return OperationResult(True, "dry-run" if executor.dry_run else f"ran (rc={result.returncode})")

        logger.debug("host=%s command exited %s: %s", host.name, result.returncode, self.command)
        summary = summarize_output(result)
        detail = f"rc={result.returncode}: {summary}" if summary else f"rc={result.returncode}"
        return OperationResult(False, detail, failed=True)

    def resource(self) -> Optional[str]:
        return self.command[-1] if self.command[:2] == ["sh", "-c"] else " ".join(self.command)


def normalize_command(value: Any) -> list[str]:
    """Shell strings become ``sh -c``; sequences are used as argv."""

    if isinstance(value, str):
        return ["sh", "-c", value]
    if isinstance(value, Sequence):
        return [str(part) for part in value]
    raise ValueError("command must be a string or list")


def parse_env(value: Any) -> Optional[dict[str, str]]:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return {str(key): str(val) for key, val in value.items()}
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ValueError("exec env must be a mapping or list of KEY=VALUE strings")
    pairs = [str(item).partition("=") for item in value]
    if any(not sep for _, sep, _ in pairs):
        raise ValueError("env list entries must be KEY=VALUE")
    return {key: val for key, _, val in pairs}


def parse_returns(value: Any) -> set[int]:
    if value is None:
        return {0}
    if isinstance(value, int):
        return {value}
    if isinstance(value, Sequence) and not isinstance(value, str):
        return {int(code) for code in value}
    raise ValueError("exec returns must be an int or list of ints")


def summarize_output(result: CommandResult) -> Optional[str]:
    """First non-empty line of stderr, falling back to stdout."""

    for stream in (result.stderr, result.stdout):
        lines = (stream or "").strip().splitlines()
        if lines:
            return shorten(lines[0], _MAX_DETAIL)
    return None
