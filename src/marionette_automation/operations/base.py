from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Mapping, Optional

from ..executors import Executor
from ..types import CapabilityKind, HostConfig


@dataclass
class StateProbe:
    """What ``check`` found on the host."""

    converged: bool
    details: str = ""


@dataclass
class OperationResult:
    changed: bool
    details: str
    failed: bool = False


class Operation(ABC):
    """Shared surface for capability handlers.

    Inspectable handlers implement ``check`` so the runner can skip ``apply``
    on a converged host. Handlers that cannot inspect state set
    ``inspectable = False`` and rely on the task's idempotency guard.
    """

    kind: ClassVar[CapabilityKind]
    inspectable: ClassVar[bool] = True
    # Display width for ``resource()``; applied after secrets are redacted.
    resource_width: ClassVar[Optional[int]] = None

    def __init__(self, params: dict[str, Any], *, context: Optional[Mapping[str, Any]] = None):
        self.params = params
        self.context = dict(context or {})

    def check(self, host: HostConfig, executor: Executor) -> StateProbe:
        raise NotImplementedError(f"{self.kind.value} cannot inspect current state")

    @abstractmethod
    def apply(self, host: HostConfig, executor: Executor) -> OperationResult:
        """Bring ``host`` to the declared state using ``executor``."""

    def resource(self) -> Optional[str]:
        for key in ("name", "path", "packages"):
            value = self.params.get(key)
            if isinstance(value, (list, tuple)) and value:
                rendered = ", ".join(str(v) for v in value[:3])
                return rendered + (", ..." if len(value) > 3 else "")
            if value:
                return str(value)
        return None


def shorten(text: str, limit: Optional[int]) -> str:
    if limit is None or len(text) <= limit:
        return text
    return text[: limit - 3] + "..."

