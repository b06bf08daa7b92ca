from .base import Operation, OperationResult, StateProbe
from .exec import ExecOperation
from .file import FileOperation
from .line import LineOperation
from .package import PackageOperation
from ..types import CapabilityKind

OPERATION_REGISTRY: dict[CapabilityKind, type[Operation]] = {
    CapabilityKind.PACKAGE: PackageOperation,
    CapabilityKind.FILE: FileOperation,
    CapabilityKind.LINE: LineOperation,
    CapabilityKind.EXEC: ExecOperation,
}

__all__ = [
    "Operation",
    "OperationResult",
    "StateProbe",
    "ExecOperation",
    "FileOperation",
    "LineOperation",
    "PackageOperation",
    "OPERATION_REGISTRY",
]
