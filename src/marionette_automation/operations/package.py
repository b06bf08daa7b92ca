from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Sequence
import logging
import shutil

from .base import Operation, OperationResult, StateProbe
from ..executors import Executor
from ..types import CapabilityKind, HostConfig

logger = logging.getLogger(__name__)


class PackageOperation(Operation):
    """Assert package presence or absence through the detected package manager."""

    kind = CapabilityKind.PACKAGE

    def __init__(self, params: dict[str, Any], *, context: Optional[Mapping[str, Any]] = None):
        super().__init__(params, context=context)
        names = params.get("name") or params.get("packages") or []
        self.packages = [names] if isinstance(names, str) else [str(name) for name in names]
        if not self.packages:
            raise ValueError("package task requires at least one package")
        self.state = str(params.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("package task state must be 'present' or 'absent'")
        self.preferred_manager = params.get("manager")
        self._manager: Optional[PackageManager] = None

    @property
    def manager(self) -> "PackageManager":
        if self._manager is None:
            self._manager = PackageManagerFactory.create(self.preferred_manager)
        return self._manager

    def check(self, host: HostConfig, executor: Executor) -> StateProbe:
        pending = self._pending(executor)
        prefix = f"manager={self.manager.name}"
        if self.state == "present":
            detail = f"missing={','.join(pending)}" if pending else "already-installed"
        else:
            detail = f"installed={','.join(pending)}" if pending else "already-removed"
        return StateProbe(not pending, f"{prefix} {detail}")

    def apply(self, host: HostConfig, executor: Executor) -> OperationResult:
        pending = self._pending(executor)
        prefix = f"manager={self.manager.name}"
        logger.debug("host=%s %s pending=%s", host.name, prefix, pending)
        if not pending:
            return OperationResult(False, f"{prefix} noop")
        if self.state == "present":
            self.manager.install(executor, pending)
            verb = "installed"
        else:
            self.manager.remove(executor, pending)
            verb = "removed"
        return OperationResult(True, f"{prefix} {verb}={','.join(pending)}")

    def _pending(self, executor: Executor) -> list[str]:
        wanted = self.state == "present"
        return [name for name in self.packages if self.manager.is_installed(executor, name) is not wanted]


class PackageManager:
    name = "generic"

    def install(self, executor: Executor, packages: Iterable[str]) -> None:
        raise NotImplementedError

    def remove(self, executor: Executor, packages: Iterable[str]) -> None:
        raise NotImplementedError

    def is_installed(self, executor: Executor, package: str) -> bool:
        raise NotImplementedError


class CommandPackageManager(PackageManager):
    """Package manager driven by fixed command prefixes.

    ``query`` is run with the package name appended; a zero exit code means
    installed unless ``installed_marker`` is set, in which case stdout must
    also contain it.
    """

    def __init__(
        self,
        name: str,
        install: Sequence[str],
        remove: Sequence[str],
        query: Sequence[str],
        *,
        env: Optional[dict[str, str]] = None,
        installed_marker: Optional[str] = None,
    ):
        self.name = name
        self.install_cmd = list(install)
        self.remove_cmd = list(remove)
        self.query_cmd = list(query)
        self.env = env
        self.installed_marker = installed_marker

    def install(self, executor: Executor, packages: Iterable[str]) -> None:
        executor.run([*self.install_cmd, *packages], env=self.env)

    def remove(self, executor: Executor, packages: Iterable[str]) -> None:
        executor.run([*self.remove_cmd, *packages], env=self.env)

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run([*self.query_cmd, package], check=False, mutable=False)
        if result.returncode != 0:
            return False
        if self.installed_marker is None:
            return True
        return self.installed_marker in result.stdout


_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def _apt() -> PackageManager:
    return CommandPackageManager(
        "apt",
        ["apt-get", "install", "-y"],
        ["apt-get", "remove", "-y"],
        ["dpkg-query", "-W", "-f", "${Status}"],
        env=_APT_ENV,
        installed_marker="install ok installed",
    )


def _rpm(name: str) -> PackageManager:
    return CommandPackageManager(name, [name, "install", "-y"], [name, "remove", "-y"], ["rpm", "-q"])


def _brew() -> PackageManager:
    return CommandPackageManager(
        "brew",
        ["brew", "install"],
        ["brew", "uninstall"],
        ["brew", "list", "--versions"],
        env={"HOMEBREW_NO_AUTO_UPDATE": "1"},
    )


def _pacman() -> PackageManager:
    return CommandPackageManager(
        "pacman", ["pacman", "-S", "--noconfirm"], ["pacman", "-R", "--noconfirm"], ["pacman", "-Qi"]
    )


class PackageManagerFactory:
    # Probe order when no manager is configured: (binary on PATH, config key, builder).
    _MANAGERS = [
        ("brew", "brew", _brew),
        ("apt-get", "apt", _apt),
        ("dnf", "dnf", lambda: _rpm("dnf")),
        ("yum", "yum", lambda: _rpm("yum")),
        ("pacman", "pacman", _pacman),
    ]

    @classmethod
    def create(cls, preferred: Optional[object]) -> PackageManager:
        if isinstance(preferred, str):
            wanted = preferred.lower()
            for _, key, build in cls._MANAGERS:
                if key == wanted:
                    return build()
            raise ValueError(f"Unknown package manager '{preferred}'")
        for binary, _, build in cls._MANAGERS:
            if shutil.which(binary):
                return build()
        raise RuntimeError("No supported package manager found on PATH")
