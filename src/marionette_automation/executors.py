from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence, Union
import logging
import os
import shutil
import stat
import subprocess
import tempfile

from .types import HostConfig

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


class Executor:
    """Side-effect boundary between capability handlers and a host.

    Handlers never touch the host directly: commands and file primitives go
    through an executor, which honours check mode and the per-task timeout.
    """

    def __init__(
        self,
        host: HostConfig,
        *,
        dry_run: bool = False,
        timeout: Optional[float] = None,
        redact: Optional[Callable[[str], str]] = None,
    ):
        self.host = host
        self.dry_run = dry_run
        self.timeout = timeout
        self.redact = redact or (lambda text: text)

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command``; mutable commands are not executed in check mode.

        ``timeout`` falls back to the executor's per-task timeout. Expiry
        raises :class:`subprocess.TimeoutExpired`.
        """

        argv = [str(part) for part in command]
        if self.dry_run and mutable:
            logger.debug("check mode, not running: %s", " ".join(argv))
            return CommandResult(argv, "", "skipped (dry-run)", 0)

        proc = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            check=False,
            env={**os.environ, **env} if env else None,
            cwd=str(cwd) if cwd is not None else None,
            timeout=self.timeout if timeout is None else timeout,
        )
        # Output is redacted here, before any handler can cut it short.
        stdout, stderr = self.redact(proc.stdout), self.redact(proc.stderr)
        if check and proc.returncode != 0:
            raise subprocess.CalledProcessError(proc.returncode, argv, stdout, stderr)
        return CommandResult(argv, stdout, stderr, proc.returncode)

    def path_exists(self, path: Path) -> bool:
        raise NotImplementedError

    def is_dir(self, path: Path) -> bool:
        raise NotImplementedError

    def read_file(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def file_mode(self, path: Path) -> Optional[int]:
        raise NotImplementedError

    def read_link(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        raise NotImplementedError

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        raise NotImplementedError

    def ensure_symlink(self, path: Path, target: str) -> bool:
        raise NotImplementedError

    def remove_path(self, path: Path) -> bool:
        raise NotImplementedError


class LocalExecutor(Executor):
    """Acts on the machine marionette runs on."""

    def path_exists(self, path: Path) -> bool:
        return path.is_symlink() or path.exists()

    def is_dir(self, path: Path) -> bool:
        return path.is_dir()

    def read_file(self, path: Path) -> Optional[str]:
        try:
            return path.read_text()
        except (FileNotFoundError, IsADirectoryError):
            return None

    def file_mode(self, path: Path) -> Optional[int]:
        try:
            return stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            return None

    def read_link(self, path: Path) -> Optional[str]:
        try:
            return os.readlink(path)
        except (FileNotFoundError, OSError):
            return None

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        reasons: list[str] = []
        if self.read_file(path) != content:
            reasons.append("content")
            if not self.dry_run:
                self._replace(path, content, mode)
        self._converge_mode(path, mode, reasons)
        return bool(reasons), ", ".join(reasons) or "noop"

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        reasons: list[str] = []
        if not self.is_dir(path):
            reasons.append("replaced-non-dir" if self.path_exists(path) else "created")
            if not self.dry_run:
                self.remove_path(path)
                path.mkdir(parents=True, exist_ok=True)
        self._converge_mode(path, mode, reasons)
        return bool(reasons), ", ".join(reasons) or "noop"

    def ensure_symlink(self, path: Path, target: str) -> bool:
        if self.read_link(path) == target:
            return False
        if not self.dry_run:
            self.remove_path(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            os.symlink(target, path)
        return True

    def remove_path(self, path: Path) -> bool:
        if not self.path_exists(path):
            return False
        if not self.dry_run:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        return True

    def _converge_mode(self, path: Path, mode: Optional[int], reasons: list[str]) -> None:
        if mode is None or self.file_mode(path) == mode:
            return
        reasons.append(f"mode->{mode:04o}")
        # In check mode the path may not exist yet.
        if not self.dry_run and path.exists():
            os.chmod(path, mode)

    @staticmethod
    def _replace(path: Path, content: str, mode: Optional[int]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(content)
            # mkstemp creates 0600; keep the existing mode or fall back to 0644.
            if mode is None:
                mode = stat.S_IMODE(path.stat().st_mode) if path.exists() else 0o644
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def executor_for(
    host: HostConfig,
    *,
    dry_run: bool = False,
    timeout: Optional[float] = None,
    redact: Optional[Callable[[str], str]] = None,
) -> Executor:
    if host.connection == "local":
        return LocalExecutor(host, dry_run=dry_run, timeout=timeout, redact=redact)
    raise ValueError(f"Unknown connection type '{host.connection}' for host '{host.name}'")
