from __future__ import annotations

from pathlib import Path
from typing import Optional
import logging
import subprocess
import threading

from .errors import FetchError

logger = logging.getLogger(__name__)


class ConfigRepository:
    """Git checkout holding the inventory, task files and vault files.

    ``sync`` clones on first use, then fetches and hard-resets to the remote
    branch. All host loops share one working tree, so syncs are serialised.
    """

    def __init__(self, path: Path, url: Optional[str] = None, branch: Optional[str] = None):
        self.path = Path(path)
        self.url = url
        self.branch = branch
        self._lock = threading.Lock()

    def sync(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            if not self.path.exists():
                if not self.url:
                    raise FetchError(f"{self.path} does not exist and no repository url is set")
                logger.info("Cloning config repo %s into %s", self.url, self.path)
                clone = ["git", "clone", str(self.url), str(self.path)]
                if self.branch:
                    clone[2:2] = ["--branch", self.branch]
                self._git(clone, "clone", timeout)
                return

            if not (self.path / ".git").exists():
                raise FetchError(f"{self.path} is not a git repository (.git missing)")

            logger.info("Fetching latest configs in %s", self.path)
            self._git(["git", "-C", str(self.path), "fetch", "--prune"], "fetch", timeout)
            target = f"origin/{self.branch or self.current_branch()}"
            logger.info("Resetting config repo to %s", target)
            self._git(["git", "-C", str(self.path), "reset", "--hard", target], "reset", timeout)

    def current_branch(self) -> str:
        result = subprocess.run(
            ["git", "-C", str(self.path), "rev-parse", "--abbrev-ref", "HEAD"],
            capture_output=True,
            text=True,
        )
        if result.returncode == 0:
            branch = result.stdout.strip()
            if branch and branch != "HEAD":
                return branch
        return "master"

    @staticmethod
    def _git(command: list[str], step: str, timeout: Optional[float]) -> None:
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise FetchError(f"git {step} timed out after {timeout:g}s") from None
        except FileNotFoundError:
            raise FetchError("git executable not found") from None
        if result.returncode != 0:
            raise FetchError(f"git {step} failed: {result.stderr.strip() or result.stdout.strip()}")
