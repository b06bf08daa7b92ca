from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import tomllib


DEFAULT_CONFIG = Path("/etc/marionette/main.conf")
DEFAULT_INVENTORY = Path("/etc/marionette/inventory.toml")
DEFAULT_TASKS = Path("/etc/marionette/tasks.toml")
DEFAULT_AUDIT_LOG = Path("/var/log/marionette/audit.jsonl")
DEFAULT_LOCK_DIR = Path("/var/lib/marionette/locks")


@dataclass
class MarionetteConfig:
    inventory: Path = DEFAULT_INVENTORY
    tasks: Path = DEFAULT_TASKS
    audit_log: Path = DEFAULT_AUDIT_LOG
    lock_dir: Path = DEFAULT_LOCK_DIR
    lock_timeout: float = 3600.0
    pull_interval: float = 1800.0
    fetch_timeout: float = 120.0
    decrypt_timeout: float = 30.0
    vault_password_file: Optional[Path] = None
    config_repo_path: Optional[Path] = None
    config_repo_url: Optional[str] = None
    config_repo_branch: Optional[str] = None
    merge_keys: list[str] = field(default_factory=list)
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None


def load_config(path: Path) -> MarionetteConfig:
    if not path.exists():
        return MarionetteConfig()
    data = tomllib.loads(path.read_text())
    defaults = data.get("defaults", {})
    base = MarionetteConfig()
    vault_password_file = defaults.get("vault_password_file")
    config_repo_path = defaults.get("config_repo_path")
    config_repo_url = defaults.get("config_repo_url")
    config_repo_branch = defaults.get("config_repo_branch")
    aws_region = defaults.get("aws_region")
    aws_profile = defaults.get("aws_profile")
    return MarionetteConfig(
        inventory=Path(defaults.get("inventory", base.inventory)),
        tasks=Path(defaults.get("tasks", base.tasks)),
        audit_log=Path(defaults.get("audit_log", base.audit_log)),
        lock_dir=Path(defaults.get("lock_dir", base.lock_dir)),
        lock_timeout=parse_duration(defaults.get("lock_timeout", base.lock_timeout)),
        pull_interval=parse_duration(defaults.get("pull_interval", base.pull_interval)),
        fetch_timeout=parse_duration(defaults.get("fetch_timeout", base.fetch_timeout)),
        decrypt_timeout=parse_duration(defaults.get("decrypt_timeout", base.decrypt_timeout)),
        vault_password_file=Path(vault_password_file) if vault_password_file else None,
        config_repo_path=Path(config_repo_path) if config_repo_path else None,
        config_repo_url=str(config_repo_url) if config_repo_url else None,
        config_repo_branch=str(config_repo_branch) if config_repo_branch else None,
        merge_keys=[str(key) for key in defaults.get("merge_keys", [])],
        aws_region=str(aws_region) if aws_region else None,
        aws_profile=str(aws_profile) if aws_profile else None,
    )


_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: object) -> float:
    """Parse ``90``, ``"90s"``, ``"15m"``, ``"2h"`` or ``"1d"`` into seconds."""

    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        if not text:
            raise ValueError("duration must not be empty")
        multiplier = _DURATION_UNITS.get(text[-1])
        number = text[:-1] if multiplier else text
        try:
            seconds = float(number) * (multiplier or 1)
        except ValueError:
            raise ValueError(f"invalid duration {value!r}") from None
    if seconds <= 0:
        raise ValueError(f"duration must be positive, got {value!r}")
    return seconds
