from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import socket
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from . import tags as tag_filter
from .audit import AuditLog
from .config import DEFAULT_CONFIG, MarionetteConfig, load_config, parse_duration
from .coordinator import RunCoordinator
from .errors import CONFIG_ERRORS, FetchError, InvalidInventory, MarionetteError
from .inventory import Inventory, InventoryLoader
from .locks import LockManager
from .repository import ConfigRepository
from .scheduler import PullScheduler
from .secrets import SecretRedactor, SecretResolver
from .tasks import TaskLoader
from .types import RunResult, RunStatus, TaskOutcome, TaskResult, TaskSpec
from .variables import VariableResolver
from .vault import EnvPassphrase, FilePassphrase, PassphraseSource, PromptPassphrase, VaultCipher, is_encrypted

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_TASK_FAILURE = 4

DEFAULT_CHECKOUT = Path("/var/lib/marionette/checkout")
PASSWORD_ENV = "MARIONETTE_VAULT_PASSWORD"


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"

_last_progress_len = 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to marionette config file (default: {DEFAULT_CONFIG})",
    )
    shared.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    shared.add_argument("--vault-password-file", type=Path, help="File holding the vault passphrase")
    shared.add_argument(
        "--vault-password-env",
        metavar="VAR",
        help=f"Environment variable holding the vault passphrase (default: {PASSWORD_ENV} when set)",
    )

    selection = argparse.ArgumentParser(add_help=False)
    selection.add_argument("--tags", action="append", default=[], help="Only run tasks with these tags")
    selection.add_argument("--skip-tags", action="append", default=[], help="Never run tasks with these tags")
    selection.add_argument(
        "-e",
        "--extra-vars",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Runtime variable override (repeatable)",
    )

    parser = argparse.ArgumentParser(prog="marionette", description="Marionette configuration convergence engine")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", parents=[shared, selection], help="Apply a task file once")
    run.add_argument("--inventory", type=Path, help="Inventory file (default from config)")
    run.add_argument("--tasks", type=Path, help="Task file (default from config)")
    run.add_argument("--target", default="all", help="Host or group to converge (default: all)")
    run.add_argument("--check", action="store_true", help="Report what would change without changing it")

    pull = commands.add_parser("pull", parents=[shared, selection], help="Periodically fetch and apply configuration")
    pull.add_argument("--source", help="Git URL of the configuration repository (default from config)")
    pull.add_argument("--branch", help="Branch to track (default: the checkout's current branch)")
    pull.add_argument("--checkout", type=Path, help=f"Local working tree (default: {DEFAULT_CHECKOUT})")
    pull.add_argument("--interval", help="Time between runs, e.g. 900, 15m, 1h (default from config)")
    pull.add_argument("--inventory", type=Path, default=Path("inventory.toml"), help="Inventory path in the checkout")
    pull.add_argument("--tasks", type=Path, default=Path("tasks.toml"), help="Task file path in the checkout")
    pull.add_argument("--target", action="append", default=[], help="Host to converge (default: this host)")
    pull.add_argument("--once", action="store_true", help="Run a single pull cycle and exit")

    vault = commands.add_parser("vault", help="Manage encrypted vault data")
    vault_commands = vault.add_subparsers(dest="vault_command", required=True)
    for name, description in (
        ("encrypt", "Encrypt a file in place"),
        ("decrypt", "Decrypt a file in place"),
        ("view", "Print the plaintext of an encrypted file"),
    ):
        sub = vault_commands.add_parser(name, parents=[shared], help=description)
        sub.add_argument("file", type=Path)
    encrypt_string = vault_commands.add_parser(
        "encrypt-string", parents=[shared], help="Encrypt a single value for use in a variable file"
    )
    encrypt_string.add_argument("value")
    encrypt_string.add_argument("--name", help="Emit a TOML assignment for this variable name")
    return parser.parse_args(argv)


def configure_logging(level: str, redactor: Optional[SecretRedactor] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )
    if redactor is not None:
        for handler in logging.getLogger().handlers:
            if redactor not in handler.filters:
                handler.addFilter(redactor)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    redactor = SecretRedactor()
    configure_logging(args.log_level, redactor)

    try:
        cfg = load_config(args.config)
    except (ValueError, OSError) as exc:
        print(colorize(f"Invalid config {args.config}: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_CONFIG_ERROR
    _apply_aws_env(cfg)
    cipher = VaultCipher(_passphrase_source(args, cfg), timeout=cfg.decrypt_timeout)

    if args.command == "vault":
        return _vault(args, cipher)
    secrets = SecretResolver(cipher, redactor)
    if args.command == "pull":
        return _pull(args, cfg, secrets)
    return _run(args, cfg, secrets)


def _run(args: argparse.Namespace, cfg: MarionetteConfig, secrets: SecretResolver) -> int:
    redact = secrets.redactor.redact
    if cfg.config_repo_path:
        repository = ConfigRepository(cfg.config_repo_path, cfg.config_repo_url, cfg.config_repo_branch)
        try:
            repository.sync(cfg.fetch_timeout)
        except FetchError as exc:
            print(colorize(f"Config sync failed: {exc}", Ansi.RED), file=sys.stderr)
            return EXIT_CONFIG_ERROR

    try:
        inventory = InventoryLoader().load(args.inventory or cfg.inventory)
        task_set = TaskLoader().load(args.tasks or cfg.tasks)
        hosts = inventory.select(args.target)
        overrides = parse_extra_vars(args.extra_vars)
    except (MarionetteError, ValueError) as exc:
        print(colorize(f"Configuration error: {redact(str(exc))}", Ansi.RED), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    coordinator = RunCoordinator(
        inventory,
        VariableResolver(inventory, secrets, merge_keys=cfg.merge_keys),
        AuditLog(cfg.audit_log),
        dry_run=args.check,
        progress_callback=print_progress,
    )
    include = tag_filter.parse_tag_list(args.tags)
    exclude = tag_filter.parse_tag_list(args.skip_tags)

    effective_level = logging.getLogger().getEffectiveLevel()
    summary = Summary()
    failed_hosts: list[str] = []
    errored_hosts: list[str] = []
    for host in hosts:
        try:
            run = coordinator.execute(host, task_set, include, exclude, overrides)
        except CONFIG_ERRORS as exc:
            # Only this host's run is lost; the others still converge.
            _clear_progress()
            print(colorize(f"{host.name}: configuration error: {redact(str(exc))}", Ansi.RED), file=sys.stderr)
            errored_hosts.append(host.name)
            continue
        for result in run.results:
            _clear_progress()
            summary.add(result)
            if should_display_result(result, effective_level):
                print(format_result(result))
        if run.status is RunStatus.FAILED:
            failed_hosts.append(host.name)
            for failure in run.failures:
                print(
                    colorize(f"{host.name}: task '{failure.task}' failed: {failure.details}", Ansi.RED),
                    file=sys.stderr,
                )

    _clear_progress()
    print(summary.render())
    if failed_hosts:
        return EXIT_TASK_FAILURE
    if errored_hosts:
        return EXIT_CONFIG_ERROR
    return EXIT_OK


def _pull(args: argparse.Namespace, cfg: MarionetteConfig, secrets: SecretResolver) -> int:
    redact = secrets.redactor.redact
    checkout = args.checkout or cfg.config_repo_path or DEFAULT_CHECKOUT
    repository = ConfigRepository(checkout, args.source or cfg.config_repo_url, args.branch or cfg.config_repo_branch)
    inventory_path = checkout / args.inventory
    tasks_path = checkout / args.tasks
    try:
        interval = parse_duration(args.interval) if args.interval else cfg.pull_interval
        overrides = parse_extra_vars(args.extra_vars)
        targets = list(args.target)
        if not targets:
            if not inventory_path.exists():
                repository.sync(cfg.fetch_timeout)
            targets = local_targets(InventoryLoader().load(inventory_path))
    except (MarionetteError, ValueError) as exc:
        print(colorize(f"Configuration error: {redact(str(exc))}", Ansi.RED), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    audit = AuditLog(cfg.audit_log)
    include = tag_filter.parse_tag_list(args.tags)
    exclude = tag_filter.parse_tag_list(args.skip_tags)

    def run_once(host_name: str, owner: str) -> RunResult:
        inventory = InventoryLoader().load(inventory_path)
        task_set = TaskLoader().load(tasks_path)
        host = inventory.hosts.get(host_name)
        if host is None:
            raise InvalidInventory(f"host '{host_name}' is not in {inventory_path}")
        coordinator = RunCoordinator(
            inventory, VariableResolver(inventory, secrets, merge_keys=cfg.merge_keys), audit
        )
        result = coordinator.execute(host, task_set, include, exclude, overrides)
        changed = sum(1 for r in result.results if r.changed)
        logging.info(
            "Pull run %s for %s: %s (%d changed, %d failed)",
            result.run_id,
            host_name,
            result.status.value,
            changed,
            len(result.failures),
        )
        return result

    scheduler = PullScheduler(
        targets,
        run_once,
        LockManager(cfg.lock_dir, cfg.lock_timeout),
        interval=interval,
        repository=repository,
        audit=audit,
        fetch_timeout=cfg.fetch_timeout,
        redact=redact,
    )

    if args.once:
        outcomes = scheduler.run_once()
        if any(r is None for r in outcomes.values()):
            return EXIT_CONFIG_ERROR
        if any(r.status is RunStatus.FAILED for r in outcomes.values()):
            return EXIT_TASK_FAILURE
        return EXIT_OK

    signal.signal(signal.SIGTERM, lambda *_: scheduler.stop())
    signal.signal(signal.SIGINT, lambda *_: scheduler.stop())
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, lambda *_: scheduler.trigger())
    scheduler.start()
    while scheduler.alive():
        scheduler.join(timeout=1.0)
    return EXIT_OK


def _vault(args: argparse.Namespace, cipher: VaultCipher) -> int:
    try:
        if args.vault_command == "encrypt-string":
            payload = cipher.encrypt(args.value)
            if args.name:
                payload = f'{args.name} = """\n{payload}"""'
            print(payload.rstrip("\n"))
            return EXIT_OK

        path: Path = args.file
        text = path.read_text()
        if args.vault_command == "encrypt":
            if is_encrypted(text):
                raise MarionetteError(f"{path} is already encrypted")
            path.write_text(cipher.encrypt(text))
            print(f"Encrypted {path}")
        elif args.vault_command == "decrypt":
            path.write_text(cipher.decrypt(text))
            print(f"Decrypted {path}")
        else:
            print(cipher.decrypt(text), end="")
    except (MarionetteError, OSError) as exc:
        print(colorize(f"Vault error: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_CONFIG_ERROR
    return EXIT_OK


def parse_extra_vars(values: Sequence[str]) -> dict[str, Any]:
    """``KEY=VALUE`` pairs; values that parse as JSON keep their JSON type."""

    overrides: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"extra var '{item}' must be KEY=VALUE")
        try:
            overrides[key] = json.loads(raw)
        except json.JSONDecodeError:
            overrides[key] = raw
    return overrides


def local_targets(inventory: Inventory) -> list[str]:
    """Inventory hosts that name this machine."""

    candidates = [socket.gethostname(), socket.getfqdn(), "localhost"]
    for name in candidates:
        if name in inventory.hosts:
            return [name]
    short = socket.gethostname().split(".")[0]
    if short in inventory.hosts:
        return [short]
    raise InvalidInventory(f"none of {', '.join(candidates)} is defined in the inventory; pass --target")


def format_result(result: TaskResult) -> str:
    status = "ok"
    color: Optional[str] = Ansi.BLUE
    if result.failed:
        status = "failed (ignored)" if result.ignored else "failed"
        color = Ansi.ORANGE if result.ignored else Ansi.RED
    elif result.changed:
        status = "changed"
        color = Ansi.GREEN
    elif result.outcome is TaskOutcome.SKIPPED:
        status = "skipped"
    elif result.outcome is TaskOutcome.ABORTED:
        status = "aborted"
        color = Ansi.ORANGE
    resource = f"[{result.resource}]" if result.resource else ""
    line = f"{result.host}::{result.task}({result.kind}){resource} {status} - {result.details}"
    return colorize(line, color)


def should_display_result(result: TaskResult, log_level: int) -> bool:
    if result.failed or result.changed or result.outcome is TaskOutcome.ABORTED:
        return True
    return log_level <= logging.DEBUG


def print_progress(host, task: TaskSpec) -> None:
    global _last_progress_len
    resource = _progress_resource(task.params)
    suffix = f"[{resource}]" if resource else ""
    line = f"{host.name}::{task.name}({task.kind.value}){suffix} pending..."
    _last_progress_len = len(line)
    print(colorize(line, Ansi.YELLOW), end="\r", flush=True)


def _progress_resource(data: dict) -> Optional[str]:
    for key in ("path", "name", "command", "cmd"):
        value = data.get(key)
        if isinstance(value, str) and value and "{" not in value:
            return value
    pkgs = data.get("packages")
    if isinstance(pkgs, (list, tuple)) and pkgs:
        rendered = ", ".join(str(p) for p in pkgs[:3])
        if len(pkgs) > 3:
            rendered += ", ..."
        return rendered
    return None


def _clear_progress() -> None:
    global _last_progress_len
    if _last_progress_len:
        print(" " * _last_progress_len, end="\r", flush=True)
        _last_progress_len = 0


def _passphrase_source(args: argparse.Namespace, cfg: MarionetteConfig) -> PassphraseSource:
    key_file = args.vault_password_file or cfg.vault_password_file
    if key_file:
        return FilePassphrase(key_file)
    if args.vault_password_env:
        return EnvPassphrase(args.vault_password_env)
    if os.environ.get(PASSWORD_ENV):
        return EnvPassphrase(PASSWORD_ENV)
    return PromptPassphrase()


def _apply_aws_env(cfg: MarionetteConfig) -> None:
    if cfg.aws_profile and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile
    if cfg.aws_region:
        if "AWS_REGION" not in os.environ:
            os.environ["AWS_REGION"] = cfg.aws_region
        if "AWS_DEFAULT_REGION" not in os.environ:
            os.environ["AWS_DEFAULT_REGION"] = cfg.aws_region


class Summary:
    def __init__(self) -> None:
        self.changed = 0
        self.unchanged = 0
        self.skipped = 0
        self.failures = 0
        self.ignored = 0
        self.aborted = 0

    def add(self, result: TaskResult) -> None:
        if result.failed:
            if result.ignored:
                self.ignored += 1
            else:
                self.failures += 1
        elif result.changed:
            self.changed += 1
        elif result.outcome is TaskOutcome.SKIPPED:
            self.skipped += 1
        elif result.outcome is TaskOutcome.ABORTED:
            self.aborted += 1
        else:
            self.unchanged += 1

    def render(self) -> str:
        parts = [
            f"Changed: {self.changed}",
            f"Unchanged: {self.unchanged}",
            f"Skipped: {self.skipped}",
            f"Failures: {self.failures}",
        ]
        if self.ignored:
            parts.append(f"Ignored: {self.ignored}")
        if self.aborted:
            parts.append(f"Aborted: {self.aborted}")
        text = " | ".join(parts)
        color = Ansi.GREEN if self.failures == 0 else Ansi.RED
        return colorize(text, color)


if __name__ == "__main__":
    raise SystemExit(main())
