"""Layered variable resolution.

Layers merge in a fixed order, later layers overwriting earlier ones per key:
role defaults, each group along the host's group chain (root first), the host,
runtime overrides, then vault-decrypted secrets.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping, Optional
import logging
import tomllib

import jinja2
import yaml

from . import templating
from .errors import InvalidInventory, TaskDefinitionError, UndefinedVariable
from .inventory import Inventory
from .secrets import REDACTED, SecretResolver
from .types import HostConfig, TaskSpec
from .vault import is_encrypted

logger = logging.getLogger(__name__)

LAYER_ORDER = ("defaults", "group", "host", "override", "vault")


@dataclass
class VariableScope:
    layer: str
    source: str
    values: dict[str, Any]
    secret_keys: set[str] = field(default_factory=set)


class VariableContext(Mapping[str, Any]):
    """Immutable, per-run view of the resolved variables."""

    def __init__(
        self,
        values: Mapping[str, Any],
        *,
        secret_keys: Iterable[str] = (),
        origins: Optional[Mapping[str, str]] = None,
        redactor=None,
    ):
        self._values = MappingProxyType(dict(values))
        self.secret_keys = frozenset(secret_keys)
        self.origins = MappingProxyType(dict(origins or {}))
        self._redactor = redactor

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def redact(self, text: str) -> str:
        if self._redactor is None:
            return text
        return self._redactor.redact(text)

    def redacted(self) -> dict[str, Any]:
        return {k: (REDACTED if k in self.secret_keys else v) for k, v in self._values.items()}

    def for_task(self, task: TaskSpec) -> dict[str, Any]:
        """Context for ``task``: its declared defaults beneath the resolved values."""

        values = dict(self._values)
        if not task.defaults:
            return values
        defaults = {k: v for k, v in task.defaults.items() if k not in values}
        merged = {**defaults, **values}
        for key in defaults:
            merged[key] = templating.render(defaults[key], merged)
        return merged


class VariableResolver:
    def __init__(
        self,
        inventory: Inventory,
        secrets: SecretResolver,
        *,
        merge_keys: Iterable[str] = (),
    ):
        self.inventory = inventory
        self.secrets = secrets
        self.merge_keys = set(merge_keys)

    def resolve(
        self,
        host: HostConfig,
        overrides: Optional[Mapping[str, Any]] = None,
        *,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> VariableContext:
        scopes = self.scopes(host, overrides, defaults=defaults)
        merged: dict[str, Any] = {}
        origins: dict[str, str] = {}
        secret_keys: set[str] = set()
        for scope in scopes:
            for key, value in scope.values.items():
                if key in self.merge_keys and isinstance(value, dict) and isinstance(merged.get(key), dict):
                    merged[key] = _deep_merge(merged[key], value)
                    if key in scope.secret_keys:
                        secret_keys.add(key)
                else:
                    merged[key] = value
                    if key in scope.secret_keys:
                        secret_keys.add(key)
                    else:
                        secret_keys.discard(key)
                origins[key] = f"{scope.layer}:{scope.source}"

        magic = {
            "inventory_hostname": host.name,
            "inventory_address": host.address or host.name,
            "group_names": [group.name for group in self.inventory.resolve_group_chain(host)],
        }
        merged.update(magic)
        origins.update((key, "magic") for key in magic)
        secret_keys.difference_update(magic)

        values = self._interpolate(merged, secret_keys)
        logger.debug("host=%s resolved %d variables (%d secret)", host.name, len(values), len(secret_keys))
        return VariableContext(values, secret_keys=secret_keys, origins=origins, redactor=self.secrets.redactor)

    def scopes(
        self,
        host: HostConfig,
        overrides: Optional[Mapping[str, Any]] = None,
        *,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> list[VariableScope]:
        """Variable layers for ``host`` in increasing precedence."""

        chain = self.inventory.resolve_group_chain(host)
        scopes = [self._scope("defaults", "role", dict(defaults or {}))]
        for group in chain:
            scopes.append(self._scope("group", group.name, group.variables))
            scopes.extend(self._file_scope("group", ref) for ref in group.vars_files)
        scopes.append(self._scope("host", host.name, host.variables))
        scopes.extend(self._file_scope("host", ref) for ref in host.vars_files)
        scopes.append(self._scope("override", "extra-vars", dict(overrides or {})))
        for group in chain:
            scopes.extend(self._file_scope("vault", ref, vault=True) for ref in group.vault_files)
        scopes.extend(self._file_scope("vault", ref, vault=True) for ref in host.vault_files)
        return scopes

    def validate(self, tasks: Iterable[TaskSpec], context: Mapping[str, Any]) -> None:
        """Pre-flight: every variable a task references must be defined."""

        for task in tasks:
            available = set(context) | set(task.defaults)
            try:
                referenced = task_references(task)
            except templating.TemplateError as exc:
                raise TaskDefinitionError(f"task '{task.name}': {exc}") from None
            missing = sorted(referenced - available)
            if missing:
                raise UndefinedVariable(missing[0], task=task.name)
            self.validate(task.on_success, context)
            self.validate(task.on_failure, context)

    def _scope(self, layer: str, source: str, values: Mapping[str, Any]) -> VariableScope:
        resolved, secret_keys = self.secrets.resolve(dict(values))
        return VariableScope(layer, source, resolved, secret_keys)

    def _file_scope(self, layer: str, reference: str, *, vault: bool = False) -> VariableScope:
        path = self.inventory.resolve_path(reference)
        try:
            text = path.read_text()
        except OSError as exc:
            raise InvalidInventory(f"cannot read variable file {path}: {exc.strerror}") from None

        encrypted = is_encrypted(text)
        if encrypted:
            text = self.secrets.decrypt_document(text)
        elif vault:
            logger.warning("Vault file %s is not encrypted", path)
        values = read_variable_document(text, path)

        if vault or encrypted:
            self.secrets.redactor.register(values)
            return VariableScope(layer, str(path), values, set(values))
        resolved, secret_keys = self.secrets.resolve(values)
        return VariableScope(layer, str(path), resolved, secret_keys)

    @staticmethod
    def _interpolate(merged: dict[str, Any], secret_keys: set[str]) -> dict[str, Any]:
        resolved: dict[str, Any] = {}
        resolving: list[str] = []

        def lookup(name: str) -> Any:
            if name in resolved:
                return resolved[name]
            if name in resolving:
                cycle = " -> ".join([*resolving[resolving.index(name):], name])
                raise UndefinedVariable(name, reason=f"recursive reference {cycle}")
            value = merged[name]
            if name in secret_keys:
                resolved[name] = value
                return value
            resolving.append(name)
            try:
                refs = templating.references(value)
            except templating.TemplateError as exc:
                raise InvalidInventory(f"variable '{name}': {exc}") from None
            for ref in refs:
                if ref not in merged:
                    raise UndefinedVariable(ref, reason=f"referenced by variable '{name}'")
                lookup(ref)
            try:
                resolved[name] = templating.render(value, resolved) if refs else value
            except jinja2.UndefinedError as exc:
                raise UndefinedVariable(name, reason=str(exc)) from None
            if refs & secret_keys:
                secret_keys.add(name)
            resolving.pop()
            return resolved[name]

        for key in merged:
            lookup(key)
        return resolved


def task_references(task: TaskSpec) -> set[str]:
    names = templating.references(task.params)
    if task.when:
        names |= templating.expression_references(task.when)
    guard = task.guard
    names |= templating.references([guard.creates, guard.removes, guard.only_if, guard.unless])
    names |= templating.references(task.defaults)
    return names


def read_variable_document(text: str, path: Path) -> dict[str, Any]:
    """Parse a flat variable mapping from TOML or YAML text."""

    suffixes = {s.lower() for s in path.suffixes}
    try:
        if suffixes & {".yml", ".yaml"}:
            data = yaml.safe_load(text)
            data = {} if data is None else data
        else:
            data = tomllib.loads(text)
    except (yaml.YAMLError, tomllib.TOMLDecodeError) as exc:
        raise InvalidInventory(f"cannot parse variable file {path}: {exc}") from None
    if not isinstance(data, dict):
        raise InvalidInventory(f"variable file {path} must contain a mapping")
    return {str(k): v for k, v in data.items()}


def _deep_merge(base: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
