from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable
import logging
import tomllib

from .errors import InvalidInventory
from .types import GroupConfig, HostConfig

logger = logging.getLogger(__name__)

SUPPORTED_CONNECTIONS = {"local"}
ALL_PATTERN = "all"


@dataclass
class Inventory:
    hosts: dict[str, HostConfig]
    groups: dict[str, GroupConfig]
    base_dir: Path

    def resolve_group_chain(self, host: HostConfig) -> list[GroupConfig]:
        """Groups ``host`` belongs to, ancestors first and most specific last."""

        parents = self._parents()
        direct = [name for name, group in self.groups.items() if host.name in group.hosts]
        seen: set[str] = set()
        pending = list(direct)
        while pending:
            name = pending.pop()
            if name in seen:
                continue
            seen.add(name)
            pending.extend(parents.get(name, ()))
        depths = self._depths(parents)
        ordered = sorted(seen, key=lambda name: (depths[name], name))
        return [self.groups[name] for name in ordered]

    def select(self, pattern: str) -> list[HostConfig]:
        """Hosts matched by a host name, a group name or ``all``."""

        if pattern in self.hosts:
            return [self.hosts[pattern]]
        if pattern == ALL_PATTERN and ALL_PATTERN not in self.groups:
            return list(self.hosts.values())
        if pattern not in self.groups:
            raise InvalidInventory(f"target '{pattern}' matches no host or group")
        members: list[str] = []
        pending = [pattern]
        visited: set[str] = set()
        while pending:
            name = pending.pop(0)
            if name in visited:
                continue
            visited.add(name)
            group = self.groups[name]
            members.extend(h for h in group.hosts if h not in members)
            pending.extend(group.children)
        return [host for name, host in self.hosts.items() if name in members]

    def resolve_path(self, reference: str) -> Path:
        path = Path(reference).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path

    def _parents(self) -> dict[str, list[str]]:
        parents: dict[str, list[str]] = {name: [] for name in self.groups}
        for name, group in self.groups.items():
            for child in group.children:
                parents[child].append(name)
        return parents

    def _depths(self, parents: dict[str, list[str]]) -> dict[str, int]:
        depths: dict[str, int] = {}

        def depth(name: str) -> int:
            if name not in depths:
                depths[name] = 1 + max((depth(p) for p in parents.get(name, ())), default=-1)
            return depths[name]

        for name in self.groups:
            depth(name)
        return depths


class InventoryLoader:
    """Loads host and group definitions from TOML inventory files."""

    def load(self, path: Path) -> Inventory:
        path = Path(path)
        try:
            data = tomllib.loads(path.read_text())
        except FileNotFoundError:
            raise InvalidInventory(f"{path}: inventory file not found") from None
        except tomllib.TOMLDecodeError as exc:
            raise InvalidInventory(f"{path}: {exc}") from None

        groups = self._parse_groups(data.get("groups", {}))
        hosts = self._parse_hosts(data.get("hosts", {}), groups)
        groups = self._attach_memberships(hosts, groups)
        inventory = Inventory(hosts=hosts, groups=groups, base_dir=path.parent)
        self._validate(inventory)
        logger.debug("inventory=%s hosts=%d groups=%d", path, len(hosts), len(groups))
        return inventory

    @staticmethod
    def _parse_groups(group_data: dict[str, Any]) -> dict[str, GroupConfig]:
        groups: dict[str, GroupConfig] = {}
        for name, payload in group_data.items():
            payload = _mapping(payload, f"group '{name}'")
            groups[name] = GroupConfig(
                name=name,
                hosts=_names(payload.get("hosts"), f"group '{name}' hosts"),
                children=_names(payload.get("children"), f"group '{name}' children"),
                variables=dict(_mapping(payload.get("vars", {}), f"group '{name}' vars")),
                vars_files=_names(payload.get("vars_files"), f"group '{name}' vars_files"),
                vault_files=_names(payload.get("vault_files"), f"group '{name}' vault_files"),
            )
        return groups

    @staticmethod
    def _parse_hosts(host_data: dict[str, Any], groups: dict[str, GroupConfig]) -> dict[str, HostConfig]:
        hosts: dict[str, HostConfig] = {}
        for name, payload in host_data.items():
            payload = _mapping(payload, f"host '{name}'")
            connection = str(payload.get("connection", "local"))
            if connection not in SUPPORTED_CONNECTIONS:
                raise InvalidInventory(f"host '{name}' uses unsupported connection '{connection}'")
            address = payload.get("address")
            credential = payload.get("credential")
            hosts[name] = HostConfig(
                name=name,
                connection=connection,
                address=str(address) if address else None,
                credential=str(credential) if credential else None,
                groups=_names(payload.get("groups"), f"host '{name}' groups"),
                variables=dict(_mapping(payload.get("vars", {}), f"host '{name}' vars")),
                vars_files=_names(payload.get("vars_files"), f"host '{name}' vars_files"),
                vault_files=_names(payload.get("vault_files"), f"host '{name}' vault_files"),
            )
        return hosts

    @staticmethod
    def _attach_memberships(
        hosts: dict[str, HostConfig], groups: dict[str, GroupConfig]
    ) -> dict[str, GroupConfig]:
        # Membership may be declared on either side; fold host-side declarations into the groups.
        members: dict[str, list[str]] = {name: list(group.hosts) for name, group in groups.items()}
        for host in hosts.values():
            for group_name in host.groups:
                if group_name not in groups:
                    raise InvalidInventory(f"host '{host.name}' references unknown group '{group_name}'")
                if host.name not in members[group_name]:
                    members[group_name].append(host.name)
        return {
            name: GroupConfig(
                name=name,
                hosts=tuple(members[name]),
                children=group.children,
                variables=group.variables,
                vars_files=group.vars_files,
                vault_files=group.vault_files,
            )
            for name, group in groups.items()
        }

    @staticmethod
    def _validate(inventory: Inventory) -> None:
        collisions = sorted(set(inventory.hosts) & set(inventory.groups))
        if collisions:
            raise InvalidInventory(f"names used for both hosts and groups: {', '.join(collisions)}")

        for group in inventory.groups.values():
            for host_name in group.hosts:
                if host_name not in inventory.hosts:
                    raise InvalidInventory(f"group '{group.name}' references unknown host '{host_name}'")
            for child in group.children:
                if child not in inventory.groups:
                    raise InvalidInventory(f"group '{group.name}' references unknown child group '{child}'")

        grouped = {h for group in inventory.groups.values() for h in group.hosts}
        orphans = sorted(set(inventory.hosts) - grouped)
        if orphans:
            raise InvalidInventory(f"hosts not in any group: {', '.join(orphans)}")

        InventoryLoader._check_acyclic(inventory.groups)

    @staticmethod
    def _check_acyclic(groups: dict[str, GroupConfig]) -> None:
        in_degree: dict[str, int] = {name: 0 for name in groups}
        for group in groups.values():
            for child in group.children:
                in_degree[child] += 1

        queue = [name for name, deg in in_degree.items() if deg == 0]
        ordered: list[str] = []
        while queue:
            current = queue.pop(0)
            ordered.append(current)
            for child in groups[current].children:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(ordered) != len(groups):
            cyclic = sorted(name for name, deg in in_degree.items() if deg > 0)
            raise InvalidInventory(f"group nesting contains a cycle involving: {', '.join(cyclic)}")


def _mapping(value: Any, label: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise InvalidInventory(f"{label} must be a table")
    return value


def _names(value: Any, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, Iterable):
        return tuple(str(v) for v in value)
    raise InvalidInventory(f"{label} must be a string or a list of strings")
