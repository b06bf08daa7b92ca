from pathlib import Path
import textwrap

import pytest

from marionette_automation.errors import InvalidInventory
from marionette_automation.inventory import InventoryLoader


def write_inventory(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "inventory.toml"
    path.write_text(textwrap.dedent(body).strip() + "\n")
    return path


NESTED = """
[groups.all_hosts]
children = ["workstations", "servers"]
vars = { tz = "UTC" }

[groups.workstations]
children = ["macs"]

[groups.macs]
hosts = ["laptop"]

[groups.servers]
hosts = ["db1"]

[hosts.laptop]
address = "127.0.0.1"
groups = ["workstations"]

[hosts.db1]
"""


def test_group_chain_orders_ancestors_first(tmp_path: Path) -> None:
    inventory = InventoryLoader().load(write_inventory(tmp_path, NESTED))

    chain = inventory.resolve_group_chain(inventory.hosts["laptop"])

    assert [group.name for group in chain] == ["all_hosts", "workstations", "macs"]


def test_host_side_membership_is_merged(tmp_path: Path) -> None:
    inventory = InventoryLoader().load(write_inventory(tmp_path, NESTED))

    assert "laptop" in inventory.groups["workstations"].hosts
    assert inventory.hosts["laptop"].connection == "local"


def test_select_patterns(tmp_path: Path) -> None:
    inventory = InventoryLoader().load(write_inventory(tmp_path, NESTED))

    assert [h.name for h in inventory.select("db1")] == ["db1"]
    assert [h.name for h in inventory.select("workstations")] == ["laptop"]
    assert {h.name for h in inventory.select("all")} == {"laptop", "db1"}
    with pytest.raises(InvalidInventory):
        inventory.select("nowhere")


def test_cycle_is_rejected(tmp_path: Path) -> None:
    path = write_inventory(
        tmp_path,
        """
        [groups.a]
        children = ["b"]
        hosts = ["h"]

        [groups.b]
        children = ["a"]

        [hosts.h]
        """,
    )
    with pytest.raises(InvalidInventory, match="cycle"):
        InventoryLoader().load(path)


def test_orphan_host_is_rejected(tmp_path: Path) -> None:
    path = write_inventory(
        tmp_path,
        """
        [groups.web]
        hosts = ["web1"]

        [hosts.web1]

        [hosts.lonely]
        """,
    )
    with pytest.raises(InvalidInventory, match="lonely"):
        InventoryLoader().load(path)


def test_host_group_name_collision(tmp_path: Path) -> None:
    path = write_inventory(
        tmp_path,
        """
        [groups.web]
        hosts = ["web"]

        [hosts.web]
        """,
    )
    with pytest.raises(InvalidInventory, match="both hosts and groups"):
        InventoryLoader().load(path)


def test_unknown_host_and_child(tmp_path: Path) -> None:
    unknown_host = write_inventory(tmp_path, '[groups.web]\nhosts = ["ghost"]\n')
    with pytest.raises(InvalidInventory, match="unknown host"):
        InventoryLoader().load(unknown_host)

    unknown_child = write_inventory(
        tmp_path, '[groups.web]\nhosts = ["h"]\nchildren = ["nope"]\n\n[hosts.h]\n'
    )
    with pytest.raises(InvalidInventory, match="unknown child"):
        InventoryLoader().load(unknown_child)


def test_remote_connection_is_rejected(tmp_path: Path) -> None:
    path = write_inventory(
        tmp_path,
        """
        [groups.web]
        hosts = ["web1"]

        [hosts.web1]
        connection = "ssh"
        """,
    )
    with pytest.raises(InvalidInventory, match="unsupported connection"):
        InventoryLoader().load(path)


def test_missing_inventory_file(tmp_path: Path) -> None:
    with pytest.raises(InvalidInventory, match="not found"):
        InventoryLoader().load(tmp_path / "missing.toml")
