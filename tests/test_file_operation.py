from pathlib import Path
import os

import pytest

from marionette_automation.executors import LocalExecutor
from marionette_automation.operations.file import FileOperation
from marionette_automation.types import HostConfig


def build_executor(dry_run: bool = False) -> LocalExecutor:
    return LocalExecutor(HostConfig(name="local"), dry_run=dry_run)


def test_file_present_creates_content(tmp_path: Path) -> None:
    target = tmp_path / "config.txt"
    op = FileOperation({"path": str(target), "content": "hello", "mode": "0640"})

    assert op.check(HostConfig("local"), build_executor()).converged is False
    result = op.apply(HostConfig("local"), build_executor())

    assert result.changed is True
    assert target.read_text() == "hello"
    assert oct(os.stat(target).st_mode & 0o777) == "0o640"
    assert op.check(HostConfig("local"), build_executor()).converged is True


def test_file_mode_drift_is_detected(tmp_path: Path) -> None:
    target = tmp_path / "config.txt"
    target.write_text("hello")
    os.chmod(target, 0o600)
    op = FileOperation({"path": str(target), "content": "hello", "mode": "644"})

    probe = op.check(HostConfig("local"), build_executor())

    assert probe.converged is False
    assert probe.details == "mode 0600 != 0644"


def test_file_directory_creates_and_sets_mode(tmp_path: Path) -> None:
    target = tmp_path / "config.d"
    op = FileOperation({"path": str(target), "state": "directory", "mode": "0750"})

    result = op.apply(HostConfig("local"), build_executor())

    assert result.changed is True
    assert target.is_dir()
    assert oct(os.stat(target).st_mode & 0o777) == "0o750"


def test_file_absent_removes(tmp_path: Path) -> None:
    target = tmp_path / "stale.txt"
    target.write_text("bye")
    op = FileOperation({"path": str(target), "state": "absent"})

    result = op.apply(HostConfig("local"), build_executor())

    assert result.changed is True
    assert not target.exists()
    assert op.check(HostConfig("local"), build_executor()).converged is True


def test_file_link(tmp_path: Path) -> None:
    source = tmp_path / "real"
    source.write_text("data")
    link = tmp_path / "alias"
    op = FileOperation({"path": str(link), "state": "link", "link_target": str(source)})

    first = op.apply(HostConfig("local"), build_executor())
    second = op.apply(HostConfig("local"), build_executor())

    assert first.changed is True
    assert second.changed is False
    assert os.readlink(link) == str(source)


def test_file_template_renders_relative_to_task_dir(tmp_path: Path) -> None:
    (tmp_path / "motd.j2").write_text("Welcome to {{ inventory_hostname }}\n")
    target = tmp_path / "motd"
    op = FileOperation(
        {"path": str(target), "template": "motd.j2", "_task_dir": str(tmp_path)},
        context={"inventory_hostname": "web1"},
    )

    op.apply(HostConfig("web1"), build_executor())

    assert target.read_text() == "Welcome to web1\n"


def test_file_dry_run_leaves_disk_untouched(tmp_path: Path) -> None:
    target = tmp_path / "config.txt"
    op = FileOperation({"path": str(target), "content": "hello"})

    result = op.apply(HostConfig("local"), build_executor(dry_run=True))

    assert result.changed is True
    assert not target.exists()


def test_file_requires_link_target() -> None:
    with pytest.raises(ValueError):
        FileOperation({"path": "/tmp/x", "state": "link"})


def test_file_link_replaces_regular_file(tmp_path: Path) -> None:
    link = tmp_path / "current"
    link.write_text("not a link")
    op = FileOperation({"path": str(link), "state": "link", "link_target": "releases/2"})

    assert op.check(HostConfig("local"), build_executor()).details == "no link"
    result = op.apply(HostConfig("local"), build_executor())

    assert result.details == "link->releases/2"
    assert os.readlink(link) == "releases/2"


def test_rewrite_keeps_existing_mode(tmp_path: Path) -> None:
    target = tmp_path / "app.conf"
    target.write_text("old")
    os.chmod(target, 0o600)

    changed, detail = build_executor().write_file(target, content="new", mode=None)

    assert (changed, detail) == (True, "content")
    assert target.read_text() == "new"
    assert os.stat(target).st_mode & 0o777 == 0o600


class DirectoryReportingExecutor(LocalExecutor):
    def __init__(self, directories: set[Path]):
        super().__init__(HostConfig(name="local"))
        self.directories = directories
        self.asked: list[Path] = []

    def is_dir(self, path: Path) -> bool:
        self.asked.append(path)
        return path in self.directories


def test_directory_check_goes_through_executor(tmp_path: Path) -> None:
    target = tmp_path / "remote-only"
    op = FileOperation({"path": str(target), "state": "directory"})
    executor = DirectoryReportingExecutor({target})

    probe = op.check(HostConfig("local"), executor)

    assert probe.converged is True
    assert executor.asked == [target]
    assert not target.exists()
