from pathlib import Path
import textwrap

import pytest

from marionette_automation.errors import TaskDefinitionError
from marionette_automation.tasks import TaskLoader
from marionette_automation.types import CapabilityKind


def write_tasks(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "tasks.toml"
    path.write_text(textwrap.dedent(body).strip() + "\n")
    return path


def test_loads_tasks_in_order(tmp_path: Path) -> None:
    path = write_tasks(
        tmp_path,
        """
        [defaults]
        motd = "hello"

        [[tasks]]
        name = "install git"
        type = "package"
        packages = ["git"]
        tags = "base, tools"

        [[tasks]]
        name = "bootstrap"
        type = "exec"
        command = "make bootstrap"
        creates = "/opt/app/.bootstrapped"
        timeout = 30
        continue_on_error = true
        when = ["ansible_os == 'linux'", "enabled"]

          [[tasks.on_success]]
          type = "file"
          path = "/opt/app/.done"
        """,
    )

    task_set = TaskLoader().load(path)

    assert task_set.defaults == {"motd": "hello"}
    first, second = task_set.tasks
    assert first.kind is CapabilityKind.PACKAGE
    assert first.tags == ("base", "tools")
    assert first.params["packages"] == ["git"]
    assert "tags" not in first.params
    assert second.guard.creates == "/opt/app/.bootstrapped"
    assert second.timeout == 30.0
    assert second.continue_on_error is True
    assert second.when == "(ansible_os == 'linux') and (enabled)"
    assert second.on_success[0].name == "file-2.s.1"
    assert second.on_success[0].params["_task_dir"] == str(tmp_path)


def test_exec_without_guard_is_rejected(tmp_path: Path) -> None:
    path = write_tasks(
        tmp_path,
        """
        [[tasks]]
        name = "unguarded"
        type = "exec"
        command = "rm -rf /tmp/cache"
        """,
    )
    with pytest.raises(TaskDefinitionError, match="idempotency guard"):
        TaskLoader().load(path)


def test_unknown_type_is_rejected(tmp_path: Path) -> None:
    path = write_tasks(tmp_path, '[[tasks]]\ntype = "service"\n')
    with pytest.raises(TaskDefinitionError, match="unknown type 'service'"):
        TaskLoader().load(path)


def test_missing_type_is_rejected(tmp_path: Path) -> None:
    path = write_tasks(tmp_path, '[[tasks]]\nname = "what"\n')
    with pytest.raises(ValueError):
        TaskLoader().load(path)


def test_non_positive_timeout(tmp_path: Path) -> None:
    path = write_tasks(tmp_path, '[[tasks]]\ntype = "file"\npath = "/tmp/x"\ntimeout = 0\n')
    with pytest.raises(TaskDefinitionError, match="positive"):
        TaskLoader().load(path)


def test_parse_without_file() -> None:
    task_set = TaskLoader().parse({"tasks": [{"type": "line", "path": "/etc/hosts", "line": "x"}]})

    assert task_set.tasks[0].name == "line-1"
    assert "_task_dir" not in task_set.tasks[0].params
