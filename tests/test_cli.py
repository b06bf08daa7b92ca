from pathlib import Path
import json
import textwrap

import pytest

from marionette_automation import cli
from marionette_automation import vault as vault_mod
from marionette_automation.types import TaskOutcome, TaskResult


@pytest.fixture
def site(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.delenv("MARIONETTE_VAULT_PASSWORD", raising=False)
    monkeypatch.setattr(vault_mod, "KDF_ITERATIONS", 1000)
    (tmp_path / "vault.key").write_text("s3cret\n")
    (tmp_path / "main.conf").write_text(
        textwrap.dedent(
            f"""
            [defaults]
            audit_log = "{tmp_path / 'audit.jsonl'}"
            lock_dir = "{tmp_path / 'locks'}"
            vault_password_file = "{tmp_path / 'vault.key'}"
            """
        )
    )
    (tmp_path / "inventory.toml").write_text(
        textwrap.dedent(
            """
            [groups.local]
            hosts = ["localhost"]

            [hosts.localhost]
            vars = { app_dir = "app" }
            """
        )
    )
    return tmp_path


def write_tasks(site: Path, body: str) -> Path:
    path = site / "tasks.toml"
    path.write_text(textwrap.dedent(body))
    return path


def run_cli(site: Path, *extra: str) -> int:
    return cli.main(
        [
            "run",
            "--config",
            str(site / "main.conf"),
            "--inventory",
            str(site / "inventory.toml"),
            "--tasks",
            str(site / "tasks.toml"),
            *extra,
        ]
    )


def test_format_result_failed(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = TaskResult(host="local", task="conf", kind="file", outcome=TaskOutcome.FAILED, details="boom")
    assert cli.format_result(result).startswith("local::conf(file) failed - boom")


def test_format_result_changed_with_resource(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = TaskResult("local", "git", "package", TaskOutcome.CHANGED, "installed=git", resource="git")
    assert cli.format_result(result) == "local::git(package)[git] changed - installed=git"


def test_summary_counts(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    summary = cli.Summary()
    for outcome in (TaskOutcome.CHANGED, TaskOutcome.UNCHANGED, TaskOutcome.SKIPPED, TaskOutcome.FAILED):
        summary.add(TaskResult("h", "t", "file", outcome))
    summary.add(TaskResult("h", "t", "file", TaskOutcome.FAILED, ignored=True))

    assert summary.render() == "Changed: 1 | Unchanged: 1 | Skipped: 1 | Failures: 1 | Ignored: 1"


def test_parse_extra_vars():
    assert cli.parse_extra_vars(["a=1", "b=hello", "c=[1, 2]", "d=x=y"]) == {
        "a": 1,
        "b": "hello",
        "c": [1, 2],
        "d": "x=y",
    }
    with pytest.raises(ValueError):
        cli.parse_extra_vars(["novalue"])


def test_run_converges_and_exits_zero(site: Path, capsys):
    write_tasks(
        site,
        f"""
        [[tasks]]
        name = "marker"
        type = "file"
        path = "{site}/{{{{ app_dir }}}}/marker"
        content = "{{{{ release }}}}"
        """,
    )

    assert run_cli(site, "-e", "release=v2") == cli.EXIT_OK

    assert (site / "app" / "marker").read_text() == "v2"
    assert "Changed: 1" in capsys.readouterr().out
    record = json.loads((site / "audit.jsonl").read_text())
    assert record["status"] == "changed"


def test_check_mode_changes_nothing(site: Path):
    write_tasks(
        site,
        f"""
        [[tasks]]
        type = "file"
        path = "{site}/untouched"
        """,
    )

    assert run_cli(site, "--check") == cli.EXIT_OK
    assert not (site / "untouched").exists()


def test_undefined_variable_exits_one(site: Path, capsys):
    write_tasks(
        site,
        """
        [[tasks]]
        name = "motd"
        type = "file"
        path = "/tmp/{{ missing }}"
        """,
    )

    assert run_cli(site) == cli.EXIT_CONFIG_ERROR
    assert "undefined variable 'missing'" in capsys.readouterr().err


def test_task_failure_exits_four(site: Path, capsys):
    write_tasks(
        site,
        f"""
        [[tasks]]
        name = "broken"
        type = "line"
        path = "{site}/does-not-exist"
        line = "x"

        [[tasks]]
        name = "after"
        type = "file"
        path = "{site}/after"
        tags = ["late"]
        """,
    )

    assert run_cli(site) == cli.EXIT_TASK_FAILURE
    captured = capsys.readouterr()
    assert "task 'broken' failed" in captured.err
    assert "aborted" in captured.out
    assert not (site / "after").exists()


def test_skip_tags(site: Path):
    write_tasks(
        site,
        f"""
        [[tasks]]
        type = "file"
        path = "{site}/kept"

        [[tasks]]
        type = "file"
        path = "{site}/skipped"
        tags = "slow"
        """,
    )

    assert run_cli(site, "--skip-tags", "slow") == cli.EXIT_OK
    assert (site / "kept").exists()
    assert not (site / "skipped").exists()


def test_vault_encrypt_string_and_view(site: Path, capsys):
    key = ["--config", str(site / "main.conf")]

    assert cli.main(["vault", "encrypt-string", "hunter2", "--name", "db_password", *key]) == cli.EXIT_OK
    snippet = capsys.readouterr().out
    assert snippet.startswith('db_password = """\n$MARIONETTE_VAULT;1.0;AES256-GCM')

    secret_file = site / "secrets.toml"
    secret_file.write_text('token = "abc"\n')
    assert cli.main(["vault", "encrypt", str(secret_file), *key]) == cli.EXIT_OK
    assert "abc" not in secret_file.read_text()
    capsys.readouterr()

    assert cli.main(["vault", "view", str(secret_file), *key]) == cli.EXIT_OK
    assert capsys.readouterr().out == 'token = "abc"\n'
    assert cli.main(["vault", "encrypt", str(secret_file), *key]) == cli.EXIT_CONFIG_ERROR


def test_vault_encrypted_variables_reach_tasks(site: Path):
    key = ["--config", str(site / "main.conf")]
    (site / "secrets.vault").write_text('api_token = "tok-9"\n')
    assert cli.main(["vault", "encrypt", str(site / "secrets.vault"), *key]) == cli.EXIT_OK
    inventory = (site / "inventory.toml").read_text().replace(
        "[hosts.localhost]", '[hosts.localhost]\nvault_files = ["secrets.vault"]'
    )
    (site / "inventory.toml").write_text(inventory)
    write_tasks(
        site,
        f"""
        [[tasks]]
        type = "file"
        path = "{site}/token"
        content = "{{{{ api_token }}}}"
        """,
    )

    assert run_cli(site) == cli.EXIT_OK
    assert (site / "token").read_text() == "tok-9"
    assert "tok-9" not in (site / "audit.jsonl").read_text()


def test_local_targets(site: Path, monkeypatch):
    from marionette_automation.errors import InvalidInventory
    from marionette_automation.inventory import InventoryLoader

    monkeypatch.setattr(cli.socket, "gethostname", lambda: "build-7.example.com")
    monkeypatch.setattr(cli.socket, "getfqdn", lambda: "build-7.example.com")
    inventory = InventoryLoader().load(site / "inventory.toml")

    assert cli.local_targets(inventory) == ["localhost"]

    empty = site / "other.toml"
    empty.write_text('[groups.g]\nhosts = ["db1"]\n\n[hosts.db1]\n')
    with pytest.raises(InvalidInventory):
        cli.local_targets(InventoryLoader().load(empty))


def test_config_error_on_one_host_does_not_stop_the_others(site: Path, capsys):
    (site / "broken.vault").write_text("$MARIONETTE_VAULT;1.0;AES256-GCM\nAAAA\n")
    (site / "inventory.toml").write_text(
        textwrap.dedent(
            """
            [groups.web]
            hosts = ["alpha", "beta"]

            [hosts.alpha]
            vault_files = ["broken.vault"]

            [hosts.beta]
            """
        )
    )
    write_tasks(
        site,
        f"""
        [[tasks]]
        type = "file"
        path = "{site}/{{{{ inventory_hostname }}}}.txt"
        """,
    )

    assert run_cli(site, "--target", "web") == cli.EXIT_CONFIG_ERROR

    assert "alpha: configuration error" in capsys.readouterr().err
    assert not (site / "alpha.txt").exists()
    assert (site / "beta.txt").exists()
    records = [json.loads(line) for line in (site / "audit.jsonl").read_text().splitlines()]
    assert [(r["host"], r["status"]) for r in records] == [("alpha", "error"), ("beta", "changed")]


def test_task_failure_outranks_config_error(site: Path):
    (site / "broken.vault").write_text("$MARIONETTE_VAULT;1.0;AES256-GCM\nAAAA\n")
    (site / "inventory.toml").write_text(
        textwrap.dedent(
            """
            [groups.web]
            hosts = ["alpha", "beta"]

            [hosts.alpha]
            vault_files = ["broken.vault"]

            [hosts.beta]
            """
        )
    )
    write_tasks(
        site,
        f"""
        [[tasks]]
        type = "line"
        path = "{site}/missing"
        line = "x"
        """,
    )

    assert run_cli(site, "--target", "web") == cli.EXIT_TASK_FAILURE
