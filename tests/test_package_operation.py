import pytest

from marionette_automation.executors import CommandResult, LocalExecutor
from marionette_automation.operations import package as pkg
from marionette_automation.operations.package import PackageManager
from marionette_automation.types import HostConfig


class FakePackageManager(PackageManager):
    name = "fake"

    def __init__(self, installed: set[str]):
        self._installed = installed
        self.installed_calls: list[list[str]] = []
        self.removed_calls: list[list[str]] = []

    def install(self, executor, packages: list[str]) -> None:  # type: ignore[override]
        self.installed_calls.append(list(packages))
        self._installed.update(packages)

    def remove(self, executor, packages: list[str]) -> None:  # type: ignore[override]
        self.removed_calls.append(list(packages))
        for pkg_name in packages:
            self._installed.discard(pkg_name)

    def is_installed(self, executor, package: str) -> bool:  # type: ignore[override]
        return package in self._installed


@pytest.fixture
def fake_manager(monkeypatch):
    installed = {"git"}

    def create(cls, preferred):
        return FakePackageManager(installed)

    monkeypatch.setattr(pkg.PackageManagerFactory, "create", classmethod(create))
    return installed


def build_executor() -> LocalExecutor:
    host = HostConfig(name="local")
    return LocalExecutor(host, dry_run=False)


def test_package_check_reports_missing(fake_manager):
    op = pkg.PackageOperation({"packages": ["git", "htop"], "state": "present"})
    probe = op.check(HostConfig("local"), build_executor())

    assert probe.converged is False
    assert "missing=htop" in probe.details


def test_package_present_installs_only_missing(fake_manager):
    op = pkg.PackageOperation({"packages": ["git", "htop"], "state": "present"})
    result = op.apply(HostConfig("local"), build_executor())

    assert result.changed is True
    assert "installed=htop" in result.details
    assert op.manager.installed_calls == [["htop"]]
    assert op.check(HostConfig("local"), build_executor()).converged is True


def test_package_absent_removes_installed(fake_manager):
    op = pkg.PackageOperation({"name": "git", "state": "absent"})
    result = op.apply(HostConfig("local"), build_executor())

    assert result.changed is True
    assert "git" not in fake_manager


def test_package_already_converged_is_noop(fake_manager):
    op = pkg.PackageOperation({"name": "git"})
    result = op.apply(HostConfig("local"), build_executor())

    assert result.changed is False
    assert op.manager.installed_calls == []


def test_package_requires_names():
    with pytest.raises(ValueError):
        pkg.PackageOperation({})


def test_package_rejects_unknown_state():
    with pytest.raises(ValueError):
        pkg.PackageOperation({"name": "git", "state": "latest"})


def test_unknown_preferred_manager():
    with pytest.raises(ValueError):
        pkg.PackageManagerFactory.create("chocolatey")


class RecordingExecutor(LocalExecutor):
    def __init__(self, stdout: str = "", returncode: int = 0):
        super().__init__(HostConfig(name="local"))
        self.commands: list[tuple[list[str], object]] = []
        self.stdout = stdout
        self.returncode = returncode

    def run(self, command, *, check=True, mutable=True, env=None, cwd=None, timeout=None):  # type: ignore[override]
        self.commands.append((list(command), env))
        return CommandResult(list(command), self.stdout, "", self.returncode)


def test_apt_manager_requires_installed_status():
    manager = pkg.PackageManagerFactory.create("apt")

    assert manager.is_installed(RecordingExecutor("install ok installed"), "git") is True
    assert manager.is_installed(RecordingExecutor("deinstall ok config-files"), "git") is False


def test_apt_manager_installs_noninteractively():
    executor = RecordingExecutor()
    pkg.PackageManagerFactory.create("apt").install(executor, ["git", "htop"])

    command, env = executor.commands[0]
    assert command == ["apt-get", "install", "-y", "git", "htop"]
    assert env == {"DEBIAN_FRONTEND": "noninteractive"}


def test_rpm_manager_queries_by_exit_code():
    manager = pkg.PackageManagerFactory.create("dnf")
    executor = RecordingExecutor(returncode=1)

    assert manager.is_installed(executor, "vim") is False
    assert executor.commands[0][0] == ["rpm", "-q", "vim"]
