"""Shared test fixtures for the YunoHost installer."""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

import yunohost_install as yi


class FakeHost(yi.HostState):
    """HostState with scripted answers; files still resolve under ``root``."""

    def __init__(
        self,
        root: Path,
        debian_version: str = "11.7",
        euid: int = 0,
        systemd: bool = True,
        raspbian: bool = False,
        logged_in: Sequence[str] = (),
        installed: Sequence[str] = (),
        users: Sequence[str] = ("avahi",),
        groups: Sequence[str] = ("avahi",),
        ssh_customized: bool = False,
    ) -> None:
        super().__init__(str(root))
        self._debian_version = debian_version
        self._euid = euid
        self._systemd = systemd
        self._raspbian = raspbian
        self.logged_in = list(logged_in)
        self.installed = set(installed)
        self.users = set(users)
        self.groups = set(groups)
        self._ssh_customized = ssh_customized

    def debian_version(self) -> str:
        return self._debian_version

    def euid(self) -> int:
        return self._euid

    def has_systemd(self) -> bool:
        return self._systemd

    def logged_in_users(self) -> List[str]:
        return list(self.logged_in)

    def is_installed(self, package: str) -> bool:
        return package in self.installed

    def is_raspbian(self) -> bool:
        return self._raspbian

    def user_exists(self, name: str) -> bool:
        return name in self.users

    def group_exists(self, name: str) -> bool:
        return name in self.groups

    def sshd_config_is_customized(self) -> bool:
        return self._ssh_customized


class RecordingRunner:
    """Records every command and answers with scripted exit statuses."""

    def __init__(
        self,
        failures: Optional[Dict[Tuple[str, ...], int]] = None,
        attached_statuses: Sequence[int] = (),
    ) -> None:
        self.commands: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.failures = dict(failures or {})
        self.attached_statuses = list(attached_statuses)

    def _status(self, cmd: List[str]) -> int:
        for prefix, status in self.failures.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                return status
        return 0

    def run(self, cmd, description=None, env=None, input_text=None) -> int:
        cmd = list(cmd)
        self.commands.append(cmd)
        self.inputs.append(input_text)
        return self._status(cmd)

    def apt_get(self, *args, description=None) -> int:
        return self.run(["apt-get", *args], description=description)

    def run_attached(self, cmd) -> int:
        self.commands.append(list(cmd))
        if self.attached_statuses:
            return self.attached_statuses.pop(0)
        return 0

    def ran(self, *prefix: str) -> bool:
        return any(tuple(c[: len(prefix)]) == prefix for c in self.commands)


class ScriptedPrompter:
    """Answers confirmations from a script and fails on unexpected questions."""

    def __init__(self, *answers: bool) -> None:
        self.answers = list(answers)
        self.questions: List[str] = []

    def confirm(self, question: str, default: bool = False) -> bool:
        self.questions.append(question)
        if not self.answers:
            raise AssertionError(f"unexpected prompt: {question}")
        return self.answers.pop(0)


@pytest.fixture
def root(tmp_path: Path) -> Path:
    """Filesystem root the steps write under."""
    path = tmp_path / "root"
    path.mkdir()
    return path


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    return tmp_path / "log"


@pytest.fixture
def host(root: Path) -> FakeHost:
    return FakeHost(root)


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def run_log(log_dir: Path):
    log = yi.RunLog(log_dir / "test.log")
    yield log
    log.close()


@pytest.fixture
def make_context(host, runner, run_log):
    """Build a RunContext around the fake host and the recording runner."""

    def _make(config=None, platform=None, prompter=None, keep_ssh_config=False):
        return yi.RunContext(
            config=config or yi.RunConfig(automatic=True),
            platform=platform or yi.Platform(),
            host=host,
            runner=runner,
            log=run_log,
            prompter=prompter or ScriptedPrompter(),
            keep_ssh_config=keep_ssh_config,
        )

    return _make


@pytest.fixture
def make_installer(host, runner, log_dir):
    """Build an Installer wired to the fakes, with an isolated environment."""

    def _make(config, prompter=None, environ=None):
        return yi.Installer(
            config,
            log_dir=str(log_dir),
            host=host,
            runner=runner,
            prompter=prompter or ScriptedPrompter(),
            environ={} if environ is None else environ,
        )

    return _make


def log_lines(log_dir: Path) -> List[str]:
    (path,) = list(log_dir.glob("yunohost-installation_*.log"))
    return path.read_text(encoding="utf-8").splitlines()
