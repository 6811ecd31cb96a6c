"""Command-line parsing and exit codes."""

import datetime
import re

import pytest
from click.testing import CliRunner

import yunohost_install as yi


@pytest.fixture
def captured_configs(monkeypatch):
    """Replace the Installer so parsing can be checked without touching the host."""
    configs = []

    class FakeInstaller:
        def __init__(self, config):
            configs.append(config)

        def run(self):
            return 0

    monkeypatch.setattr(yi, "Installer", FakeInstaller)
    return configs


def test_defaults(captured_configs):
    assert yi.main([]) == 0
    assert captured_configs == [yi.RunConfig()]


def test_all_flags(captured_configs):
    assert yi.main(["-a", "-d", "testing", "-f", "-i"]) == 0
    assert captured_configs == [
        yi.RunConfig(
            automatic=True,
            distribution=yi.Distribution.TESTING,
            image_build=True,
            force=True,
        )
    ]


@pytest.mark.parametrize("argv", [["-x"], ["-d", "oldstable"], ["-d"], ["extra"]])
def test_bad_options_exit_with_failure(captured_configs, capsys, argv):
    assert yi.main(argv) == 1
    assert captured_configs == []
    assert "Usage" in capsys.readouterr().err


def test_help(captured_configs):
    result = CliRunner().invoke(yi.cli, ["-h"])

    assert result.exit_code == 0
    assert "-a" in result.output
    assert "stable" in result.output
    assert re.search(r"^\s*-i\b", result.output, re.MULTILINE) is None
    assert captured_configs == []


def test_installer_status_is_exit_code(monkeypatch):
    class FailingInstaller:
        def __init__(self, config):
            pass

        def run(self):
            return 1

    monkeypatch.setattr(yi, "Installer", FailingInstaller)
    assert yi.main(["-a"]) == 1


def test_log_path_pattern():
    path = yi.log_path_for(datetime.datetime(2024, 1, 2, 3, 4, 5), "/var/log")
    assert str(path) == "/var/log/yunohost-installation_20240102_030405.log"


def test_distribution_components():
    assert yi.Distribution.STABLE.components == "stable"
    assert yi.Distribution.UNSTABLE.components == "stable testing unstable"
