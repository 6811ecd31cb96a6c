#!/usr/bin/env python3
"""
YunoHost Installation Utility
-----------------------------

Provisions a YunoHost server on top of a Debian base system. The run upgrades
the OS, configures the package sources, pre-seeds the debconf database,
installs the YunoHost packages, applies a few idempotent workarounds for
known packaging bugs and finally offers to launch the post-installation
wizard.

Features:
  • Preflight checks that must all pass before anything on the host changes
  • Strictly ordered installation steps that stop at the first failure
  • Automatic (-a) mode for unattended runs, no questions asked
  • Nord-themed terminal output with live progress for package operations
  • Timestamped installation log under /var/log for every run

Requires root privileges.
Version: 1.0.0
"""

import datetime
import grp
import logging
import os
import pwd
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, MutableMapping, Optional, Sequence

import click
import pyfiglet
from rich.box import ROUNDED
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.prompt import Confirm
from rich.style import Style
from rich.text import Text
from rich.theme import Theme


# ----------------------------------------------------------------
# Configuration & Constants
# ----------------------------------------------------------------
class AppConfig:
    """Static installer configuration."""

    # Application info
    VERSION: str = "1.0.0"
    APP_NAME: str = "YunoHost"
    APP_SUBTITLE: str = "Debian Installation Utility"
    PRODUCT: str = "yunohost"

    # Supported base system
    DEBIAN_MAJOR: str = "11"
    DEBIAN_CODENAME: str = "bullseye"

    # Logging
    LOG_DIR: str = "/var/log"
    LOG_TIMESTAMP_FORMAT: str = "%Y%m%d_%H%M%S"
    LOG_FORMAT: str = "%(asctime)s [%(tag)s] %(message)s"
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"

    # APT
    APT_SOURCES_LIST: str = "/etc/apt/sources.list"
    APT_LISTS_DIR: str = "/var/lib/apt/lists"
    REPO_URL: str = "http://forge.yunohost.org/debian/"
    REPO_KEY_URL: str = f"https://forge.yunohost.org/yunohost_{DEBIAN_CODENAME}.asc"
    KEYRING_FILE: str = f"/usr/share/keyrings/yunohost-{DEBIAN_CODENAME}.gpg"
    SOURCES_FILE: str = "/etc/apt/sources.list.d/yunohost.list"

    # Marker files
    CONFIG_DIR: str = "/etc/yunohost"
    FROM_SCRIPT_MARKER: str = "from_script"
    SSH_MANUAL_MARKER: str = "sshd_config_manual"

    # SSH
    SSH_DIR: str = "/etc/ssh"
    SSHD_CONFIG: str = "/etc/ssh/sshd_config"
    SSH_HOST_KEY_PATTERN: str = "ssh_host_*"

    # Raspbian
    OS_RELEASE: str = "/etc/os-release"
    RPI_ISSUE: str = "/etc/rpi-issue"
    RASPI_USER: str = "pi"
    RASPI_CONFIG_HOOK: str = "/etc/profile.d/raspi-config.sh"

    # Packages
    SCRIPT_DEPENDENCIES: List[str] = [
        "lsb-release",
        "wget",
        "curl",
        "gnupg",
        "apt-transport-https",
        "ca-certificates",
        "adduser",
        "debconf-utils",
    ]
    PACKAGES: List[str] = ["yunohost", "yunohost-admin", "postfix"]

    # Installed package -> the package it is incompatible with
    CONFLICTING_PACKAGES: Dict[str, str] = {
        "apache2": "nginx",
        "bind9": "dnsmasq",
    }

    RESTART_SERVICES: List[str] = ["slapd", "unscd", "nslcd"]
    POSTINSTALL_COMMAND: List[str] = ["yunohost", "tools", "postinstall"]

    DEBCONF_SEEDS: str = """\
slapd slapd/password1 password yunohost
slapd slapd/password2 password yunohost
slapd slapd/domain string yunohost.org
slapd shared/organization string yunohost.org
slapd slapd/allow_ldap_v2 boolean false
slapd slapd/invalid_config boolean true
slapd slapd/backend select MDB
postfix postfix/main_mailer_type select Internet Site
postfix postfix/mailname string /etc/mailname
mariadb-server-10.5 mysql-server/root_password password yunohost
mariadb-server-10.5 mysql-server/root_password_again password yunohost
nslcd nslcd/ldap-bindpw password
nslcd nslcd/ldap-starttls boolean false
nslcd nslcd/ldap-reqcert select
nslcd nslcd/ldap-uris string ldap://localhost/
nslcd nslcd/ldap-binddn string
nslcd nslcd/ldap-base string dc=yunohost,dc=org
libnss-ldapd libnss-ldapd/nsswitch multiselect group, passwd, shadow
postsrsd postsrsd/domain string yunohost.org
"""


class Distribution(str, Enum):
    """Release channel of the YunoHost repository."""

    STABLE = "stable"
    TESTING = "testing"
    UNSTABLE = "unstable"

    @property
    def components(self) -> str:
        """Repository components enabled for this channel."""
        order = [Distribution.STABLE, Distribution.TESTING, Distribution.UNSTABLE]
        return " ".join(d.value for d in order[: order.index(self) + 1])


@dataclass(frozen=True)
class RunConfig:
    """Run configuration, parsed once from the command line."""

    automatic: bool = False
    distribution: Distribution = Distribution.STABLE
    image_build: bool = False
    force: bool = False


@dataclass(frozen=True)
class Platform:
    """Host capabilities, resolved once at startup."""

    is_raspbian: bool = False
    is_image_build: bool = False


# ----------------------------------------------------------------
# Nord-Themed Colors and Rich Console
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette for consistent theming throughout the application."""

    POLAR_NIGHT_4: str = "#4C566A"
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"
    RED: str = "#BF616A"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"
    PURPLE: str = "#B48EAD"


console = Console(
    theme=Theme(
        {
            "info": f"{NordColors.FROST_2}",
            "warning": f"bold {NordColors.YELLOW}",
            "error": f"bold {NordColors.RED}",
            "success": f"bold {NordColors.GREEN}",
            "section": f"{NordColors.FROST_3} bold",
            "step": f"{NordColors.FROST_3}",
            "prompt": f"bold {NordColors.PURPLE}",
            "dim_output": f"{NordColors.POLAR_NIGHT_4}",
        }
    )
)


# ----------------------------------------------------------------
# Custom Exceptions
# ----------------------------------------------------------------
class InstallError(Exception):
    """Base exception for installation errors."""

    pass


class PreconditionFailure(InstallError):
    """Raised when the host state does not allow the installation to start."""

    pass


class StepFailure(InstallError):
    """Raised inside a step when an external command or file operation fails."""

    pass


class UserCancelled(InstallError):
    """Raised when the operator declines an interactive confirmation."""

    pass


# ----------------------------------------------------------------
# Logging and Banner Helpers
# ----------------------------------------------------------------
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")


class RunLogFormatter(logging.Formatter):
    """Formatter rendering log levels as the short installation-log tags."""

    TAGS: Dict[int, str] = {
        logging.DEBUG: "DEBUG",
        logging.INFO: "INFO",
        SUCCESS: "OK",
        logging.WARNING: "WARN",
        logging.ERROR: "FAIL",
        logging.CRITICAL: "FAIL",
    }

    def format(self, record: logging.LogRecord) -> str:
        record.tag = self.TAGS.get(record.levelno, record.levelname)
        return super().format(record)


def log_path_for(
    started: datetime.datetime, log_dir: str = AppConfig.LOG_DIR
) -> Path:
    """Installation log path derived from the run's start time."""
    stamp = started.strftime(AppConfig.LOG_TIMESTAMP_FORMAT)
    return Path(log_dir) / f"{AppConfig.PRODUCT}-installation_{stamp}.log"


def setup_logging(log_file: Path) -> logging.Logger:
    """Configure the installer logger with an append-only file handler."""
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("yunohost_install")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    handler.setFormatter(
        RunLogFormatter(AppConfig.LOG_FORMAT, datefmt=AppConfig.LOG_DATE_FORMAT)
    )
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


class RunLog:
    """
    The installation log of a single run.

    Every message goes both to the console and to the log file. Raw command
    output only goes to the file.
    """

    def __init__(self, path: Path, out: Console = console) -> None:
        self.path = Path(path)
        self.console = out
        self.logger = setup_logging(self.path)

    def section(self, title: str) -> None:
        self.console.print()
        try:
            art = pyfiglet.figlet_format(title, font="small")
            self.console.print(Text(art.rstrip("\n")), style="section")
        except Exception:
            self.console.print(Text(f"== {title.upper()} =="), style="section")
        self.console.print(f"[{NordColors.FROST_3}]{'─' * 60}[/]")
        self.logger.info(f"--- {title} ---")

    def step(self, text: str) -> None:
        self.console.print(Text(f"➜ {text}"), style="step")
        self.logger.info(text)

    def info(self, text: str) -> None:
        self.console.print(Text(f"• {text}"), style="info")
        self.logger.info(text)

    def success(self, text: str) -> None:
        self.console.print(Text(f"✓ {text}"), style="success")
        self.logger.log(SUCCESS, text)

    def warning(self, text: str) -> None:
        self.console.print(Text(f"⚠ {text}"), style="warning")
        self.logger.warning(text)

    def error(self, text: str) -> None:
        self.console.print(Text(f"✗ {text}"), style="error")
        self.logger.error(text)

    def output(self, line: str) -> None:
        self.logger.debug(line)

    def close(self) -> None:
        for handler in list(self.logger.handlers):
            handler.flush()
            self.logger.removeHandler(handler)
            handler.close()


def create_header() -> Panel:
    """
    Create an ASCII art header using Pyfiglet with a Nord-themed gradient.

    Returns:
        Panel: A Rich Panel containing the styled header.
    """
    fonts = ["slant", "big", "standard", "small"]
    ascii_art = ""
    width = min(shutil.get_terminal_size().columns - 10, 80)

    for font in fonts:
        try:
            ascii_art = pyfiglet.Figlet(font=font, width=width).renderText(
                AppConfig.APP_NAME
            )
            if ascii_art.strip():
                break
        except Exception:
            continue

    if not ascii_art.strip():
        ascii_art = f"=== {AppConfig.APP_NAME} ===\n"

    colors = [
        NordColors.FROST_1,
        NordColors.FROST_2,
        NordColors.FROST_3,
        NordColors.FROST_4,
    ]
    styled = Text()
    for i, line in enumerate(ln for ln in ascii_art.splitlines() if ln.strip()):
        styled.append(line + "\n", style=f"bold {colors[i % len(colors)]}")

    return Panel(
        styled,
        border_style=Style(color=NordColors.FROST_1),
        padding=(1, 2),
        box=ROUNDED,
        title=f"[bold {NordColors.SNOW_STORM_2}]v{AppConfig.VERSION}[/]",
        title_align="right",
        subtitle=f"[bold {NordColors.SNOW_STORM_1}]{AppConfig.APP_SUBTITLE}[/]",
        subtitle_align="center",
    )


# ----------------------------------------------------------------
# Command Execution Helpers
# ----------------------------------------------------------------
def apply_environment(
    config: RunConfig, environ: Optional[MutableMapping[str, str]] = None
) -> None:
    """Set the process-wide environment inherited by every child process."""
    environ = os.environ if environ is None else environ
    if config.automatic:
        environ["DEBIAN_FRONTEND"] = "noninteractive"


class CommandRunner:
    """
    Runs external commands and appends their combined output to the run log.

    Non-zero exit statuses are returned to the caller, never raised; the
    caller decides how severe a failure is. A missing executable is reported
    as status 127.
    """

    MISSING_COMMAND_STATUS = 127

    def __init__(self, log: RunLog, interactive: bool = True) -> None:
        self.log = log
        self.interactive = interactive

    def run(
        self,
        cmd: Sequence[str],
        description: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
    ) -> int:
        """
        Execute a command, streaming its output to the log.

        Args:
            cmd: Command and arguments
            description: Label for the progress display in interactive mode
            env: Environment for the child, inherited from this process if None
            input_text: Text written to the child's standard input

        Returns:
            The command's exit status
        """
        cmd_str = " ".join(cmd)
        self.log.logger.debug(f"Executing: {cmd_str}")

        try:
            process = subprocess.Popen(
                list(cmd),
                stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=env,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            self.log.logger.warning(f"Unable to execute {cmd_str}: {e}")
            return self.MISSING_COMMAND_STATUS

        if input_text is not None:
            process.stdin.write(input_text)
            process.stdin.close()

        if self.interactive and description:
            self._stream_with_progress(process, description)
        else:
            for line in process.stdout:
                self.log.output(line.rstrip("\n"))

        returncode = process.wait()
        self.log.logger.debug(f"Exit status {returncode}: {cmd_str}")
        return returncode

    def _stream_with_progress(self, process: subprocess.Popen, description: str) -> None:
        with Progress(
            SpinnerColumn(spinner_name="dots", style=f"bold {NordColors.FROST_1}"),
            TextColumn("{task.description}"),
            TimeElapsedColumn(),
            console=self.log.console,
            transient=True,
        ) as progress:
            task = progress.add_task(f"[bold {NordColors.FROST_2}]{escape(description)}", total=None)
            for line in process.stdout:
                line = line.rstrip("\n")
                self.log.output(line)
                if line.strip():
                    progress.update(
                        task,
                        description=(
                            f"[bold {NordColors.FROST_2}]{escape(description)}[/] "
                            f"[dim_output]{escape(line.strip()[:60])}[/]"
                        ),
                    )

    def apt_get(self, *args: str, description: Optional[str] = None) -> int:
        """Run apt-get, keeping existing configuration files on upgrade."""
        cmd = ["apt-get", "-y", "-o", "Dpkg::Options::=--force-confold", *args]
        return self.run(cmd, description=description)

    def run_attached(self, cmd: Sequence[str]) -> int:
        """Run an interactive command on the operator's terminal."""
        cmd_str = " ".join(cmd)
        self.log.logger.debug(f"Executing attached: {cmd_str}")
        try:
            returncode = subprocess.run(list(cmd), check=False).returncode
        except OSError as e:
            self.log.logger.warning(f"Unable to execute {cmd_str}: {e}")
            return self.MISSING_COMMAND_STATUS
        self.log.logger.debug(f"Exit status {returncode}: {cmd_str}")
        return returncode


# ----------------------------------------------------------------
# Host State
# ----------------------------------------------------------------
class HostState:
    """Read-only view of the host, rooted at ``root`` for every file lookup."""

    def __init__(self, root: str = "/") -> None:
        self.root = Path(root)

    def path(self, absolute: str) -> Path:
        return self.root / absolute.lstrip("/")

    def _read(self, absolute: str) -> str:
        try:
            return self.path(absolute).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def debian_version(self) -> str:
        return self._read("/etc/debian_version").strip()

    def euid(self) -> int:
        return os.geteuid()

    def has_systemd(self) -> bool:
        return (
            self.path("/run/systemd/system").is_dir()
            and shutil.which("systemctl") is not None
        )

    def logged_in_users(self) -> List[str]:
        """Users with an open login session, as reported by who."""
        try:
            result = subprocess.run(
                ["who"], capture_output=True, text=True, check=False
            )
        except OSError:
            return []
        return [line.split()[0] for line in result.stdout.splitlines() if line.strip()]

    def is_installed(self, package: str) -> bool:
        try:
            result = subprocess.run(
                ["dpkg-query", "--show", "--showformat=${Status}", package],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "install ok installed"

    def is_raspbian(self) -> bool:
        for line in self._read(AppConfig.OS_RELEASE).splitlines():
            if line.strip() == "ID=raspbian":
                return True
        return self.path(AppConfig.RPI_ISSUE).is_file()

    def user_exists(self, name: str) -> bool:
        try:
            pwd.getpwnam(name)
        except KeyError:
            return False
        return True

    def group_exists(self, name: str) -> bool:
        try:
            grp.getgrnam(name)
        except KeyError:
            return False
        return True

    def sshd_config_is_customized(self) -> bool:
        """
        Whether sshd_config carries settings the platform would overwrite.

        A non-default port, explicit listening addresses or a disabled root
        login are considered customisations.
        """
        for raw in self._read(AppConfig.SSHD_CONFIG).splitlines():
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            parts = line.split(None, 1)
            key = parts[0].lower()
            value = parts[1].strip().lower() if len(parts) > 1 else ""
            if key == "port" and value != "22":
                return True
            if key == "listenaddress":
                return True
            if key == "permitrootlogin" and value == "no":
                return True
        return False


def detect_platform(config: RunConfig, host: HostState) -> Platform:
    return Platform(is_raspbian=host.is_raspbian(), is_image_build=config.image_build)


# ----------------------------------------------------------------
# Preflight Checks
# ----------------------------------------------------------------
@dataclass(frozen=True)
class Precondition:
    """A host-state predicate that must hold before anything is changed."""

    name: str
    description: str
    check: Callable[[], bool]
    reason: str
    forceable: bool = False


@dataclass(frozen=True)
class PreconditionResult:
    name: str
    passed: bool
    bypassed: bool = False
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.passed or self.bypassed


ROOT_REASON = "This script must be run as root."


def is_supported_debian(version: str) -> bool:
    """Accept point releases ("11.7") as well as codename strings ("bullseye/sid")."""
    return (
        version.split(".")[0] == AppConfig.DEBIAN_MAJOR
        or version.split("/")[0] == AppConfig.DEBIAN_CODENAME
    )


def build_preconditions(host: HostState, platform: Platform) -> List[Precondition]:
    """Preflight rules for this host, in evaluation order."""
    major = AppConfig.DEBIAN_MAJOR
    codename = AppConfig.DEBIAN_CODENAME

    rules = [
        Precondition(
            "debian_version",
            f"Debian {major} ({codename})",
            lambda: is_supported_debian(host.debian_version()),
            f"This installer only supports Debian {major} ({codename}).",
        ),
        Precondition(
            "root",
            "Root privileges",
            lambda: host.euid() == 0,
            ROOT_REASON,
        ),
        Precondition(
            "systemd",
            "systemd init",
            host.has_systemd,
            "systemd does not appear to be the init system. "
            "YunoHost requires systemd to manage its services.",
        ),
    ]

    if platform.is_raspbian:
        user = AppConfig.RASPI_USER
        rules.append(
            Precondition(
                "pi_session",
                f"No active session for user {user}",
                lambda: user not in host.logged_in_users(),
                f"The user {user} is logged in. The {user} account is removed "
                "during the installation; log in as root and run the script again.",
            )
        )

    for package, required in AppConfig.CONFLICTING_PACKAGES.items():
        rules.append(
            Precondition(
                package,
                f"{package} not installed",
                lambda package=package: not host.is_installed(package),
                f"{package} is installed on your system. YunoHost conflicts with "
                f"{package} because it requires {required}. Remove {package} "
                "first, or run with -f if you know what you are doing.",
                forceable=True,
            )
        )

    return rules


class PreconditionChecker:
    """Evaluates every preflight rule before any mutating step runs."""

    def __init__(self, preconditions: List[Precondition], log: RunLog) -> None:
        self.preconditions = preconditions
        self.log = log

    def evaluate(self, force: bool = False) -> List[PreconditionResult]:
        results = []
        for rule in self.preconditions:
            passed = bool(rule.check())
            bypassed = force and rule.forceable
            if passed:
                self.log.info(f"{rule.description}: ok")
            elif bypassed:
                self.log.warning(f"{rule.reason} Ignored because of -f.")
            results.append(
                PreconditionResult(
                    name=rule.name,
                    passed=passed,
                    bypassed=bypassed,
                    reason="" if passed else rule.reason,
                )
            )
        return results

    def enforce(self, force: bool = False) -> List[PreconditionResult]:
        """
        Evaluate every rule and refuse to continue if any one failed.

        Raises:
            PreconditionFailure: Listing the reason of each failed rule
        """
        results = self.evaluate(force)
        failed = [r for r in results if not r.ok]
        if failed:
            raise PreconditionFailure(" ".join(r.reason for r in failed))
        return results


# ----------------------------------------------------------------
# Steps
# ----------------------------------------------------------------
class StepStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class StepResult:
    status: StepStatus
    reason: str = ""
    exit_status: int = 0

    @classmethod
    def success(cls) -> "StepResult":
        return cls(StepStatus.SUCCESS)

    @classmethod
    def failure(cls, reason: str, exit_status: int = 1) -> "StepResult":
        return cls(StepStatus.FAILURE, reason, exit_status)

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.SUCCESS


class Prompter:
    """Interactive yes/no questions on the operator's terminal."""

    def __init__(self, out: Console = console) -> None:
        self.console = out

    def confirm(self, question: str, default: bool = False) -> bool:
        return Confirm.ask(
            f"[prompt]{escape(question)}[/prompt]", default=default, console=self.console
        )


@dataclass
class RunContext:
    """Everything a step needs, passed explicitly to each step action."""

    config: RunConfig
    platform: Platform
    host: HostState
    runner: CommandRunner
    log: RunLog
    prompter: Prompter
    keep_ssh_config: bool = False

    def fs(self, absolute: str) -> Path:
        return self.host.path(absolute)

    def check(self, status: int, what: str) -> None:
        """Raise StepFailure unless an external command exited with 0."""
        if status != 0:
            raise StepFailure(f"{what} exited with status {status}")


def backup_file(path: Path, log: RunLog) -> Path:
    """Copy a file aside with a timestamp suffix."""
    ts = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    backup = path.with_name(f"{path.name}.bak.{ts}")
    shutil.copy2(path, backup)
    log.logger.info(f"Backed up {path} to {backup}")
    return backup


def _is_cdrom_source(line: str) -> bool:
    return line.lstrip().startswith(("deb cdrom:", "deb-src cdrom:"))


def setup_package_source(ctx: RunContext) -> StepResult:
    sources = ctx.fs(AppConfig.APT_SOURCES_LIST)
    if sources.is_file():
        lines = sources.read_text(encoding="utf-8").splitlines(keepends=True)
        if any(_is_cdrom_source(line) for line in lines):
            backup_file(sources, ctx.log)
            sources.write_text(
                "".join(f"# {ln}" if _is_cdrom_source(ln) else ln for ln in lines),
                encoding="utf-8",
            )
            ctx.log.info("Disabled installation media entries in the APT sources")

    ctx.check(
        ctx.runner.apt_get("update", description="Refreshing package lists"),
        "apt-get update",
    )
    return StepResult.success()


def upgrade_system(ctx: RunContext) -> StepResult:
    ctx.check(
        ctx.runner.apt_get("update", description="Refreshing package lists"),
        "apt-get update",
    )
    ctx.check(
        ctx.runner.apt_get("dist-upgrade", description="Upgrading the system"),
        "apt-get dist-upgrade",
    )
    return StepResult.success()


def install_script_dependencies(ctx: RunContext) -> StepResult:
    ctx.check(
        ctx.runner.apt_get(
            "install",
            *AppConfig.SCRIPT_DEPENDENCIES,
            description="Installing installer dependencies",
        ),
        "apt-get install",
    )
    return StepResult.success()


def create_custom_config(ctx: RunContext) -> StepResult:
    """Write the marker files read later by the platform's own configuration."""
    config_dir = ctx.fs(AppConfig.CONFIG_DIR)
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / AppConfig.FROM_SCRIPT_MARKER).touch()
    if ctx.keep_ssh_config:
        (config_dir / AppConfig.SSH_MANUAL_MARKER).touch()
        ctx.log.info("The SSH configuration will be left untouched")
    return StepResult.success()


def register_debconf(ctx: RunContext) -> StepResult:
    ctx.check(
        ctx.runner.run(
            ["debconf-set-selections"],
            description="Pre-seeding package configuration",
            input_text=AppConfig.DEBCONF_SEEDS,
        ),
        "debconf-set-selections",
    )
    return StepResult.success()


def setup_repository(ctx: RunContext) -> StepResult:
    keyring = ctx.fs(AppConfig.KEYRING_FILE)
    armored = keyring.with_suffix(".asc")
    keyring.parent.mkdir(parents=True, exist_ok=True)

    try:
        ctx.check(
            ctx.runner.run(
                ["curl", "--fail", "--silent", "--show-error", "--location",
                 "--output", str(armored), AppConfig.REPO_KEY_URL],
                description="Fetching the repository signing key",
            ),
            "curl",
        )
        ctx.check(
            ctx.runner.run(
                ["gpg", "--dearmor", "--yes", "--output", str(keyring), str(armored)],
                description="Importing the repository signing key",
            ),
            "gpg --dearmor",
        )
    finally:
        armored.unlink(missing_ok=True)

    sources_file = ctx.fs(AppConfig.SOURCES_FILE)
    sources_file.parent.mkdir(parents=True, exist_ok=True)
    sources_file.write_text(repository_line(ctx.config.distribution), encoding="utf-8")
    ctx.log.info(f"Registered the {ctx.config.distribution.value} repository")

    ctx.check(
        ctx.runner.apt_get("update", description="Refreshing package lists"),
        "apt-get update",
    )
    return StepResult.success()


def repository_line(distribution: Distribution) -> str:
    return (
        f"deb [signed-by={AppConfig.KEYRING_FILE}] {AppConfig.REPO_URL} "
        f"{AppConfig.DEBIAN_CODENAME} {distribution.components}\n"
    )


def workaround_avahi(ctx: RunContext) -> StepResult:
    # avahi-daemon's postinst fails in some containers when its account is missing
    if not ctx.host.group_exists("avahi"):
        ctx.check(ctx.runner.run(["addgroup", "--system", "avahi"]), "addgroup")
    if not ctx.host.user_exists("avahi"):
        ctx.check(
            ctx.runner.run(
                ["adduser", "--system", "--ingroup", "avahi", "--no-create-home",
                 "--home", "/run/avahi-daemon", "avahi"]
            ),
            "adduser",
        )
    return StepResult.success()


def install_packages(ctx: RunContext) -> StepResult:
    ctx.check(
        ctx.runner.apt_get(
            "install", *AppConfig.PACKAGES, description="Installing YunoHost packages"
        ),
        "apt-get install",
    )
    return StepResult.success()


def restart_services(ctx: RunContext) -> StepResult:
    failed = []
    for service in AppConfig.RESTART_SERVICES:
        if ctx.runner.run(["service", service, "restart"]) != 0:
            failed.append(service)
            ctx.log.warning(f"Could not restart {service}")
    if failed:
        return StepResult.failure(f"could not restart {', '.join(failed)}")
    return StepResult.success()


def raspbian_cleanup(ctx: RunContext) -> StepResult:
    user = AppConfig.RASPI_USER
    if ctx.host.user_exists(user):
        ctx.check(ctx.runner.run(["deluser", "--remove-home", user]), "deluser")
        ctx.log.info(f"Removed the default {user} account")
    ctx.fs(AppConfig.RASPI_CONFIG_HOOK).unlink(missing_ok=True)
    ctx.check(ctx.runner.run(["ssh-keygen", "-A"]), "ssh-keygen")
    return StepResult.success()


def clean_image(ctx: RunContext) -> StepResult:
    """Strip host-specific state so the image can be flashed on many machines."""
    ssh_dir = ctx.fs(AppConfig.SSH_DIR)
    if ssh_dir.is_dir():
        for key in ssh_dir.glob(AppConfig.SSH_HOST_KEY_PATTERN):
            key.unlink()

    ctx.check(ctx.runner.apt_get("clean"), "apt-get clean")

    lists_dir = ctx.fs(AppConfig.APT_LISTS_DIR)
    if lists_dir.is_dir():
        for entry in lists_dir.iterdir():
            if entry.is_file():
                entry.unlink()
    return StepResult.success()


def post_install(ctx: RunContext) -> StepResult:
    command = " ".join(AppConfig.POSTINSTALL_COMMAND)
    if ctx.config.automatic or ctx.platform.is_image_build:
        ctx.log.info(f"Skipping the post-installation. Run '{command}' to finish the setup.")
        return StepResult.success()

    if not ctx.prompter.confirm("Proceed to the post-installation?", default=True):
        ctx.log.info(f"Post-installation skipped. You can run '{command}' later.")
        return StepResult.success()

    while True:
        status = ctx.runner.run_attached(AppConfig.POSTINSTALL_COMMAND)
        if status == 0:
            return StepResult.success()
        ctx.log.warning(f"Post-installation exited with status {status}")
        if not ctx.prompter.confirm("Post-installation failed. Retry?", default=True):
            return StepResult.failure(
                f"{command} exited with status {status}", exit_status=status
            )


@dataclass(frozen=True)
class Step:
    """One named unit of provisioning work and its fatal-failure message."""

    name: str
    description: str
    action: Callable[[RunContext], StepResult]
    fatal_message: str


def build_steps(platform: Platform) -> List[Step]:
    """The ordered installation steps for this platform."""
    steps = [
        Step("setup_package_source", "Checking package sources",
             setup_package_source, "Unable to set up the base package sources"),
        Step("upgrade_system", "Upgrading the system",
             upgrade_system, "Unable to upgrade the system"),
        Step("install_script_dependencies", "Installing installer dependencies",
             install_script_dependencies, "Unable to install the installer dependencies"),
        Step("create_custom_config", "Creating custom configuration",
             create_custom_config, "Unable to create the custom configuration"),
        Step("register_debconf", "Pre-seeding package configuration",
             register_debconf, "Unable to pre-seed the debconf database"),
        Step("setup_repository", "Registering the YunoHost repository",
             setup_repository, "Unable to register the YunoHost repository"),
        Step("workaround_avahi", "Preparing the avahi account",
             workaround_avahi, "Unable to create the avahi account"),
        Step("install_packages", "Installing YunoHost packages",
             install_packages, "Installation of the YunoHost packages failed"),
        Step("restart_services", "Restarting services",
             restart_services, "Unable to restart services"),
    ]
    if platform.is_raspbian:
        steps.append(
            Step("raspbian_cleanup", "Cleaning up the Raspbian defaults",
                 raspbian_cleanup, "Unable to clean up the Raspbian defaults")
        )
    if platform.is_image_build:
        steps.append(
            Step("clean_image", "Cleaning the image",
                 clean_image, "Unable to clean the image")
        )
    steps.append(
        Step("post_install", "Post-installation",
             post_install, "Post-installation failed")
    )
    return steps


# ----------------------------------------------------------------
# Step Sequencer
# ----------------------------------------------------------------
# A failure of these steps leaves the host degraded but usable
EXEMPT_STEPS = frozenset({"restart_services"})


@dataclass
class SequenceReport:
    completed: List[str] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    reason: str = ""
    exit_status: int = 0

    @property
    def ok(self) -> bool:
        return self.failed_step is None


class StepSequencer:
    """Runs the steps strictly in order and stops at the first fatal failure."""

    def __init__(
        self, steps: List[Step], log: RunLog, exempt: frozenset = EXEMPT_STEPS
    ) -> None:
        self.steps = steps
        self.log = log
        self.exempt = exempt

    def run(self, ctx: RunContext) -> SequenceReport:
        report = SequenceReport()
        total = len(self.steps)

        for index, step in enumerate(self.steps, 1):
            self.log.step(f"[{index}/{total}] {step.description}")
            start = time.time()
            try:
                result = step.action(ctx)
            except StepFailure as e:
                result = StepResult.failure(str(e))
            except OSError as e:
                result = StepResult.failure(str(e))
            elapsed = time.time() - start

            if result.ok:
                self.log.success(f"{step.description} completed in {elapsed:.2f}s")
                report.completed.append(step.name)
                continue

            if step.name in self.exempt:
                self.log.warning(
                    f"{step.description} failed: {result.reason}. Continuing anyway."
                )
                report.degraded.append(step.name)
                continue

            self.log.error(f"{step.fatal_message}: {result.reason}")
            report.failed_step = step.name
            report.reason = result.reason
            report.exit_status = result.exit_status or 1
            break

        return report


# ----------------------------------------------------------------
# Main Orchestration
# ----------------------------------------------------------------
class Installer:
    """Runs the preflight checks, the confirmation gate and the installation steps."""

    def __init__(
        self,
        config: RunConfig,
        log_dir: str = AppConfig.LOG_DIR,
        host: Optional[HostState] = None,
        runner: Optional[CommandRunner] = None,
        prompter: Optional[Prompter] = None,
        environ: Optional[MutableMapping[str, str]] = None,
        started: Optional[datetime.datetime] = None,
    ) -> None:
        self.config = config
        self.started = started or datetime.datetime.now()
        self.log_path = log_path_for(self.started, log_dir)
        self.log: Optional[RunLog] = None
        self.host = host or HostState()
        self.runner = runner
        self.prompter = prompter or Prompter()
        self.environ = environ

    def run(self) -> int:
        """
        Run the complete installation.

        Returns:
            int: Exit code (0 for success, non-zero for failure)
        """
        try:
            self.log = RunLog(self.log_path)
        except OSError as e:
            self._report_unusable_log(e)
            return 1
        if self.runner is None:
            self.runner = CommandRunner(self.log, interactive=not self.config.automatic)

        try:
            return self._run()
        except KeyboardInterrupt:
            self.log.error("Installation interrupted by the operator")
            self._report_log_path()
            return 130
        finally:
            self.log.close()

    def _run(self) -> int:
        self.log.console.print(create_header())
        self.log.info(f"Installation log: {self.log.path}")
        self.log.logger.info(
            f"Options: automatic={self.config.automatic} "
            f"distribution={self.config.distribution.value} "
            f"force={self.config.force} image_build={self.config.image_build}"
        )
        apply_environment(self.config, self.environ)
        platform = detect_platform(self.config, self.host)

        self.log.section("Preflight checks")
        checker = PreconditionChecker(build_preconditions(self.host, platform), self.log)
        try:
            checker.enforce(self.config.force)
            keep_ssh_config = self.confirm_installation()
        except InstallError as e:
            self.log.error(str(e))
            self._report_log_path()
            return 1

        ctx = RunContext(
            config=self.config,
            platform=platform,
            host=self.host,
            runner=self.runner,
            log=self.log,
            prompter=self.prompter,
            keep_ssh_config=keep_ssh_config,
        )

        self.log.section("Installation")
        report = StepSequencer(build_steps(platform), self.log).run(ctx)
        if not report.ok:
            self.log.error("Installation failed!")
            self._report_log_path()
            return report.exit_status

        duration = time.time() - self.started.timestamp()
        minutes, seconds = divmod(max(duration, 0), 60)
        self.log.success("YunoHost installation completed!")
        self.log.console.print(
            Panel(
                Text.from_markup(
                    f"[bold {NordColors.FROST_3}]Total Duration:[/] {int(minutes)}m {int(seconds)}s\n"
                    f"[bold {NordColors.FROST_3}]Log File:[/] {escape(str(self.log.path))}"
                ),
                border_style=Style(color=NordColors.FROST_1),
                box=ROUNDED,
                padding=(1, 2),
                title=f"[bold {NordColors.SNOW_STORM_2}]{AppConfig.APP_NAME}[/]",
                title_align="center",
            )
        )
        self._report_log_path()
        return 0

    def confirm_installation(self) -> bool:
        """
        Ask the operator before configuration files get overwritten.

        Returns:
            Whether the operator wants to keep a customised SSH configuration

        Raises:
            UserCancelled: If the operator declines the installation
        """
        if self.config.automatic:
            return False

        if not self.prompter.confirm(
            "Caution! Your system will be configured as a YunoHost server and "
            "configuration files of the packages involved will be overwritten. Proceed?",
            default=False,
        ):
            raise UserCancelled("Installation aborted by the operator")

        if self.host.sshd_config_is_customized():
            manage = self.prompter.confirm(
                "Your SSH configuration has been customised. Let YunoHost manage it "
                "(port, listening addresses and root login may change)?",
                default=True,
            )
            return not manage
        return False

    def _report_log_path(self) -> None:
        self.log.info(f"Installation log: {self.log.path}")

    def _report_unusable_log(self, error: OSError) -> None:
        """Explain on the console why no installation log could be opened."""
        if self.host.euid() != 0:
            console.print(Text(f"✗ {ROOT_REASON}"), style="error")
        console.print(
            Text(f"✗ Unable to open the installation log {self.log_path}: {error}"),
            style="error",
        )


# ----------------------------------------------------------------
# Main Entry Point
# ----------------------------------------------------------------
@click.command(context_settings={"help_option_names": ["-h"]})
@click.option(
    "-a",
    "automatic",
    is_flag=True,
    help="Enable automatic mode. No questions are asked. "
    "This does not perform the post-install step.",
)
@click.option(
    "-d",
    "distribution",
    type=click.Choice([d.value for d in Distribution]),
    default=Distribution.STABLE.value,
    show_default=True,
    metavar="<DISTRIB>",
    help="Choose the distribution to install ('stable', 'testing', 'unstable').",
)
@click.option(
    "-f",
    "force",
    is_flag=True,
    help="Ignore the conflicting package checks before starting the "
    "installation. Use only if you know what you are doing.",
)
@click.option("-i", "image_build", is_flag=True, hidden=True)
def cli(automatic: bool, distribution: str, force: bool, image_build: bool) -> int:
    """Install YunoHost on top of a Debian system."""
    config = RunConfig(
        automatic=automatic,
        distribution=Distribution(distribution),
        image_build=image_build,
        force=force,
    )
    return Installer(config).run()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the YunoHost Installation Utility.

    Returns:
        int: Exit code (0 for success, non-zero for failure)
    """
    try:
        return cli.main(args=argv, prog_name="yunohost-install", standalone_mode=False)
    except click.ClickException as e:
        e.show()
        return 1
    except click.Abort:
        console.print(Text("⚠ Installation interrupted by the operator"), style="warning")
        return 130


if __name__ == "__main__":
    sys.exit(main())
