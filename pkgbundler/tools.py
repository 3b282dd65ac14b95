"""External tool invocation.

Every platform tool the engine shells out to is an ``ExternalTool``
variant. Variants differ only in which executable they resolve and how the
toolchain locator finds it; orchestration code calls ``invoke(args)`` and
never branches on tool identity.
"""

import logging
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path

from .errors import Cancelled, ChecksumMismatch, CommandError, ToolchainUnavailable
from .toolchain import ToolchainLocator

Pathlike = Path | str


# ----------------------------------------------------------------------------
# Cancellation


class CancellationToken:
    """Shared cancellation flag for a run.

    External processes started through ``run_command`` register themselves
    so that ``cancel()`` can terminate them.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._processes: set[subprocess.Popen] = set()
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Cancel the run and terminate in-flight external processes."""
        self._event.set()
        with self._lock:
            processes = list(self._processes)
        for process in processes:
            if process.poll() is None:
                self.log.info("terminating pid %s", process.pid)
                process.terminate()

    def check(self) -> None:
        """Raise Cancelled if the run was cancelled."""
        if self._event.is_set():
            raise Cancelled("run was cancelled")

    def register(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._processes.add(process)
        if self._event.is_set():
            process.terminate()

    def unregister(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._processes.discard(process)


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
    cwd: Pathlike | None = None,
    env: dict[str, str] | None = None,
    token: CancellationToken | None = None,
) -> str:
    """Run a command and return its output.

    This is the consolidated command execution utility used throughout
    the package. It provides consistent error handling, optional dry-run
    support and cancellation. Uses shell=False.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output
        cwd: Working directory for the command
        env: Environment for the command (default: inherited)
        token: Cancellation token that may terminate the process

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails
        Cancelled: If the token was cancelled before or during the run
    """
    cmd_str = " ".join(str(c) for c in command)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    if token:
        token.check()
    try:
        process = subprocess.Popen(
            [str(c) for c in command],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=cwd,
            env=env,
        )
    except OSError as e:
        raise CommandError(cmd_str, 127, str(e)) from e
    if token:
        token.register(process)
    try:
        stdout, stderr = process.communicate()
    finally:
        if token:
            token.unregister(process)
    if token:
        token.check()
    if process.returncode != 0:
        raise CommandError(cmd_str, process.returncode, stderr or stdout)
    return stdout


# ----------------------------------------------------------------------------
# External tools


@dataclass(frozen=True)
class ToolOutput:
    """Captured result of a successful tool invocation."""

    command: str
    stdout: str


class ExternalTool:
    """A platform tool resolved through the toolchain locator.

    Args:
        locator: Locator used to find (or fetch) the executable
        token: Cancellation token for the run
        dry_run: If True, only log the commands
    """

    #: Display name used in error messages
    name: str = ""
    #: Executable looked up on the host
    executable: str = ""
    #: Downloadable toolchain providing the executable, if any
    toolchain: str | None = None
    #: Hint appended to ToolchainUnavailable messages
    hint: str = ""

    def __init__(
        self,
        locator: ToolchainLocator | None = None,
        token: CancellationToken | None = None,
        dry_run: bool = False,
    ):
        self.locator = locator or ToolchainLocator(token=token)
        self.token = token
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)
        self._path: Path | None = None

    def path(self) -> Path:
        """Resolve the executable.

        Raises:
            ToolchainUnavailable: If the tool cannot be found or fetched
            ChecksumMismatch: If a fetched toolchain fails its integrity check
        """
        if self._path is None:
            try:
                self._path = self.locator.locate(self.executable, self.toolchain)
            except ChecksumMismatch:
                raise
            except ToolchainUnavailable as e:
                message = f"{self.name} is not available: {e}"
                if self.hint:
                    message += f" ({self.hint})"
                raise ToolchainUnavailable(message) from e
        return self._path

    def invoke(
        self,
        args: list[Pathlike],
        cwd: Pathlike | None = None,
        env: dict[str, str] | None = None,
    ) -> ToolOutput:
        """Run the tool with the given arguments.

        Raises:
            ToolchainUnavailable: If the tool cannot be located
            CommandError: If the tool exits with a non-zero status
        """
        executable = self.executable if self.dry_run else str(self.path())
        command = [executable, *(str(a) for a in args)]
        stdout = run_command(
            command,
            dry_run=self.dry_run,
            log=self.log,
            cwd=cwd,
            env=env,
            token=self.token,
        )
        return ToolOutput(" ".join(command), stdout)


class Codesign(ExternalTool):
    name = "codesign"
    executable = "codesign"
    hint = "install the Xcode command line tools"


class Security(ExternalTool):
    name = "security"
    executable = "security"
    hint = "the macOS keychain tool is required to resolve identities"


class Xcrun(ExternalTool):
    name = "xcrun"
    executable = "xcrun"
    hint = "install the Xcode command line tools"


class Hdiutil(ExternalTool):
    name = "hdiutil"
    executable = "hdiutil"
    hint = "disk images can only be built on macOS"


class SignTool(ExternalTool):
    name = "SignTool"
    executable = "signtool.exe"
    toolchain = "signtool"
    hint = "install the Windows SDK"


class Candle(ExternalTool):
    name = "WiX candle"
    executable = "candle.exe"
    toolchain = "wix"


class Light(ExternalTool):
    name = "WiX light"
    executable = "light.exe"
    toolchain = "wix"


class AppImageTool(ExternalTool):
    name = "appimagetool"
    executable = "appimagetool"
    toolchain = "appimagetool"


class RpmBuild(ExternalTool):
    name = "rpmbuild"
    executable = "rpmbuild"
    hint = "install the rpm-build package"


class Gpg(ExternalTool):
    name = "gpg"
    executable = "gpg"
    hint = "install GnuPG"


class Objdump(ExternalTool):
    name = "objdump"
    executable = "objdump"
    hint = "install binutils"


class Dpkg(ExternalTool):
    name = "dpkg"
    executable = "dpkg"
