"""Remote process manager access: run dokku commands over ssh.

The orchestrator only sees the :class:`ProcessRunner` protocol.  A non-zero
exit is a normal outcome returned to the caller; :class:`ProcessRunnerError`
is raised only when the runner itself cannot do its job (ssh binary
missing, host unreachable within the timeout).
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from releaseguard.exceptions import ProcessRunnerError

if TYPE_CHECKING:
    from releaseguard.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessOutcome:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessRunner(Protocol):
    """Executes one remote command synchronously."""

    def run(self, command: str, timeout: float) -> ProcessOutcome:
        """Run *command*, giving up after *timeout* seconds."""
        ...


@dataclass(frozen=True)
class DokkuCommands:
    """Builds process-manager command lines from templates.

    Templates may reference ``{app}``; the rebuild template may also
    reference ``{release}``.
    """

    list_releases: str = "ps:report {app} --deployed"
    stop: str = "ps:stop {app}"
    rebuild: str = "ps:rebuild {app}"

    @classmethod
    def from_settings(cls, settings: Settings) -> DokkuCommands:
        return cls(
            list_releases=settings.list_releases_command,
            stop=settings.stop_command,
            rebuild=settings.rebuild_command,
        )

    def list_releases_for(self, app_id: str) -> str:
        return self.list_releases.format(app=shlex.quote(app_id))

    def stop_for(self, app_id: str) -> str:
        return self.stop.format(app=shlex.quote(app_id))

    def rebuild_for(self, app_id: str, release: str) -> str:
        return self.rebuild.format(app=shlex.quote(app_id), release=shlex.quote(release))


class SshProcessRunner:
    """Runs commands as ``ssh -i KEY user@host COMMAND``."""

    def __init__(
        self,
        host: str,
        user: str = "dokku",
        key_path: str = "",
        connect_timeout: int = 10,
    ) -> None:
        self.host = host
        self.user = user
        self.key_path = os.path.expanduser(key_path) if key_path else ""
        self.connect_timeout = connect_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> SshProcessRunner:
        return cls(
            settings.dokku_host,
            settings.dokku_user,
            settings.ssh_key_path,
            settings.ssh_connect_timeout,
        )

    def argv(self, command: str) -> list[str]:
        args = ["ssh", "-o", "BatchMode=yes", "-o", f"ConnectTimeout={self.connect_timeout}"]
        if self.key_path:
            args += ["-i", self.key_path]
        args.append(f"{self.user}")
        # Single argument; the remote shell parses it with DokkuCommands' quoting intact.
        args.append(command)
        return args

    def run(self, command: str, timeout: float) -> ProcessOutcome:
        argv = self.argv(command)
        logger.debug("Running %s", argv)
        try:
            proc = subprocess.run(argv, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise ProcessRunnerError(command, f"timed out after {timeout:.0f}s") from exc
        except OSError as exc:
            raise ProcessRunnerError(command, str(exc)) from exc
        # ssh reserves 255 for its own connection failures.
        if proc.returncode == 255:
            raise ProcessRunnerError(command, proc.stderr.strip() or "ssh connection failed")
        return ProcessOutcome(proc.returncode, proc.stdout, proc.stderr)
