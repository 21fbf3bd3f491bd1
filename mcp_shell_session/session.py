"""A persistent shell session bound to one workload type."""
import logging
import shlex
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .datastructures import SessionProfile, SessionType
from .errors import SessionInitializationError, TransportError
from .protocol import ReadStatus, run_command

# Settings applied before anything else so output contains only what
# commands print.
_NORMALIZE_SHELL = (
    "export PS1='' PS2='' PS4='+ ' PROMPT_COMMAND='' TERM=dumb; "
    "unset HISTFILE; set +o history; stty -echo 2>/dev/null; true"
)


def _cd_command(working_directory: str) -> str:
    if working_directory in ("~", ""):
        return 'cd "$HOME"'
    if working_directory.startswith("~/"):
        return f'cd "$HOME"/{shlex.quote(working_directory[2:])}'
    return f"cd -- {shlex.quote(working_directory)}"


def _export_command(environment: Dict[str, str]) -> Optional[str]:
    if not environment:
        return None
    pairs = " ".join(f"{name}={shlex.quote(value)}" for name, value in sorted(environment.items()))
    return f"export {pairs}"


class Session:
    """One reusable remote shell.

    A session owns its transport exclusively and runs at most one command at
    a time (``command_lock``). ``commands_executed`` never exceeds
    ``max_commands``; once the quota is reached, or the session is marked
    unhealthy, it is no longer eligible for reuse.
    """

    def __init__(self, session_type: SessionType, target: str, profile: SessionProfile,
                 transport_factory: Callable[[str], Any],
                 credential: Any = None,
                 session_id: Optional[str] = None):
        self.id = session_id or f"{session_type.value}-{uuid.uuid4().hex[:8]}"
        self.session_type = session_type
        self.target = target
        self.working_directory = profile.working_directory
        self.environment = dict(profile.environment)
        self.requires_elevated_privilege = profile.requires_elevated_privilege
        self.timeout = profile.timeout
        self.max_commands = profile.max_commands
        self.created_at = datetime.now(timezone.utc)
        self.last_used_at = self.created_at
        self.commands_executed = 0
        self.is_healthy = False
        self.unhealthy_reason: Optional[str] = None
        self.credential = credential
        self.transport: Any = None
        self.command_lock = threading.Lock()
        self._transport_factory = transport_factory
        self._closed = False
        self.logger = logging.getLogger('shell_session.session').getChild(self.id)

    def initialize(self, init_timeout: float = 15.0, poll_interval: float = 0.05) -> None:
        """Spawn the shell, normalize it, cd and export the type environment."""
        logger = self.logger
        logger.info(f"[SESSION_INIT] type={self.session_type.value}, target={self.target}")
        try:
            self.transport = self._transport_factory(self.target)
        except (TransportError, OSError, ValueError) as exc:
            self.mark_unhealthy(f"spawn failed: {exc}")
            raise SessionInitializationError(
                f"Unable to start a shell for {self.target}: {exc}", self.id
            ) from exc

        steps = [_NORMALIZE_SHELL, _cd_command(self.working_directory)]
        export = _export_command(self.environment)
        if export:
            steps.append(export)

        for step in steps:
            try:
                read = run_command(self.transport, step, init_timeout, poll_interval=poll_interval)
            except (TransportError, OSError) as exc:
                self.mark_unhealthy(f"initialization I/O failed: {exc}")
                raise SessionInitializationError(
                    f"Session {self.id} failed during initialization: {exc}", self.id
                ) from exc
            if read.status is not ReadStatus.COMPLETE or read.exit_code != 0:
                detail = read.stderr or read.detail or f"exit status {read.exit_code}"
                self.mark_unhealthy(f"initialization step failed: {detail}")
                logger.error(f"[SESSION_INIT_FAIL] step={step!r}: {detail}")
                raise SessionInitializationError(
                    f"Session {self.id} failed during initialization: {detail}", self.id
                )

        self.is_healthy = True
        logger.info(f"[SESSION_READY] cwd={self.working_directory}")

    def is_alive(self) -> bool:
        if self.transport is None or self._closed:
            return False
        try:
            return self.transport.is_alive()
        except (OSError, TransportError):
            return False

    @property
    def quota_exhausted(self) -> bool:
        return self.commands_executed >= self.max_commands

    @property
    def busy(self) -> bool:
        return self.command_lock.locked()

    def is_eligible(self) -> bool:
        """Healthy, alive, under quota and idle."""
        return (self.is_healthy and not self.quota_exhausted and not self.busy
                and self.is_alive())

    def record_command(self) -> None:
        if self.quota_exhausted:
            raise RuntimeError(f"Session {self.id} has reached its quota of {self.max_commands}")
        self.commands_executed += 1
        self.touch()

    def touch(self) -> None:
        self.last_used_at = datetime.now(timezone.utc)

    def mark_unhealthy(self, reason: str) -> None:
        if self.is_healthy or self.unhealthy_reason is None:
            self.logger.warning(f"[SESSION_UNHEALTHY] {reason}")
        self.is_healthy = False
        self.unhealthy_reason = reason

    def close(self, grace_period: float = 2.0) -> None:
        """Exit the shell gracefully, force-terminate after ``grace_period``."""
        if self._closed:
            return
        self._closed = True
        self.is_healthy = False
        self.credential = None
        if self.transport is None:
            return
        try:
            self.transport.close(grace_period)
        except (OSError, TransportError) as exc:
            self.logger.warning(f"[SESSION_CLOSE] Error closing transport: {exc}")
        self.logger.info("[SESSION_CLOSED]")

    def describe(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "session_type": self.session_type.value,
            "target": self.target,
            "working_directory": self.working_directory,
            "requires_elevated_privilege": self.requires_elevated_privilege,
            "timeout": self.timeout,
            "max_commands": self.max_commands,
            "commands_executed": self.commands_executed,
            "is_healthy": self.is_healthy,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
        }
