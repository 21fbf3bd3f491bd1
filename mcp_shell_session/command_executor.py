"""Command execution on pooled shell sessions."""
import getpass
import logging
import os
import re
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import paramiko

from .audit import AuditLogger, mask_secrets, redact
from .config import Settings
from .datastructures import AuditEntry, CommandResult, ExecutionResult
from .errors import TransportError
from .metrics import PerformanceMetrics
from .protocol import (
    ReadStatus,
    SentinelRead,
    build_command_with_sentinel,
    drain,
    new_marker,
    read_until_sentinel,
    with_stdin,
)
from .session import Session
from .validation import CommandValidator, command_type_key, requires_elevation
from .vault import SUDO_VALIDATE, SecretBuffer

PERMISSION_PATTERNS = re.compile(
    r"permission denied|operation not permitted|not in the sudoers|a password is required"
    r"|a terminal is required|incorrect password|sorry, try again|access denied|are you root",
    re.IGNORECASE,
)

RETRYABLE_PATTERNS = re.compile(
    r"could not get lock|is held by process|resource temporarily unavailable"
    r"|temporary failure|could not resolve host|connection (?:timed out|reset|refused)"
    r"|network is unreachable|try again later|service unavailable|tls handshake timeout",
    re.IGNORECASE,
)

NOT_FOUND_PATTERNS = re.compile(
    r"command not found|: not found|no such file or directory|unable to locate package"
    r"|is not recognized as",
    re.IGNORECASE,
)


@dataclass
class _Outcome:
    result: CommandResult
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None


def classify_failure(exit_code: int, stdout: str, stderr: str) -> CommandResult:
    """Map a non-zero exit status and its output to a result kind."""
    text = f"{stdout}\n{stderr}"
    if exit_code == 126 or PERMISSION_PATTERNS.search(text):
        return CommandResult.PERMISSION_DENIED
    if exit_code == 127:
        return CommandResult.NOT_FOUND
    if RETRYABLE_PATTERNS.search(text):
        return CommandResult.RETRYABLE
    if NOT_FOUND_PATTERNS.search(text):
        return CommandResult.NOT_FOUND
    return CommandResult.UNEXPECTED_OUTPUT


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.environ.get('USER', 'unknown')


class CommandExecutor:
    """Runs one command on one session and records exactly one audit entry
    and one metrics sample for it, whatever the outcome.

    ``execute`` never raises: I/O failures are mapped to
    ``CommandResult.DISCONNECTED`` or ``CommandResult.PARSE_ERROR``.
    """

    def __init__(self, settings: Settings, audit: AuditLogger, metrics: PerformanceMetrics,
                 output_callback: Optional[Callable[[str], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.audit = audit
        self.metrics = metrics
        self.output_callback = output_callback
        self._clock = clock
        self._user = _current_user()
        self._host = socket.gethostname()
        self.logger = logging.getLogger('shell_session.command_executor')

    def execute(self, session: Session, command: str, description: str = "") -> ExecutionResult:
        logger = self.logger.getChild('execute')
        logger.info(f"[EXEC_REQ] session={session.id}, cmd={command[:100]!r}, timeout={session.timeout}")

        start = self._clock()
        credential: Optional[SecretBuffer] = None
        if session.requires_elevated_privilege and session.credential:
            credential = session.credential
        elevated = credential is not None and requires_elevation(command)
        secrets = [credential.reveal()] if credential is not None else []

        try:
            outcome = self._attempt(session, command, credential if elevated else None)
        except (TransportError, OSError, EOFError, paramiko.SSHException) as exc:
            logger.error(f"[EXEC_IO_ERROR] session={session.id}: {exc}")
            session.mark_unhealthy(f"I/O failure: {exc}")
            outcome = _Outcome(CommandResult.DISCONNECTED, stderr=f"Error: {exc}")
        except Exception as exc:
            logger.error(f"[EXEC_ERROR] session={session.id}: {exc}", exc_info=True)
            session.mark_unhealthy(f"unexpected failure: {exc}")
            outcome = _Outcome(CommandResult.PARSE_ERROR, stderr=f"Error: {exc}")

        duration = self._clock() - start
        result = ExecutionResult(
            result=outcome.result,
            stdout=mask_secrets(outcome.stdout, secrets),
            stderr=mask_secrets(outcome.stderr, secrets),
            exit_code=outcome.exit_code,
            duration=duration,
            session_id=session.id,
        )
        self._record(session, command, description, result, elevated, secrets)
        secrets.clear()
        logger.info(f"[EXEC_DONE] session={session.id}, result={result.result.value}, "
                    f"exit_code={result.exit_code}, duration={duration:.2f}s")
        return result

    def _attempt(self, session: Session, command: str,
                 credential: Optional[SecretBuffer]) -> _Outcome:
        logger = self.logger.getChild('attempt')

        is_valid, error_msg = CommandValidator.validate_command(command)
        if not is_valid:
            logger.warning(f"[EXEC_INVALID] {error_msg}")
            return _Outcome(CommandResult.PARSE_ERROR, stderr=error_msg)

        if not session.is_healthy or not session.is_alive():
            session.mark_unhealthy(session.unhealthy_reason or "shell process is not running")
            return _Outcome(CommandResult.DISCONNECTED,
                            stderr=f"Session {session.id} is not available: {session.unhealthy_reason}")

        if session.quota_exhausted:
            return _Outcome(CommandResult.RETRYABLE,
                            stderr=f"Session {session.id} reached its quota of {session.max_commands} commands")

        if not session.command_lock.acquire(timeout=session.timeout):
            return _Outcome(CommandResult.RETRYABLE, stderr=f"Session {session.id} is busy")
        try:
            # another caller may have used the last slot while we waited
            if session.quota_exhausted:
                return _Outcome(CommandResult.RETRYABLE,
                                stderr=f"Session {session.id} reached its quota of {session.max_commands} commands")
            session.record_command()
            if self.settings.dry_run:
                logger.info(f"[EXEC_DRY_RUN] would run {command[:100]!r}")
                return _Outcome(CommandResult.SUCCESS, exit_code=0)

            transport = session.transport
            drain(transport)

            if credential is not None:
                failed = self._prime_elevation(session, credential)
                if failed is not None:
                    return failed

            marker = new_marker()
            transport.send(build_command_with_sentinel(command, marker))
            read = read_until_sentinel(
                transport, marker, session.timeout,
                poll_interval=self.settings.poll_interval,
                stderr_grace=self.settings.stderr_grace,
                max_output=self.settings.max_output_bytes,
                on_output=self.output_callback,
                clock=self._clock,
            )
            return self._classify(session, read)
        finally:
            session.touch()
            session.command_lock.release()

    def _prime_elevation(self, session: Session, credential: SecretBuffer) -> Optional[_Outcome]:
        """Validate sudo with the vaulted secret as its only stdin line.

        Returns None when sudo accepted it, otherwise the failed outcome.
        """
        logger = self.logger.getChild('elevation')
        transport = session.transport
        marker = new_marker()
        transport.send(build_command_with_sentinel(with_stdin(SUDO_VALIDATE, [credential.reveal()]), marker))
        read = read_until_sentinel(
            transport, marker, min(session.timeout, self.settings.init_timeout),
            poll_interval=self.settings.poll_interval,
            stderr_grace=self.settings.stderr_grace,
            clock=self._clock,
        )
        if read.status is ReadStatus.COMPLETE and read.exit_code == 0:
            logger.debug(f"[ELEVATION_OK] session={session.id}")
            return None

        if read.status is ReadStatus.DISCONNECTED:
            session.mark_unhealthy(read.detail)
            return _Outcome(CommandResult.DISCONNECTED, read.stdout, read.stderr or read.detail)

        logger.warning(f"[ELEVATION_FAIL] session={session.id}, status={read.status.value}")
        session.mark_unhealthy("sudo rejected the vaulted credential")
        return _Outcome(
            CommandResult.PERMISSION_DENIED,
            stdout=read.stdout,
            stderr=read.stderr or "sudo rejected the vaulted credential",
            exit_code=read.exit_code,
        )

    def _classify(self, session: Session, read: SentinelRead) -> _Outcome:
        if read.status is ReadStatus.COMPLETE:
            if read.exit_code == 0:
                result = CommandResult.SUCCESS
            else:
                result = classify_failure(read.exit_code, read.stdout, read.stderr)
            return _Outcome(result, read.stdout, read.stderr, read.exit_code)

        if read.status is ReadStatus.TIMEOUT:
            if self.settings.retire_on_timeout:
                session.mark_unhealthy(f"abandoned command after {session.timeout}s")
            stderr = "\n".join(part for part in (read.stderr, read.detail) if part)
            return _Outcome(CommandResult.TIMEOUT, read.stdout, stderr)

        session.mark_unhealthy(read.detail)
        if read.status is ReadStatus.DISCONNECTED:
            return _Outcome(CommandResult.DISCONNECTED, read.stdout, read.stderr or read.detail)
        return _Outcome(CommandResult.PARSE_ERROR, read.stdout, read.stderr or read.detail)

    def _record(self, session: Session, command: str, description: str,
                result: ExecutionResult, elevated: bool, secrets: list) -> None:
        entry = AuditEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            session_id=session.id,
            session_type=session.session_type.value,
            target=session.target,
            command=redact(command, secrets),
            description=redact(description, secrets),
            result=result.result,
            exit_code=result.exit_code,
            duration=result.duration,
            stdout=redact(result.stdout, secrets),
            stderr=redact(result.stderr, secrets),
            user=self._user,
            host=self._host,
            elevated=elevated,
            dry_run=self.settings.dry_run,
        )
        try:
            self.audit.append(entry)
        except OSError as exc:
            self.logger.error(f"[AUDIT_FAIL] Could not append audit entry for {session.id}: {exc}")
        self.metrics.record(command_type_key(command), result.duration, result.success)
