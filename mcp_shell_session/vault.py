"""Elevated-privilege (sudo) secret handling.

The secret is captured through a non-echoing prompt, verified against the
target with a no-op sudo call, and kept in a mutable buffer that is zeroed
on disposal. It is only ever written to sudo's standard input, never to an
argument list or a log.
"""
import getpass
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from .errors import TransportError, VaultError
from .protocol import ReadStatus, run_command

SUDO_VALIDATE = "sudo -S -p '' -v"


class SecretBuffer:
    """A secret held in a bytearray so it can be zeroed in place."""

    def __init__(self, secret: str):
        self._data = bytearray(secret.encode('utf-8'))

    def reveal(self) -> str:
        return self._data.decode('utf-8')

    def clear(self) -> None:
        for i in range(len(self._data)):
            self._data[i] = 0
        self._data = bytearray()

    def __bool__(self) -> bool:
        return len(self._data) > 0

    def __repr__(self) -> str:
        return "SecretBuffer(<redacted>)" if self else "SecretBuffer(<cleared>)"


class SudoVerifier:
    """Checks sudo behaviour on a target using a short-lived shell."""

    def __init__(self, transport_factory: Callable[[str], Any], timeout: float = 15.0,
                 grace_period: float = 2.0):
        self._transport_factory = transport_factory
        self.timeout = timeout
        self.grace_period = grace_period
        self.logger = logging.getLogger('shell_session.vault.verifier')

    def _run(self, target: str, command: str, stdin_lines=None) -> bool:
        transport = self._transport_factory(target)
        try:
            read = run_command(transport, command, self.timeout, stdin_lines=stdin_lines)
            return read.status is ReadStatus.COMPLETE and read.exit_code == 0
        finally:
            transport.close(self.grace_period)

    def is_passwordless(self, target: str) -> bool:
        return self._run(target, "sudo -n true >/dev/null 2>&1")

    def verify(self, target: str, secret: str) -> bool:
        return self._run(target, "sudo -k -S -p '' -v", stdin_lines=[secret])


def _getpass_prompt(message: str) -> str:
    return getpass.getpass(message)


class CredentialVault:
    """Holds at most one verified secret for the lifetime of a workflow.

    Use ``with vault.acquired(target) as credential:`` (or the vault itself as
    a context manager) so the secret is cleared on every exit path.
    """

    MAX_ATTEMPTS = 3

    def __init__(self, verifier: Any, prompt: Optional[Callable[[str], str]] = None):
        self._verifier = verifier
        self._prompt = prompt or _getpass_prompt
        self._secret: Optional[SecretBuffer] = None
        self._passwordless: Optional[bool] = None
        self._target: Optional[str] = None
        self.logger = logging.getLogger('shell_session.vault')

    @property
    def credential(self) -> Optional[SecretBuffer]:
        """The current secret, or None if none is held."""
        return self._secret if self._secret else None

    @property
    def resolved(self) -> bool:
        """True once acquire() has settled the target (secret held or passwordless)."""
        return self.credential is not None or bool(self._passwordless)

    def secret(self) -> str:
        """Plaintext of the held secret, or "" when none is held or it was cleared."""
        return self._secret.reveal() if self._secret else ""

    def acquire(self, target: str) -> Optional[SecretBuffer]:
        """Return the verified secret for ``target``, or None if sudo needs none.

        Raises:
            VaultError: no usable secret could be obtained.
        """
        logger = self.logger.getChild('acquire')
        if self._target == target:
            if self._passwordless:
                return None
            if self.credential is not None:
                return self._secret
        self.dispose()
        self._target = target

        try:
            if self._verifier.is_passwordless(target):
                logger.info(f"[VAULT_PASSWORDLESS] {target} allows sudo without a password")
                self._passwordless = True
                return None
        except (TransportError, OSError) as exc:
            raise VaultError(f"Unable to check sudo on {target}: {exc}") from exc
        self._passwordless = False

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            value = self._prompt(f"[sudo] password for {target}: ")
            if not value:
                raise VaultError("No password was provided")
            if "\n" in value or "\r" in value:
                raise VaultError("Password may not contain line breaks")
            try:
                verified = self._verifier.verify(target, value)
            except (TransportError, OSError) as exc:
                raise VaultError(f"Unable to verify sudo password on {target}: {exc}") from exc
            if verified:
                self._secret = SecretBuffer(value)
                del value
                logger.info(f"[VAULT_VERIFIED] Secret verified for {target}")
                return self._secret
            logger.warning(f"[VAULT_REJECTED] Attempt {attempt}/{self.MAX_ATTEMPTS} rejected by sudo")

        raise VaultError(f"sudo rejected the password {self.MAX_ATTEMPTS} times for {target}")

    def dispose(self) -> None:
        """Zero and drop the held secret."""
        if self._secret is not None:
            self._secret.clear()
            self.logger.debug("[VAULT_DISPOSED]")
        self._secret = None
        self._passwordless = None
        self._target = None

    @contextmanager
    def acquired(self, target: str) -> Iterator[Optional[SecretBuffer]]:
        try:
            yield self.acquire(target)
        finally:
            self.dispose()

    def __enter__(self) -> "CredentialVault":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()
