"""Exceptions raised by the shell session pool."""


class ShellSessionError(Exception):
    """Base class for shell session errors."""


class TransportError(ShellSessionError, ConnectionError):
    """The remote shell could not be spawned or its streams failed."""


class SessionInitializationError(ShellSessionError, ConnectionError):
    """A new session could not be brought to a ready state."""

    def __init__(self, message: str, session_id: str = ""):
        super().__init__(message)
        self.session_id = session_id


class VaultError(ShellSessionError):
    """The elevated-privilege secret could not be acquired or verified.

    Fatal to the whole workflow: no elevated command can proceed without it.
    """
