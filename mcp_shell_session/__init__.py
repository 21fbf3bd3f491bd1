"""Pooled shell sessions for scripted remote command execution."""
from .datastructures import CommandResult, ExecutionResult, RetryPolicy, SessionType
from .errors import SessionInitializationError, ShellSessionError, TransportError, VaultError
from .session_manager import ShellSessionManager

__all__ = [
    "CommandResult",
    "ExecutionResult",
    "RetryPolicy",
    "SessionInitializationError",
    "SessionType",
    "ShellSessionError",
    "ShellSessionManager",
    "TransportError",
    "VaultError",
]
