"""Data structures for shell session management."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
import uuid


class SessionType(Enum):
    GIT_OPERATIONS = "git_operations"
    PACKAGE_MANAGEMENT = "package_management"
    INTERACTIVE_CLI = "interactive_cli"
    SYSTEM_CONFIGURATION = "system_configuration"
    GENERAL = "general"

    @classmethod
    def parse(cls, value: Any) -> "SessionType":
        """Accept an enum member, its value, or its name in any case."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text.lower() in (member.value, member.name.lower()):
                return member
        # CamelCase names such as "GitOperations"
        compact = text.replace("_", "").replace("-", "").lower()
        for member in cls:
            if member.name.replace("_", "").lower() == compact:
                return member
        raise ValueError(f"Unknown session type: {value!r}")


class CommandResult(Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    DISCONNECTED = "disconnected"
    PARSE_ERROR = "parse_error"
    UNEXPECTED_OUTPUT = "unexpected_output"
    RETRYABLE = "retryable"

    @property
    def is_transient(self) -> bool:
        return self in TRANSIENT_RESULTS

    @property
    def is_fatal(self) -> bool:
        return self in FATAL_RESULTS


TRANSIENT_RESULTS = frozenset({
    CommandResult.TIMEOUT,
    CommandResult.DISCONNECTED,
    CommandResult.RETRYABLE,
})

FATAL_RESULTS = frozenset({
    CommandResult.PERMISSION_DENIED,
    CommandResult.NOT_FOUND,
    CommandResult.PARSE_ERROR,
})


@dataclass(frozen=True)
class SessionProfile:
    """Default configuration applied to every session of one type."""
    working_directory: str
    environment: Dict[str, str]
    requires_elevated_privilege: bool
    timeout: float
    max_commands: int


@dataclass
class ExecutionResult:
    result: CommandResult
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration: float = 0.0
    session_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.result is CommandResult.SUCCESS

    @property
    def output(self) -> str:
        if self.success:
            return self.stdout
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass(frozen=True)
class AuditEntry:
    """One immutable record of a single command attempt."""
    timestamp: str
    session_id: Optional[str]
    session_type: Optional[str]
    target: Optional[str]
    command: str
    description: str
    result: CommandResult
    exit_code: Optional[int]
    duration: float
    stdout: str
    stderr: str
    user: str
    host: str
    elevated: bool = False
    dry_run: bool = False
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "session_type": self.session_type,
            "target": self.target,
            "command": self.command,
            "description": self.description,
            "result": self.result.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 6),
            "stdout": self.stdout,
            "stderr": self.stderr,
            "user": self.user,
            "host": self.host,
            "elevated": self.elevated,
            "dry_run": self.dry_run,
        }


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy.

    ``multiplier == 1`` gives a fixed backoff, anything larger grows
    exponentially up to ``max_backoff``.
    """
    max_attempts: int = 3
    backoff: float = 1.0
    multiplier: float = 2.0
    max_backoff: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        if self.backoff <= 0:
            return 0.0
        return min(self.backoff * (self.multiplier ** max(attempt - 1, 0)), self.max_backoff)
