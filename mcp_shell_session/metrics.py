"""In-memory performance metrics for command attempts."""
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, Optional


@dataclass
class TypeBucket:
    count: int = 0
    total_duration: float = 0.0
    failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "total_duration": round(self.total_duration, 6),
            "failures": self.failures,
            "average_duration": round(self.total_duration / self.count, 6) if self.count else 0.0,
        }


@dataclass
class PerformanceReport:
    total_commands: int
    successful_commands: int
    failed_commands: int
    success_rate: float
    total_duration: float
    average_duration: float
    active_sessions: int
    by_command_type: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_commands": self.total_commands,
            "successful_commands": self.successful_commands,
            "failed_commands": self.failed_commands,
            "success_rate": self.success_rate,
            "total_duration": self.total_duration,
            "average_duration": self.average_duration,
            "active_sessions": self.active_sessions,
            "by_command_type": self.by_command_type,
        }


class PerformanceMetrics:
    """Running totals, globally and per command type.

    Diagnostics only: nothing here feeds back into session control flow.
    """

    def __init__(self, active_sessions: Optional[Callable[[], int]] = None):
        self._active_sessions = active_sessions
        self._lock = Lock()
        self.total_commands = 0
        self.successful_commands = 0
        self.failed_commands = 0
        self.total_duration = 0.0
        self._by_type: Dict[str, TypeBucket] = {}

    def record(self, command_type: str, duration: float, success: bool) -> None:
        with self._lock:
            self.total_commands += 1
            self.total_duration += duration
            if success:
                self.successful_commands += 1
            else:
                self.failed_commands += 1
            bucket = self._by_type.setdefault(command_type, TypeBucket())
            bucket.count += 1
            bucket.total_duration += duration
            if not success:
                bucket.failures += 1

    def report(self) -> PerformanceReport:
        active = self._active_sessions() if self._active_sessions else 0
        with self._lock:
            total = self.total_commands
            return PerformanceReport(
                total_commands=total,
                successful_commands=self.successful_commands,
                failed_commands=self.failed_commands,
                success_rate=round(100.0 * self.successful_commands / total, 2) if total else 0.0,
                total_duration=round(self.total_duration, 6),
                average_duration=round(self.total_duration / total, 6) if total else 0.0,
                active_sessions=active,
                by_command_type={key: bucket.to_dict() for key, bucket in self._by_type.items()},
            )
