"""Shell session manager: the entry point callers use."""
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audit import AuditLogger
from .command_executor import CommandExecutor
from .config import Settings
from .datastructures import ExecutionResult, RetryPolicy, SessionType
from .errors import SessionInitializationError
from .logging_manager import configure_logging
from .metrics import PerformanceMetrics
from .registry import SessionRegistry
from .retry import RetryController
from .transport import open_transport
from .validation import requires_elevation
from .vault import CredentialVault, SudoVerifier


class ShellSessionManager:
    """Manages pooled shell sessions for one workflow.

    Construct one per workflow and pass it to every collaborator; there is
    no process-wide pool. Use it as a context manager so that sessions are
    retired and the sudo secret is cleared however the workflow ends.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 transport_factory: Optional[Callable[[str], Any]] = None,
                 prompt: Optional[Callable[[str], str]] = None,
                 verifier: Any = None,
                 sleep: Optional[Callable[[float], None]] = None,
                 output_callback: Optional[Callable[[str], None]] = None):
        self.settings = settings or Settings.from_env()
        self.logger = configure_logging(self.settings.log_dir, self.settings.log_level)

        factory = transport_factory or (
            lambda target: open_transport(target, self.settings.spawn_command)
        )
        self.vault = CredentialVault(
            verifier or SudoVerifier(factory, self.settings.init_timeout, self.settings.grace_period),
            prompt=prompt,
        )
        self.registry = SessionRegistry(self.settings, factory, vault=self.vault)
        self.audit = AuditLogger(self.settings.audit_log_path)
        self.metrics = PerformanceMetrics(active_sessions=self.registry.active_count)
        self.command_executor = CommandExecutor(
            self.settings, self.audit, self.metrics, output_callback=output_callback
        )
        retry_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.retry_controller = RetryController(
            self.registry, self.command_executor, self.settings.retry_policy, **retry_kwargs
        )
        self.logger.info(f"ShellSessionManager initialized for target {self.settings.target}")

    def _ensure_elevation(self, session_type: SessionType, command: str) -> None:
        """Acquire the sudo secret the first time an elevated command needs it.

        Raises:
            VaultError: the secret could not be obtained; fatal to the workflow.
        """
        profile = self.settings.profile_for(session_type)
        if not profile.requires_elevated_privilege or not requires_elevation(command):
            return
        if self.settings.dry_run or self.vault.resolved:
            return
        self.vault.acquire(self.settings.target)

    def execute_with_retry(self, session_type: Any, command: str, description: str = "",
                           max_retries: Optional[int] = None,
                           policy: Optional[RetryPolicy] = None) -> ExecutionResult:
        """Run a command with retries and return the structured result.

        Raises:
            VaultError: elevation was needed and no secret could be obtained.
            SessionInitializationError: no session could be started.
        """
        session_type = SessionType.parse(session_type)
        self._ensure_elevation(session_type, command)
        return self.retry_controller.execute_with_retry(
            session_type, command, description, max_retries=max_retries, policy=policy
        )

    def execute(self, session_type: Any, command: str, description: str = "") -> Tuple[bool, str]:
        """Caller contract: ``(success, output)``.

        On failure the caller decides how to present a manual fallback.
        """
        logger = self.logger.getChild('execute')
        try:
            result = self.execute_with_retry(session_type, command, description)
        except SessionInitializationError as exc:
            logger.error(f"[EXEC_NO_SESSION] {description or command[:60]!r}: {exc}")
            return False, str(exc)
        return result.success, result.output

    def performance_report(self) -> Dict[str, Any]:
        return self.metrics.report().to_dict()

    def recent_audit_entries(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.audit.read_entries(limit)

    def list_sessions(self) -> List[Dict[str, Any]]:
        sessions = self.registry.list_sessions()
        self.logger.getChild('list_sessions').debug(f"Listing {len(sessions)} active sessions.")
        return sessions

    def close_session(self, session_id: str) -> bool:
        return self.registry.cleanup_session(session_id)

    def close_all_sessions(self) -> int:
        """Close all sessions and clear the vaulted secret."""
        logger = self.logger.getChild('close_all')
        logger.info("Closing all active sessions.")
        try:
            return self.registry.cleanup_all_sessions()
        finally:
            self.vault.dispose()

    def __enter__(self) -> "ShellSessionManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close_all_sessions()
