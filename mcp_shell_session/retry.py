"""Bounded retry of transient command failures."""
import logging
import time
from typing import Callable, Optional

from .command_executor import CommandExecutor
from .datastructures import ExecutionResult, RetryPolicy, SessionType
from .registry import SessionRegistry


class RetryController:
    """Runs a command with a fresh session acquisition on every try.

    Only transient results (timeout, disconnect, retryable) are retried.
    Everything else is returned as soon as it happens. Presenting a fallback
    to the user is the caller's job.
    """

    def __init__(self, registry: SessionRegistry, executor: CommandExecutor,
                 policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.registry = registry
        self.executor = executor
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self.logger = logging.getLogger('shell_session.retry')

    def execute_with_retry(self, session_type: SessionType, command: str, description: str = "",
                           max_retries: Optional[int] = None,
                           policy: Optional[RetryPolicy] = None) -> ExecutionResult:
        """Execute ``command`` on a session of ``session_type``.

        ``max_retries`` is the total number of tries (defaults to the
        policy's ``max_attempts``).

        Raises:
            SessionInitializationError: a session could not be started.
        """
        logger = self.logger.getChild('execute')
        policy = policy or self.policy
        attempts = max_retries if max_retries is not None else policy.max_attempts
        attempts = max(attempts, 1)
        label = description or command[:60]

        result = None
        for attempt in range(1, attempts + 1):
            session = self.registry.get_or_create_session(session_type)
            logger.info(f"[RETRY] attempt {attempt}/{attempts} for {label!r} on {session.id}")
            result = self.executor.execute(session, command, description)

            if result.success:
                return result

            if not session.is_healthy:
                self.registry.cleanup_session(session.id)

            if not result.result.is_transient:
                logger.warning(f"[RETRY_STOP] {label!r} failed with non-retryable {result.result.value}")
                return result

            if attempt < attempts:
                delay = policy.delay(attempt)
                logger.info(f"[RETRY_WAIT] {label!r} got {result.result.value}, retrying in {delay:.1f}s")
                if delay > 0:
                    self._sleep(delay)

        logger.warning(f"[RETRY_EXHAUSTED] {label!r} still {result.result.value} after {attempts} attempts")
        return result
