"""Session pool keyed by workload type."""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .config import Settings
from .datastructures import SessionType
from .errors import SessionInitializationError
from .session import Session
from .transport import open_transport


class SessionRegistry:
    """Creates, finds, reuses and retires sessions.

    The registry is the only owner of the session map. Every insert and
    removal happens under ``_lock``; spawning and terminating processes
    happens outside it.
    """

    def __init__(self, settings: Settings,
                 transport_factory: Optional[Callable[[str], Any]] = None,
                 vault: Any = None):
        self.settings = settings
        self._transport_factory = transport_factory or (
            lambda target: open_transport(target, settings.spawn_command)
        )
        self._vault = vault
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger('shell_session.registry')

    def _current_credential(self) -> Any:
        if self._vault is None:
            return None
        return self._vault.credential

    def get_or_create_session(self, session_type: SessionType) -> Session:
        """Return an eligible session for ``session_type``, creating one if needed.

        Raises:
            SessionInitializationError: the new session could not be started.
        """
        logger = self.logger.getChild('get_session')
        session_type = SessionType.parse(session_type)
        stale: List[Session] = []
        chosen: Optional[Session] = None

        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.session_type is not session_type:
                    continue
                if session.busy:
                    continue
                if not session.is_healthy or session.quota_exhausted or not session.is_alive():
                    stale.append(self._sessions.pop(session_id))
                    continue
                if chosen is None:
                    chosen = session
            if chosen is not None:
                chosen.touch()
                if chosen.requires_elevated_privilege and chosen.credential is None:
                    chosen.credential = self._current_credential()

        for session in stale:
            logger.info(
                f"[SESSION_RETIRE] {session.id} healthy={session.is_healthy} "
                f"used={session.commands_executed}/{session.max_commands}"
            )
            session.close(self.settings.grace_period)

        if chosen is not None:
            logger.debug(f"[SESSION_REUSE] {chosen.id} ({chosen.commands_executed}/{chosen.max_commands})")
            return chosen

        profile = self.settings.profile_for(session_type)
        credential = self._current_credential() if profile.requires_elevated_privilege else None
        session = Session(session_type, self.settings.target, profile,
                          self._transport_factory, credential=credential)
        logger.info(f"[SESSION_CREATE] {session.id} for {self.settings.target}")
        try:
            session.initialize(self.settings.init_timeout, self.settings.poll_interval)
        except SessionInitializationError:
            session.close(self.settings.grace_period)
            raise

        with self._lock:
            self._sessions[session.id] = session
        return session

    def cleanup_session(self, session_id: str) -> bool:
        """Retire a session. Returns False if it was already gone."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            self.logger.debug(f"[SESSION_CLEANUP] {session_id} not registered, nothing to do")
            return False
        self.logger.info(f"[SESSION_CLEANUP] {session_id}")
        session.close(self.settings.grace_period)
        return True

    def cleanup_all_sessions(self) -> int:
        with self._lock:
            session_ids = list(self._sessions)
        closed = 0
        for session_id in session_ids:
            if self.cleanup_session(session_id):
                closed += 1
        self.logger.info(f"[SESSION_CLEANUP_ALL] closed {closed} sessions")
        return closed

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [session.describe() for session in sessions]

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)
