"""Environment-driven configuration for the shell session pool."""
import logging
import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .datastructures import RetryPolicy, SessionProfile, SessionType

ENV_PREFIX = "MCP_SHELL_"

DEFAULT_LOG_DIR = "/tmp/mcp_shell_session_logs"
DEFAULT_AUDIT_FILE = "audit.jsonl"

# Per-type defaults. Timeouts are in seconds and scaled by the timeout profile.
DEFAULT_PROFILES: Dict[SessionType, SessionProfile] = {
    SessionType.GIT_OPERATIONS: SessionProfile(
        working_directory="~",
        environment={"GIT_TERMINAL_PROMPT": "0", "GIT_PAGER": "cat"},
        requires_elevated_privilege=False,
        timeout=120,
        max_commands=50,
    ),
    SessionType.PACKAGE_MANAGEMENT: SessionProfile(
        working_directory="~",
        environment={"DEBIAN_FRONTEND": "noninteractive", "NEEDRESTART_MODE": "a"},
        requires_elevated_privilege=True,
        timeout=600,
        max_commands=20,
    ),
    SessionType.INTERACTIVE_CLI: SessionProfile(
        working_directory="~",
        environment={"PYTHONUNBUFFERED": "1", "NO_COLOR": "1"},
        requires_elevated_privilege=False,
        timeout=300,
        max_commands=100,
    ),
    SessionType.SYSTEM_CONFIGURATION: SessionProfile(
        working_directory="/",
        environment={"LC_ALL": "C"},
        requires_elevated_privilege=True,
        timeout=120,
        max_commands=30,
    ),
    SessionType.GENERAL: SessionProfile(
        working_directory="~",
        environment={},
        requires_elevated_privilege=False,
        timeout=60,
        max_commands=100,
    ),
}

TIMEOUT_PROFILES: Dict[str, float] = {
    "fast": 0.5,
    "standard": 1.0,
    "extended": 2.0,
}

RETRY_PROFILES: Dict[str, RetryPolicy] = {
    "default": RetryPolicy(max_attempts=3, backoff=1.0, multiplier=2.0, max_backoff=30.0),
    "fixed": RetryPolicy(max_attempts=3, backoff=2.0, multiplier=1.0, max_backoff=2.0),
    "none": RetryPolicy(max_attempts=1, backoff=0.0, multiplier=1.0, max_backoff=0.0),
}

_TRUE = ("1", "true", "yes", "on")


def _env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(ENV_PREFIX + name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE


def _env_number(env: Mapping[str, str], name: str, default, cast=float):
    value = env.get(ENV_PREFIX + name)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError:
        logging.getLogger("shell_session.config").warning(
            f"Ignoring invalid value for {ENV_PREFIX}{name}: {value!r}"
        )
        return default


@dataclass
class Settings:
    """Runtime settings for one workflow."""
    target: str = "local"
    spawn_command: Optional[List[str]] = None
    log_dir: str = DEFAULT_LOG_DIR
    log_level: str = "DEBUG"
    audit_log_path: str = str(Path(DEFAULT_LOG_DIR) / DEFAULT_AUDIT_FILE)
    timeout_profile: str = "standard"
    retry_profile: str = "default"
    max_retries: Optional[int] = None
    grace_period: float = 2.0
    init_timeout: float = 15.0
    poll_interval: float = 0.05
    stderr_grace: float = 0.5
    max_output_bytes: int = 1024 * 1024
    dry_run: bool = False
    retire_on_timeout: bool = True
    sudo_password_env: str = "MCP_SHELL_SUDO_PASSWORD"
    profiles: Dict[SessionType, SessionProfile] = field(
        default_factory=lambda: dict(DEFAULT_PROFILES)
    )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``MCP_SHELL_*`` environment variables."""
        env = os.environ if env is None else env
        log_dir = env.get(ENV_PREFIX + "LOG_DIR", DEFAULT_LOG_DIR)
        spawn = env.get(ENV_PREFIX + "SPAWN_COMMAND")
        max_retries = _env_number(env, "MAX_RETRIES", None, int)

        settings = cls(
            target=env.get(ENV_PREFIX + "TARGET", "local"),
            spawn_command=shlex.split(spawn) if spawn else None,
            log_dir=log_dir,
            log_level=env.get(ENV_PREFIX + "LOG_LEVEL", "DEBUG").upper(),
            audit_log_path=env.get(
                ENV_PREFIX + "AUDIT_LOG", str(Path(log_dir) / DEFAULT_AUDIT_FILE)
            ),
            timeout_profile=env.get(ENV_PREFIX + "TIMEOUT_PROFILE", "standard").lower(),
            retry_profile=env.get(ENV_PREFIX + "RETRY_PROFILE", "default").lower(),
            max_retries=max_retries,
            grace_period=_env_number(env, "GRACE_PERIOD", 2.0),
            init_timeout=_env_number(env, "INIT_TIMEOUT", 15.0),
            poll_interval=_env_number(env, "POLL_INTERVAL", 0.05),
            max_output_bytes=_env_number(env, "MAX_OUTPUT_BYTES", 1024 * 1024, int),
            dry_run=_env_flag(env, "DRY_RUN", False),
            retire_on_timeout=_env_flag(env, "RETIRE_ON_TIMEOUT", True),
            sudo_password_env=env.get(
                ENV_PREFIX + "SUDO_PASSWORD_ENV", "MCP_SHELL_SUDO_PASSWORD"
            ),
        )
        settings.profiles = settings._apply_overrides(env)
        return settings

    def _apply_overrides(self, env: Mapping[str, str]) -> Dict[SessionType, SessionProfile]:
        """Apply ``MCP_SHELL_<TYPE>_{TIMEOUT,MAX_COMMANDS,WORKDIR}`` overrides."""
        profiles = {}
        for session_type, profile in self.profiles.items():
            prefix = session_type.name + "_"
            timeout = _env_number(env, prefix + "TIMEOUT", profile.timeout)
            max_commands = _env_number(env, prefix + "MAX_COMMANDS", profile.max_commands, int)
            workdir = env.get(ENV_PREFIX + prefix + "WORKDIR", profile.working_directory)
            if timeout <= 0:
                timeout = profile.timeout
            if max_commands < 1:
                max_commands = profile.max_commands
            profiles[session_type] = replace(
                profile,
                timeout=timeout,
                max_commands=max_commands,
                working_directory=workdir,
            )
        return profiles

    def profile_for(self, session_type: SessionType) -> SessionProfile:
        """Return the profile for a type with the timeout profile applied."""
        profile = self.profiles[session_type]
        scale = TIMEOUT_PROFILES.get(self.timeout_profile, 1.0)
        return replace(profile, timeout=profile.timeout * scale)

    @property
    def retry_policy(self) -> RetryPolicy:
        policy = RETRY_PROFILES.get(self.retry_profile, RETRY_PROFILES["default"])
        if self.max_retries is not None and self.max_retries > 0:
            policy = replace(policy, max_attempts=self.max_retries)
        return policy
