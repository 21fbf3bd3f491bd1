"""Tests for environment-driven settings and per-type overrides."""

import pytest

from mcp_shell_session.config import DEFAULT_PROFILES, RETRY_PROFILES, Settings
from mcp_shell_session.datastructures import SessionType


class TestSettingsFromEnv:
    """Settings are built from MCP_SHELL_* variables."""

    def test_defaults_without_env(self):
        """No variables gives the built-in defaults."""
        settings = Settings.from_env({})

        assert settings.target == "local"
        assert settings.spawn_command is None
        assert settings.dry_run is False
        assert settings.retire_on_timeout is True
        assert settings.profiles == DEFAULT_PROFILES
        assert settings.audit_log_path.endswith("audit.jsonl")

    def test_top_level_overrides(self):
        """Target, spawn command, log location and flags are read from the env."""
        settings = Settings.from_env({
            "MCP_SHELL_TARGET": "docker:builder",
            "MCP_SHELL_SPAWN_COMMAND": "ssh -T build-host bash --norc",
            "MCP_SHELL_LOG_DIR": "/var/log/shell",
            "MCP_SHELL_LOG_LEVEL": "info",
            "MCP_SHELL_DRY_RUN": "yes",
            "MCP_SHELL_RETIRE_ON_TIMEOUT": "0",
        })

        assert settings.target == "docker:builder"
        assert settings.spawn_command == ["ssh", "-T", "build-host", "bash", "--norc"]
        assert settings.log_dir == "/var/log/shell"
        assert settings.audit_log_path == "/var/log/shell/audit.jsonl"
        assert settings.log_level == "INFO"
        assert settings.dry_run is True
        assert settings.retire_on_timeout is False

    def test_per_type_overrides(self):
        """Timeout, quota and working directory can be set per session type."""
        settings = Settings.from_env({
            "MCP_SHELL_GIT_OPERATIONS_TIMEOUT": "30",
            "MCP_SHELL_GIT_OPERATIONS_MAX_COMMANDS": "2",
            "MCP_SHELL_GIT_OPERATIONS_WORKDIR": "/srv/repos",
        })

        git = settings.profile_for(SessionType.GIT_OPERATIONS)
        assert git.timeout == 30
        assert git.max_commands == 2
        assert git.working_directory == "/srv/repos"
        assert git.environment == DEFAULT_PROFILES[SessionType.GIT_OPERATIONS].environment
        assert settings.profile_for(SessionType.GENERAL) == DEFAULT_PROFILES[SessionType.GENERAL]

    def test_invalid_values_fall_back_to_defaults(self):
        """Invalid numbers are ignored rather than failing startup."""
        settings = Settings.from_env({
            "MCP_SHELL_GENERAL_TIMEOUT": "soon",
            "MCP_SHELL_GENERAL_MAX_COMMANDS": "0",
            "MCP_SHELL_PACKAGE_MANAGEMENT_TIMEOUT": "-5",
            "MCP_SHELL_MAX_RETRIES": "many",
        })

        general = settings.profile_for(SessionType.GENERAL)
        assert general.timeout == DEFAULT_PROFILES[SessionType.GENERAL].timeout
        assert general.max_commands == DEFAULT_PROFILES[SessionType.GENERAL].max_commands
        package = settings.profile_for(SessionType.PACKAGE_MANAGEMENT)
        assert package.timeout == DEFAULT_PROFILES[SessionType.PACKAGE_MANAGEMENT].timeout
        assert settings.max_retries is None


class TestProfiles:
    """Timeout and retry profiles."""

    def test_timeout_profile_scales_every_type(self):
        fast = Settings.from_env({"MCP_SHELL_TIMEOUT_PROFILE": "fast"})
        extended = Settings.from_env({"MCP_SHELL_TIMEOUT_PROFILE": "EXTENDED"})

        assert fast.profile_for(SessionType.PACKAGE_MANAGEMENT).timeout == 300
        assert extended.profile_for(SessionType.GENERAL).timeout == 120

    def test_unknown_timeout_profile_is_standard(self):
        settings = Settings.from_env({"MCP_SHELL_TIMEOUT_PROFILE": "ludicrous"})
        assert settings.profile_for(SessionType.GENERAL).timeout == 60

    def test_retry_profile_and_max_retries(self):
        assert Settings.from_env({}).retry_policy == RETRY_PROFILES["default"]
        assert Settings.from_env({"MCP_SHELL_RETRY_PROFILE": "none"}).retry_policy.max_attempts == 1

        settings = Settings.from_env({"MCP_SHELL_RETRY_PROFILE": "fixed", "MCP_SHELL_MAX_RETRIES": "5"})
        assert settings.retry_policy.max_attempts == 5
        assert settings.retry_policy.delay(3) == 2.0

    def test_elevated_types(self):
        elevated = {t for t, p in DEFAULT_PROFILES.items() if p.requires_elevated_privilege}
        assert elevated == {SessionType.PACKAGE_MANAGEMENT, SessionType.SYSTEM_CONFIGURATION}


class TestSessionTypeParsing:

    def test_accepts_values_names_and_camel_case(self):
        assert SessionType.parse("git_operations") is SessionType.GIT_OPERATIONS
        assert SessionType.parse("PACKAGE_MANAGEMENT") is SessionType.PACKAGE_MANAGEMENT
        assert SessionType.parse("InteractiveCLI") is SessionType.INTERACTIVE_CLI
        assert SessionType.parse(SessionType.GENERAL) is SessionType.GENERAL

    def test_rejects_unknown_types(self):
        with pytest.raises(ValueError):
            SessionType.parse("database")
