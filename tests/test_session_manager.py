from unittest.mock import MagicMock

import pytest

from mcp_shell_session import CommandResult, ShellSessionManager, VaultError

from fakes import FakeFactory, FakeShell, make_settings

SECRET = "Tr0ub4dor&3"


@pytest.fixture
def manager_for(tmp_path):
    managers = []

    def build(make_shell=None, prompt=None, **overrides):
        manager = ShellSessionManager(
            make_settings(tmp_path, **overrides),
            transport_factory=FakeFactory(make_shell),
            prompt=prompt or MagicMock(side_effect=AssertionError("unexpected prompt")),
            sleep=lambda seconds: None,
        )
        managers.append(manager)
        return manager

    yield build
    for manager in managers:
        manager.close_all_sessions()


def test_execute_returns_success_and_output(manager_for):
    manager = manager_for(lambda: FakeShell({"git rev-parse HEAD": ("abc123", "", 0)}))

    assert manager.execute("git_operations", "git rev-parse HEAD", "current commit") == (True, "abc123")


def test_execute_failure_carries_output_for_the_caller(manager_for):
    manager = manager_for(lambda: FakeShell({"gti status": ("", "bash: gti: command not found", 127)}))

    success, output = manager.execute("git_operations", "gti status")

    assert success is False
    assert "command not found" in output


def test_passwordless_sudo_never_prompts(manager_for):
    prompt = MagicMock()
    manager = manager_for(lambda: FakeShell(passwordless_sudo=True), prompt=prompt)

    success, _ = manager.execute("package_management", "sudo apt-get update")

    assert success
    prompt.assert_not_called()


def test_secret_is_prompted_once_per_workflow(manager_for):
    prompt = MagicMock(return_value=SECRET)
    manager = manager_for(lambda: FakeShell(sudo_password=SECRET), prompt=prompt)

    assert manager.execute("package_management", "sudo apt-get update")[0]
    assert manager.execute("package_management", "sudo apt-get install -y git")[0]
    assert manager.execute("system_configuration", "sudo systemctl restart ssh")[0]

    assert prompt.call_count == 1
    entries = manager.recent_audit_entries()
    assert len(entries) == 3
    assert all(entry["elevated"] for entry in entries)
    assert SECRET not in str(entries)


def test_unelevated_types_never_prompt(manager_for):
    manager = manager_for(lambda: FakeShell(sudo_password=SECRET))

    assert manager.execute("general", "apt-cache policy git")[0]
    assert manager.execute("package_management", "apt-cache search git")[0]


def test_rejected_secret_is_fatal(manager_for):
    manager = manager_for(lambda: FakeShell(sudo_password=SECRET), prompt=MagicMock(return_value="guess"))

    with pytest.raises(VaultError):
        manager.execute("package_management", "sudo apt-get update")
    assert manager.recent_audit_entries() == []


def test_session_start_failure_is_reported_not_raised(manager_for):
    def make_shell():
        raise OSError("docker: container not running")

    manager = manager_for(make_shell)

    success, output = manager.execute("general", "uptime")

    assert success is False
    assert "container not running" in output


def test_dry_run_skips_elevation_and_transmission(manager_for):
    prompt = MagicMock()
    manager = manager_for(lambda: FakeShell(), prompt=prompt, dry_run=True)

    result = manager.execute_with_retry("package_management", "sudo apt-get upgrade -y")

    assert result.result is CommandResult.SUCCESS
    prompt.assert_not_called()
    assert manager.recent_audit_entries()[-1]["dry_run"] is True


def test_context_manager_retires_sessions_and_clears_secret(tmp_path):
    factory = FakeFactory(lambda: FakeShell(sudo_password=SECRET))
    with ShellSessionManager(make_settings(tmp_path), transport_factory=factory,
                             prompt=MagicMock(return_value=SECRET)) as manager:
        assert manager.execute("system_configuration", "sudo sysctl -w vm.swappiness=10")[0]
        credential = manager.vault.credential
        assert manager.list_sessions()

    assert manager.list_sessions() == []
    assert manager.vault.secret() == ""
    assert credential.reveal() == ""
    assert all(shell.closed for shell in factory.shells)


def test_report_and_session_listing(manager_for):
    manager = manager_for()
    manager.execute("general", "uptime")
    manager.execute("general", "uptime")

    report = manager.performance_report()
    assert report["total_commands"] == 2
    assert report["success_rate"] == 100.0
    assert report["active_sessions"] == 1
    assert report["by_command_type"]["uptime"]["count"] == 2

    (session,) = manager.list_sessions()
    assert session["commands_executed"] == 2
    assert manager.close_session(session["session_id"]) is True
    assert manager.close_session(session["session_id"]) is False
