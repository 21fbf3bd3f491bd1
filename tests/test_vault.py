from unittest.mock import MagicMock

import pytest

from mcp_shell_session.errors import VaultError
from mcp_shell_session.vault import CredentialVault, SecretBuffer, SudoVerifier

from fakes import FakeFactory, FakeShell


def make_vault(prompt, **shell_kwargs):
    factory = FakeFactory(lambda: FakeShell(**shell_kwargs))
    verifier = SudoVerifier(factory, timeout=0.5, grace_period=0.05)
    return CredentialVault(verifier, prompt=prompt), factory


def test_passwordless_sudo_never_prompts():
    prompt = MagicMock()
    vault, factory = make_vault(prompt, passwordless_sudo=True)

    assert vault.acquire("local") is None

    prompt.assert_not_called()
    assert vault.resolved
    assert vault.credential is None
    assert all(shell.closed for shell in factory.shells)


def test_prompted_secret_is_verified_and_held():
    prompt = MagicMock(return_value="correct horse")
    vault, factory = make_vault(prompt, sudo_password="correct horse")

    credential = vault.acquire("local")

    assert isinstance(credential, SecretBuffer)
    assert vault.secret() == "correct horse"
    assert prompt.call_count == 1
    verify_shell = factory.shells[-1]
    assert verify_shell.commands == ["sudo -k -S -p '' -v"]
    assert verify_shell.sudo_stdin == ["correct horse"]
    assert all(shell.closed for shell in factory.shells)


def test_acquire_is_cached_for_the_same_target():
    prompt = MagicMock(return_value="pw")
    vault, _ = make_vault(prompt, sudo_password="pw")

    first = vault.acquire("local")
    second = vault.acquire("local")

    assert first is second
    assert prompt.call_count == 1


def test_second_attempt_can_succeed():
    prompt = MagicMock(side_effect=["typo", "pw"])
    vault, _ = make_vault(prompt, sudo_password="pw")

    assert vault.acquire("local").reveal() == "pw"
    assert prompt.call_count == 2


def test_three_rejections_are_fatal():
    prompt = MagicMock(return_value="wrong")
    vault, _ = make_vault(prompt, sudo_password="pw")

    with pytest.raises(VaultError):
        vault.acquire("local")
    assert prompt.call_count == CredentialVault.MAX_ATTEMPTS
    assert vault.secret() == ""


@pytest.mark.parametrize("value", ["", "line\nbreak"])
def test_unusable_input_is_fatal(value):
    vault, _ = make_vault(MagicMock(return_value=value), sudo_password="pw")
    with pytest.raises(VaultError):
        vault.acquire("local")


def test_dispose_zeroes_the_secret():
    vault, _ = make_vault(MagicMock(return_value="pw"), sudo_password="pw")
    credential = vault.acquire("local")

    vault.dispose()

    assert vault.secret() == ""
    assert vault.credential is None
    assert credential.reveal() == ""
    assert not credential
    assert not vault.resolved


def test_acquired_context_disposes_on_error():
    vault, _ = make_vault(MagicMock(return_value="pw"), sudo_password="pw")

    with pytest.raises(RuntimeError):
        with vault.acquired("local") as credential:
            assert credential.reveal() == "pw"
            raise RuntimeError("workflow failed")

    assert vault.secret() == ""
    assert credential.reveal() == ""


def test_vault_as_context_manager_disposes():
    with make_vault(MagicMock(return_value="pw"), sudo_password="pw")[0] as vault:
        vault.acquire("local")
        assert vault.secret() == "pw"
    assert vault.secret() == ""


def test_unreachable_target_is_a_vault_error():
    def refuse(target):
        raise OSError("connection refused")

    vault = CredentialVault(SudoVerifier(refuse, timeout=0.5), prompt=MagicMock())
    with pytest.raises(VaultError):
        vault.acquire("ssh:build-host")


def test_secret_buffer_repr_hides_the_value():
    buffer = SecretBuffer("hunter2")
    assert "hunter2" not in repr(buffer)
    buffer.clear()
    assert repr(buffer) == "SecretBuffer(<cleared>)"
