import pytest

from mcp_shell_session.audit import AuditLogger
from mcp_shell_session.command_executor import CommandExecutor
from mcp_shell_session.metrics import PerformanceMetrics

from fakes import FakeFactory, make_settings


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def audit(settings):
    return AuditLogger(settings.audit_log_path)


@pytest.fixture
def metrics():
    return PerformanceMetrics()


@pytest.fixture
def executor(settings, audit, metrics):
    return CommandExecutor(settings, audit, metrics)
