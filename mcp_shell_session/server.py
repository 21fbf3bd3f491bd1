"""MCP server for pooled shell sessions."""
import os
from typing import Optional

from fastmcp import FastMCP

from .config import Settings
from .errors import VaultError
from .session_manager import ShellSessionManager


def _env_secret_prompt(variable: str):
    """Read the sudo secret from the environment; MCP stdio has no terminal."""
    def prompt(_message: str) -> str:
        value = os.environ.get(variable)
        if not value:
            raise VaultError(f"Elevation required but {variable} is not set")
        return value
    return prompt


# Initialize the MCP server
mcp = FastMCP("shell-session")
settings = Settings.from_env()
session_manager = ShellSessionManager(settings, prompt=_env_secret_prompt(settings.sudo_password_env))


@mcp.tool()
def execute_command(
    session_type: str,
    command: str,
    description: str = "",
    max_retries: Optional[int] = None,
) -> str:
    """Execute a command on a pooled shell session.

    Sessions are pooled per workload type and reused until their command
    quota is used up. Transient failures (timeouts, disconnects, lock
    contention) are retried on a fresh session.

    Args:
        session_type: One of git_operations, package_management,
            interactive_cli, system_configuration, general
        command: Shell command to execute
        description: Human readable description recorded in the audit log
        max_retries: Total number of tries for transient failures (optional)
    """
    try:
        result = session_manager.execute_with_retry(
            session_type, command, description, max_retries=max_retries
        )
    except (VaultError, ConnectionError, ValueError) as exc:
        return f"Result: error\n\nERROR:\n{exc}\n"

    response = f"Result: {result.result.value}\nExit Status: {result.exit_code}\n\n"
    if result.stdout:
        response += f"STDOUT:\n{result.stdout}\n"
    if result.stderr:
        response += f"STDERR:\n{result.stderr}\n"
    return response


@mcp.tool()
def list_sessions() -> str:
    """List all active shell sessions."""
    sessions = session_manager.list_sessions()
    if sessions:
        return "Active Shell Sessions:\n" + "\n".join(
            f"- {s['session_id']} ({s['session_type']}) "
            f"{s['commands_executed']}/{s['max_commands']} commands, healthy={s['is_healthy']}"
            for s in sessions
        )
    else:
        return "No active shell sessions"


@mcp.tool()
def close_session(session_id: str) -> str:
    """Close a specific shell session.

    Args:
        session_id: Session id as shown by list_sessions
    """
    if session_manager.close_session(session_id):
        return f"Closed session: {session_id}"
    return f"No such session: {session_id}"


@mcp.tool()
def close_all_sessions() -> str:
    """Close all active shell sessions."""
    closed = session_manager.close_all_sessions()
    return f"Closed {closed} shell sessions"


@mcp.tool()
def performance_report() -> str:
    """Summarize command counts, durations and success rate."""
    report = session_manager.performance_report()
    lines = [
        f"Total commands: {report['total_commands']}",
        f"Success rate: {report['success_rate']}%",
        f"Average duration: {report['average_duration']:.3f}s",
        f"Active sessions: {report['active_sessions']}",
    ]
    for key, bucket in sorted(report['by_command_type'].items()):
        lines.append(
            f"- {key}: {bucket['count']} runs, {bucket['failures']} failures, "
            f"avg {bucket['average_duration']:.3f}s"
        )
    return "\n".join(lines)


@mcp.tool()
def audit_log(limit: int = 20) -> str:
    """Show the most recent audit records.

    Args:
        limit: Maximum number of records to return (default: 20)
    """
    entries = session_manager.recent_audit_entries(limit)
    if not entries:
        return "Audit log is empty"
    return "\n".join(
        f"{e['timestamp']} [{e['result']}] {e['session_id']} {e['command']!r} ({e['duration']:.3f}s)"
        for e in entries
    )


def main():
    try:
        mcp.run()
    finally:
        session_manager.close_all_sessions()


if __name__ == "__main__":
    main()
