import json
from datetime import datetime, timezone

from mcp_shell_session.audit import REDACTED, AuditLogger, mask_secrets, redact
from mcp_shell_session.datastructures import AuditEntry, CommandResult


def make_entry(command="git status", result=CommandResult.SUCCESS, **kwargs):
    values = dict(
        timestamp=datetime.now(timezone.utc).isoformat(),
        session_id="git_operations-1234abcd",
        session_type="git_operations",
        target="local",
        command=command,
        description="",
        result=result,
        exit_code=0 if result is CommandResult.SUCCESS else None,
        duration=0.25,
        stdout="",
        stderr="",
        user="tester",
        host="build-01",
    )
    values.update(kwargs)
    return AuditEntry(**values)


def test_each_append_is_one_json_line(tmp_path):
    path = tmp_path / "audit" / "audit.jsonl"
    audit = AuditLogger(str(path))

    audit.append(make_entry("git fetch"))
    audit.append(make_entry("git push", CommandResult.TIMEOUT))

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first, second = (json.loads(line) for line in lines)
    assert first["command"] == "git fetch"
    assert first["result"] == "success"
    assert second["result"] == "timeout"
    assert second["exit_code"] is None
    assert first["entry_id"] != second["entry_id"]


def test_records_are_appended_to_existing_history(tmp_path):
    path = tmp_path / "audit.jsonl"
    AuditLogger(str(path)).append(make_entry("first"))
    AuditLogger(str(path)).append(make_entry("second"))

    assert [e["command"] for e in AuditLogger(str(path)).read_entries()] == ["first", "second"]


def test_read_entries_limit_keeps_newest(tmp_path):
    audit = AuditLogger(str(tmp_path / "audit.jsonl"))
    for n in range(5):
        audit.append(make_entry(f"echo {n}"))

    assert [e["command"] for e in audit.read_entries(limit=2)] == ["echo 3", "echo 4"]
    assert audit.read_entries(limit=0) == []


def test_unreadable_lines_are_skipped(tmp_path):
    path = tmp_path / "audit.jsonl"
    audit = AuditLogger(str(path))
    audit.append(make_entry("ok"))
    with open(path, "a", encoding="utf-8") as handle:
        handle.write("{not json\n")

    assert [e["command"] for e in audit.read_entries()] == ["ok"]


def test_missing_file_reads_empty(tmp_path):
    assert AuditLogger(str(tmp_path / "none.jsonl")).read_entries() == []


def test_redact_masks_known_secrets_and_assignments():
    text = "login with hunter2; export GITHUB_TOKEN=ghp_abc password: 'x y'"
    masked = redact(text, ["hunter2"])

    assert "hunter2" not in masked
    assert "ghp_abc" not in masked
    assert "x y" not in masked
    assert masked.count(REDACTED) == 3
    assert redact("", ["x"]) == ""


def test_mask_secrets_leaves_assignments_alone():
    text = "password=hunter2 token=abc"

    assert mask_secrets(text, ["hunter2"]) == f"password={REDACTED} token=abc"
    assert mask_secrets(text, []) == text
