"""Append-only audit trail of command attempts (JSON Lines)."""
import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .datastructures import AuditEntry

REDACTED = "********"

# key=value / key: value assignments that look like credentials
_ASSIGNMENT = re.compile(
    r"(?i)\b(\w*?(?:password|passwd|token|secret|api[_-]?key)\s*[=:]\s*)(\"[^\"]*\"|'[^']*'|\S+)"
)


def mask_secrets(text: str, secrets: Iterable[str] = ()) -> str:
    """Replace each known secret value in ``text``."""
    for secret in secrets:
        if secret and text:
            text = text.replace(secret, REDACTED)
    return text


def redact(text: str, secrets: Iterable[str] = ()) -> str:
    """Mask secret values and credential-looking assignments."""
    if not text:
        return text
    text = mask_secrets(text, secrets)
    return _ASSIGNMENT.sub(lambda m: m.group(1) + REDACTED, text)


class AuditLogger:
    """Writes one self-contained JSON record per command attempt.

    Records are only ever appended. Each write is flushed and fsynced before
    ``append`` returns, so a reader can rebuild the history by reading the
    file from the start.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.logger = logging.getLogger('shell_session.audit')

    def append(self, entry: AuditEntry) -> None:
        line = json.dumps(entry.to_dict(), ensure_ascii=False)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as handle:
                handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        log = self.logger.info if entry.result.value == "success" else self.logger.warning
        log(f"AUDIT: [{entry.result.value}] session={entry.session_id} cmd={entry.command[:100]!r} "
            f"duration={entry.duration:.3f}s")

    def read_entries(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Read records in write order. ``limit`` keeps only the newest ones."""
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, encoding="utf-8") as handle:
            for number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    self.logger.warning(f"Skipping unreadable audit line {number} in {self.path}")
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries
