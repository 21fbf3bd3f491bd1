"""Completion-sentinel protocol shared by sessions, the executor and the vault.

Every command sent to a shell is followed, on its own line, by a status
trailer. The trailer first prints ``<marker>ERR`` to stderr and then
``<marker>RC=<status>`` to stdout. The marker is a fresh value per
invocation. It is passed to ``printf`` as an argument, so an echoed copy of
the command line never contains ``<marker>RC=`` and cannot be mistaken for
completion.

The channel objects used here only need the subset of the paramiko
``Channel`` API the session code relies on: ``send``, ``recv_ready``,
``recv``, ``recv_stderr_ready``, ``recv_stderr`` and ``is_alive``.
"""
import logging
import re
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

MARKER_PREFIX = '__MCP_CMD_'
RECV_SIZE = 4096

logger = logging.getLogger('shell_session.protocol')


class ReadStatus(Enum):
    COMPLETE = "complete"
    TIMEOUT = "timeout"
    DISCONNECTED = "disconnected"
    MALFORMED = "malformed"


@dataclass
class SentinelRead:
    status: ReadStatus
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    detail: str = ""


def new_marker() -> str:
    return f"{MARKER_PREFIX}{uuid.uuid4().hex}__"


def build_sentinel_command(marker: str) -> str:
    return (
        "__mcp_status=$?; "
        f"printf '\\n%sERR\\n' '{marker}' >&2; "
        f"printf '\\n%sRC=%d\\n' '{marker}' \"$__mcp_status\"\n"
    )


def build_command_with_sentinel(command: str, marker: str) -> str:
    """Append the status trailer on its own line.

    Keeping the trailer on a separate line preserves heredoc delimiters
    that end the caller's command.
    """
    return command.rstrip('\n') + '\n' + build_sentinel_command(marker)


def with_stdin(command: str, lines: list) -> str:
    """Feed ``lines`` to ``command`` through a quoted heredoc.

    The lines sit between the command line and the status trailer, are not
    expanded by the shell and are never run as commands. A program that asks
    for more input (sudo retrying a wrong password) reads end-of-file instead
    of the trailer.
    """
    delimiter = f"__MCP_STDIN_{uuid.uuid4().hex}__"
    body = ""
    for line in lines:
        if '\n' in line or '\r' in line:
            raise ValueError("stdin lines may not contain line breaks")
        body += line + '\n'
    return f"{command} <<'{delimiter}'\n{body}{delimiter}"


def strip_ansi(text: str) -> str:
    """Strip all ANSI escape sequences including CSI, OSC, and other types."""
    # Remove CSI sequences: \x1b[...
    text = re.sub(r"\x1b\[[0-?]*[ -/]*[@-~]", "", text)
    # Remove OSC sequences: \x1b]...(\x07|\x1b\\)
    text = re.sub(r"\x1b\][^\x07]*\x07", "", text)
    text = re.sub(r"\x1b\][^\x1b]*\x1b\\", "", text)
    # Remove other escape sequences
    text = re.sub(r"\x1b[PX^_][^\x1b]*\x1b\\", "", text)
    text = re.sub(r"[\r\x00]", "", text)
    # Remove any remaining single control characters
    text = re.sub(r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)
    return text


# Leftover trailer lines from earlier commands (merged streams, pty echo).
_STRAY_MARKER_LINE = re.compile(rf"^\s*{re.escape(MARKER_PREFIX)}[0-9a-f]+__ERR\s*$\n?", re.MULTILINE)


class OutputLimiter:
    """Keeps at most ``max_size`` characters of output.

    Once the limit is hit the head is frozen and only a short rolling tail
    is retained, so completion can still be detected.
    """

    TAIL_SIZE = 8192

    def __init__(self, max_size: int = 1024 * 1024):
        self.max_size = max_size
        self.truncated = False
        self._head = ""
        self._tail = ""

    def add_chunk(self, chunk: str) -> None:
        if not self.truncated:
            self._head += chunk
            if len(self._head) > self.max_size:
                self.truncated = True
                self._tail = self._head[-self.TAIL_SIZE:]
                self._head = self._head[:self.max_size]
            return
        self._tail = (self._tail + chunk)[-self.TAIL_SIZE:]

    @property
    def scan_text(self) -> str:
        """Text in which trailer lines are searched."""
        return self._tail if self.truncated else self._head

    def text_before(self, index: int) -> str:
        """Captured output up to ``index`` of ``scan_text``."""
        if not self.truncated:
            return self._head[:index]
        return self._head + f"\n[output truncated at {self.max_size} characters]"


def _rc_pattern(marker: str) -> re.Pattern:
    return re.compile(rf"^{re.escape(marker)}RC=([^\r\n]*)\r?$", re.MULTILINE)


def _err_pattern(marker: str) -> re.Pattern:
    return re.compile(rf"^{re.escape(marker)}ERR\r?$", re.MULTILINE)


def _clean(text: str) -> str:
    text = _STRAY_MARKER_LINE.sub('', strip_ansi(text))
    return text.strip('\n').rstrip()


def drain(channel: Any) -> str:
    """Discard anything already buffered on the channel before a new command."""
    discarded = ""
    while channel.recv_ready():
        chunk = channel.recv(RECV_SIZE)
        if not chunk:
            break
        discarded += chunk.decode('utf-8', errors='replace')
    while channel.recv_stderr_ready():
        chunk = channel.recv_stderr(RECV_SIZE)
        if not chunk:
            break
    if discarded:
        logger.debug(f"[DRAIN] Discarded {len(discarded)} stale characters")
    return discarded


def read_until_sentinel(channel: Any, marker: str, timeout: float,
                        poll_interval: float = 0.05,
                        stderr_grace: float = 0.5,
                        max_output: int = 1024 * 1024,
                        on_output: Optional[Callable[[str], None]] = None,
                        clock: Callable[[], float] = time.monotonic) -> SentinelRead:
    """Read both streams until ``<marker>RC=`` is seen or ``timeout`` elapses.

    Stream errors are reported as ``DISCONNECTED``. A status that is not an
    integer is reported as ``MALFORMED``. Never blocks longer than
    ``timeout`` plus ``stderr_grace`` (and one poll interval).
    """
    stdout = OutputLimiter(max_output)
    stderr = OutputLimiter(max_output)
    rc_pattern = _rc_pattern(marker)
    err_pattern = _err_pattern(marker)
    start = clock()

    def _partial(status: ReadStatus, detail: str) -> SentinelRead:
        return SentinelRead(
            status=status,
            stdout=_clean(stdout.text_before(len(stdout.scan_text))),
            stderr=_clean(stderr.text_before(len(stderr.scan_text))),
            detail=detail,
        )

    try:
        match = None
        while clock() - start < timeout:
            got_data = False
            if channel.recv_stderr_ready():
                chunk = channel.recv_stderr(RECV_SIZE)
                if chunk:
                    stderr.add_chunk(chunk.decode('utf-8', errors='replace'))
                    got_data = True
            if channel.recv_ready():
                chunk = channel.recv(RECV_SIZE)
                if chunk:
                    text = chunk.decode('utf-8', errors='replace')
                    stdout.add_chunk(text)
                    got_data = True
                    if on_output is not None:
                        on_output(text)
                    match = rc_pattern.search(stdout.scan_text)
                    if match:
                        break
            if not got_data:
                if not channel.is_alive() and not channel.recv_ready():
                    logger.warning(f"[READ_EOF] Channel closed before sentinel {marker}")
                    return _partial(ReadStatus.DISCONNECTED, "shell process exited")
                time.sleep(poll_interval)
        else:
            logger.warning(f"[READ_TIMEOUT] No sentinel after {timeout}s")
            return _partial(ReadStatus.TIMEOUT, f"command timed out after {timeout} seconds")

        # A pty merges stderr into stdout: the ERR line is then already there.
        merged = err_pattern.search(stdout.scan_text, 0, match.start()) is not None
        if not merged:
            deadline = clock() + stderr_grace
            while not err_pattern.search(stderr.scan_text) and clock() < deadline:
                if channel.recv_stderr_ready():
                    chunk = channel.recv_stderr(RECV_SIZE)
                    if chunk:
                        stderr.add_chunk(chunk.decode('utf-8', errors='replace'))
                        continue
                time.sleep(poll_interval)
    except (OSError, EOFError) as exc:
        logger.warning(f"[READ_ERROR] Stream failure while waiting for {marker}: {exc}")
        return _partial(ReadStatus.DISCONNECTED, f"stream error: {exc}")

    out_text = _err_pattern(marker).sub('', stdout.text_before(match.start()))
    err_text = stderr.scan_text
    err_match = err_pattern.search(err_text)
    err_text = stderr.text_before(err_match.start()) if err_match else stderr.text_before(len(err_text))

    raw_status = match.group(1).strip()
    try:
        exit_code = int(raw_status)
    except ValueError:
        logger.warning(f"[READ_MALFORMED] Unparseable status {raw_status!r}")
        return SentinelRead(
            status=ReadStatus.MALFORMED,
            stdout=_clean(out_text),
            stderr=_clean(err_text),
            detail=f"unparseable exit status {raw_status!r}",
        )

    return SentinelRead(
        status=ReadStatus.COMPLETE,
        stdout=_clean(out_text),
        stderr=_clean(err_text),
        exit_code=exit_code,
    )


def run_command(channel: Any, command: str, timeout: float,
              stdin_lines: Optional[list] = None,
              poll_interval: float = 0.05) -> SentinelRead:
    """Run one command on a channel and wait for its trailer.

    ``stdin_lines`` become the command's standard input (``sudo -S``); they
    follow the command line and precede the trailer (see ``with_stdin``).
    """
    marker = new_marker()
    drain(channel)
    if stdin_lines:
        command = with_stdin(command, stdin_lines)
    channel.send(build_command_with_sentinel(command, marker))
    return read_until_sentinel(channel, marker, timeout, poll_interval=poll_interval)
