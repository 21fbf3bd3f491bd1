"""Spawning a shell against a target.

``open_transport`` is the single place where process-launch details live.
Every transport exposes the channel API the session code uses (a subset of
paramiko's ``Channel``): ``send``, ``recv_ready``, ``recv``,
``recv_stderr_ready``, ``recv_stderr``, ``is_alive`` and ``close``.
"""
import logging
import os
import queue
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import paramiko

from .errors import TransportError

SHELL_ARGS = ["bash", "--noprofile", "--norc"]

logger = logging.getLogger('shell_session.transport')


class SubprocessTransport:
    """A shell subprocess with piped stdin/stdout/stderr.

    Pipes are read by two daemon threads into queues so that polling never
    blocks.
    """

    def __init__(self, argv: Sequence[str], env: Optional[Dict[str, str]] = None):
        self.argv = list(argv)
        logger.info(f"[SPAWN] {' '.join(self.argv)}")
        try:
            self._proc = subprocess.Popen(
                self.argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                env=env,
            )
        except OSError as exc:
            raise TransportError(f"Unable to spawn {self.argv[0]}: {exc}") from exc

        self._stdout: "queue.Queue[bytes]" = queue.Queue()
        self._stderr: "queue.Queue[bytes]" = queue.Queue()
        self._eof = {'stdout': threading.Event(), 'stderr': threading.Event()}
        self.closed = False
        for name, pipe, sink in (('stdout', self._proc.stdout, self._stdout),
                                 ('stderr', self._proc.stderr, self._stderr)):
            thread = threading.Thread(
                target=self._pump, args=(name, pipe, sink),
                name=f"shell_{name}_{self._proc.pid}", daemon=True,
            )
            thread.start()

    def _pump(self, name: str, pipe: Any, sink: "queue.Queue[bytes]") -> None:
        try:
            while True:
                chunk = os.read(pipe.fileno(), 4096)
                if not chunk:
                    break
                sink.put(chunk)
        except (OSError, ValueError) as exc:
            logger.debug(f"[PUMP_END] {name} reader stopped: {exc}")
        finally:
            self._eof[name].set()

    @property
    def pid(self) -> int:
        return self._proc.pid

    def send(self, data: str) -> int:
        if self.closed or self._proc.stdin is None:
            raise TransportError("Transport is closed")
        payload = data.encode('utf-8')
        self._proc.stdin.write(payload)
        self._proc.stdin.flush()
        return len(payload)

    @staticmethod
    def _take(source: "queue.Queue[bytes]", nbytes: int) -> bytes:
        data = b""
        while len(data) < nbytes:
            try:
                data += source.get_nowait()
            except queue.Empty:
                break
        return data

    def recv_ready(self) -> bool:
        return not self._stdout.empty()

    def recv(self, nbytes: int) -> bytes:
        return self._take(self._stdout, nbytes)

    def recv_stderr_ready(self) -> bool:
        return not self._stderr.empty()

    def recv_stderr(self, nbytes: int) -> bytes:
        return self._take(self._stderr, nbytes)

    def is_alive(self) -> bool:
        if self._proc.poll() is None:
            return True
        # Output may still be in flight after the process exited.
        return not (self._eof['stdout'].is_set() and self._eof['stderr'].is_set())

    def close(self, grace_period: float = 2.0) -> None:
        """Ask the shell to exit, then terminate it if it does not."""
        if self.closed:
            return
        self.closed = True
        try:
            if self._proc.poll() is None and self._proc.stdin is not None:
                self._proc.stdin.write(b"exit\n")
                self._proc.stdin.flush()
        except OSError as exc:
            logger.debug(f"[CLOSE] Could not send exit to pid {self._proc.pid}: {exc}")
        try:
            self._proc.wait(timeout=grace_period)
        except subprocess.TimeoutExpired:
            logger.warning(f"[CLOSE] pid {self._proc.pid} still alive after {grace_period}s, terminating")
            self._proc.terminate()
            try:
                self._proc.wait(timeout=grace_period)
            except subprocess.TimeoutExpired:
                self._proc.kill()
                self._proc.wait()
        for stream in (self._proc.stdin, self._proc.stdout, self._proc.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError as exc:
                logger.debug(f"[CLOSE] Error closing stream: {exc}")


class ParamikoTransport:
    """An interactive shell over SSH."""

    def __init__(self, host: str, username: Optional[str] = None, port: Optional[int] = None,
                 password: Optional[str] = None, key_filename: Optional[str] = None,
                 connect_timeout: int = 30):
        host_config = _load_ssh_config().lookup(host)
        resolved_host = host_config.get('hostname', host)
        resolved_username = username or host_config.get('user', os.getenv('USER', 'root'))
        resolved_port = port or int(host_config.get('port', 22))
        resolved_key = key_filename or host_config.get('identityfile', [None])[0]
        self.session_key = f"{resolved_username}@{resolved_host}:{resolved_port}"

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        connect_kwargs: Dict[str, Any] = {
            'hostname': resolved_host,
            'port': resolved_port,
            'username': resolved_username,
            'timeout': connect_timeout,
            'banner_timeout': connect_timeout,
            'auth_timeout': connect_timeout,
        }
        if password:
            connect_kwargs['password'] = password
        elif resolved_key:
            connect_kwargs['key_filename'] = os.path.expanduser(resolved_key)

        logger.info(f"[SSH_CONNECT] {self.session_key}")
        try:
            client.connect(**connect_kwargs)
            self._channel = client.invoke_shell(width=200, height=24)
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise TransportError(f"Unable to connect to {resolved_host}:{resolved_port} - {exc}") from exc
        self._client = client
        self.closed = False

    def send(self, data: str) -> int:
        return self._channel.send(data)

    def recv_ready(self) -> bool:
        return self._channel.recv_ready()

    def recv(self, nbytes: int) -> bytes:
        return self._channel.recv(nbytes)

    def recv_stderr_ready(self) -> bool:
        # A pty merges stderr into stdout.
        return self._channel.recv_stderr_ready()

    def recv_stderr(self, nbytes: int) -> bytes:
        return self._channel.recv_stderr(nbytes)

    def is_alive(self) -> bool:
        transport = self._channel.get_transport()
        return bool(not self._channel.closed and transport and transport.is_active()
                    and not self._channel.exit_status_ready())

    def close(self, grace_period: float = 2.0) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            if not self._channel.closed:
                self._channel.send("exit\n")
                deadline = time.monotonic() + grace_period
                while not self._channel.exit_status_ready() and time.monotonic() < deadline:
                    time.sleep(0.1)
        except (paramiko.SSHException, OSError) as exc:
            logger.debug(f"[CLOSE] Could not send exit to {self.session_key}: {exc}")
        finally:
            self._channel.close()
            self._client.close()


def _load_ssh_config() -> paramiko.SSHConfig:
    """Load SSH config from default locations."""
    ssh_config = paramiko.SSHConfig()
    config_path = Path.home() / '.ssh' / 'config'

    if config_path.exists():
        with open(config_path) as f:
            ssh_config.parse(f)

    return ssh_config


def spawn_argv(target: str) -> List[str]:
    """argv for subprocess-based targets."""
    if target == "local":
        return list(SHELL_ARGS)
    if target == "wsl":
        return ["wsl.exe", "--", *SHELL_ARGS]
    if target.startswith("wsl:"):
        return ["wsl.exe", "-d", target[4:], "--", *SHELL_ARGS]
    if target.startswith("docker:"):
        return ["docker", "exec", "-i", target[7:], *SHELL_ARGS]
    raise ValueError(f"Unsupported target: {target!r}")


def open_transport(target: str, spawn_command: Optional[Sequence[str]] = None) -> Any:
    """Spawn a shell session against ``target``.

    ``spawn_command`` replaces the built-in argv for subprocess targets.
    """
    if target.startswith("ssh:"):
        if target.startswith("ssh://"):
            parsed = urlparse(target)
            return ParamikoTransport(parsed.hostname or "", username=parsed.username,
                                     port=parsed.port)
        return ParamikoTransport(target[4:])
    argv = list(spawn_command) if spawn_command else spawn_argv(target)
    return SubprocessTransport(argv)
