"""
Command sessions for backup operations.

Supports:
- SSHSession: run commands on a remote host over SSH (paramiko)
- LocalSession: run commands on the controlling machine (pull mode)

Both stream output line by line while a command runs and return a single
CommandResult when it completes, is cancelled, or times out.
"""

import codecs
import io
import logging
import os
import queue
import re
import shlex
import signal
import subprocess
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from fortress.config import Config
from fortress.utils.masking import mask_sensitive_data
from .errors import ConnectionFailed
from .types import CommandResult, SSHConnectionConfig


logger = logging.getLogger(__name__)

LineHandler = Callable[[str, str], None]

_POLL_INTERVAL = 0.05
_READ_SIZE = 32768
_KILL_GRACE = 5.0
_LINE_BREAK = re.compile(r'[\r\n]')

# Key classes tried in order when loading a private key
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


class SessionState(str, Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'


class _LineSplitter:
    """Incrementally decode a byte stream and emit complete lines."""

    def __init__(self, stream: str, on_line: Optional[LineHandler]):
        self.stream = stream
        self.on_line = on_line
        self.chunks: List[str] = []
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._pending = ''

    def feed(self, data: bytes):
        text = self._decoder.decode(data)
        if not text:
            return
        self.chunks.append(text)
        self._pending += text
        parts = _LINE_BREAK.split(self._pending)
        self._pending = parts.pop()
        for line in parts:
            self._emit(line)

    def close(self):
        tail = self._decoder.decode(b'', final=True)
        if tail:
            self.chunks.append(tail)
            self._pending += tail
        if self._pending:
            self._emit(self._pending)
            self._pending = ''

    def text(self) -> str:
        return ''.join(self.chunks)

    def _emit(self, line: str):
        line = line.strip()
        if line and self.on_line:
            self.on_line(self.stream, line)


def load_private_key(private_key: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """
    Load a private key from PEM/OpenSSH text or from a file on this machine.

    Args:
        private_key: Key material, or a path to a key file ('~' is expanded)
        passphrase: Optional passphrase protecting the key

    Raises:
        ConnectionFailed: If the key cannot be read or parsed
    """
    key_text = private_key
    if not private_key.lstrip().startswith('-----'):
        key_path = Path(private_key).expanduser()
        if not key_path.is_file():
            raise ConnectionFailed("SSH key invalid: not a valid PEM/OpenSSH string and not a file on this machine")
        try:
            key_text = key_path.read_text()
        except OSError as e:
            raise ConnectionFailed(f"Failed to read SSH key file: {e.strerror}")

    last_error = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(key_text), password=passphrase or None)
        except paramiko.PasswordRequiredException:
            raise ConnectionFailed("SSH key is passphrase protected but no passphrase was provided")
        except (paramiko.SSHException, ValueError) as e:
            last_error = e

    raise ConnectionFailed(f"Unsupported or invalid SSH private key ({type(last_error).__name__})")


def env_payload(env: Dict[str, str]) -> str:
    """Render environment assignments for delivery on stdin."""
    return ''.join(f"{name}={shlex.quote(value)}\n" for name, value in env.items())


class Session:
    """
    Base class for command sessions.

    State machine: disconnected -> connecting -> connected -> disconnected.
    Sessions are not reconnected; callers create a new session per attempt.
    """

    def __init__(self, connect_timeout: Optional[float] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.connect_timeout = connect_timeout if connect_timeout is not None else Config.SSH_CONNECT_TIMEOUT
        self.cancel_event = cancel_event or threading.Event()
        self.state = SessionState.DISCONNECTED
        self.last_error: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    def describe(self) -> str:
        raise NotImplementedError

    def connect(self, config: Optional[SSHConnectionConfig]) -> bool:
        raise NotImplementedError

    def execute_command(self, command: str, env: Optional[Dict[str, str]] = None,
                        timeout: Optional[float] = None,
                        on_line: Optional[LineHandler] = None) -> CommandResult:
        raise NotImplementedError

    def cancel(self):
        """Abort the running command. The in-flight call returns an interrupted result."""
        self.cancel_event.set()

    def disconnect(self):
        raise NotImplementedError

    def _interruption(self, deadline: Optional[float], timeout: Optional[float]) -> Optional[str]:
        if self.cancel_event.is_set():
            return "Command cancelled"
        if deadline is not None and time.monotonic() >= deadline:
            return f"Command timed out after {timeout:g}s"
        return None


class SSHSession(Session):
    """
    Remote command session over SSH.

    Authenticates with a private key (optionally passphrase protected) or a
    password. Environment values are sent on the command's stdin so they never
    appear in the remote process listing.
    """

    def __init__(self, connect_timeout: Optional[float] = None,
                 cancel_event: Optional[threading.Event] = None):
        super().__init__(connect_timeout, cancel_event)
        self.ssh_client: Optional[SSHClient] = None
        self.target = None
        self._channel = None
        self._lock = threading.Lock()

    def describe(self) -> str:
        return self.target or 'ssh'

    def connect(self, config: SSHConnectionConfig) -> bool:
        """
        Establish the SSH connection.

        Returns:
            True when connected. Connection errors return False and are kept
            (masked) in last_error.
        """
        self.target = f"{config.username}@{config.host}:{config.port}"
        self.state = SessionState.CONNECTING

        try:
            connect_kwargs = {
                'hostname': config.host,
                'port': int(config.port),
                'username': config.username,
                'timeout': self.connect_timeout,
                'banner_timeout': self.connect_timeout,
                'auth_timeout': self.connect_timeout,
                'allow_agent': False,
                'look_for_keys': False,
            }

            # Use private key or password
            if config.private_key:
                connect_kwargs['pkey'] = load_private_key(config.private_key, config.passphrase)
            elif config.password:
                connect_kwargs['password'] = config.password
            else:
                raise ConnectionFailed("Either password or private_key must be provided")

            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)

        except paramiko.AuthenticationException as e:
            return self._connect_failed(f"SSH authentication failed: {e}", config)
        except paramiko.SSHException as e:
            return self._connect_failed(f"SSH connection failed: {e}", config)
        except ConnectionFailed as e:
            return self._connect_failed(str(e), config)
        except OSError as e:
            return self._connect_failed(f"Failed to connect to {config.host}: {e}", config)

        self.state = SessionState.CONNECTED
        logger.info(f"SSH connection established to {self.target}")
        return True

    def _connect_failed(self, message: str, config: SSHConnectionConfig) -> bool:
        self.last_error = mask_sensitive_data(message, config.secrets())
        logger.warning(self.last_error)
        self._close_client()
        self.state = SessionState.DISCONNECTED
        return False

    def execute_command(self, command: str, env: Optional[Dict[str, str]] = None,
                        timeout: Optional[float] = None,
                        on_line: Optional[LineHandler] = None) -> CommandResult:
        """
        Run one command to completion.

        Args:
            command: Shell command line (contains no secrets)
            env: Environment for the command, delivered on stdin
            timeout: Seconds before the command is aborted (None = unbounded)
            on_line: Called with (stream, line) for each output line as it arrives

        Raises:
            ConnectionFailed: If the session is not connected or the channel cannot be opened
        """
        if not self.is_connected or self.ssh_client is None:
            raise ConnectionFailed("Not connected to SSH server")

        transport = self.ssh_client.get_transport()
        if transport is None or not transport.is_active():
            self.state = SessionState.DISCONNECTED
            raise ConnectionFailed("SSH transport is no longer active")

        try:
            channel = transport.open_session()
        except paramiko.SSHException as e:
            raise ConnectionFailed(f"Failed to open SSH channel: {e}")

        with self._lock:
            self._channel = channel

        line = command
        if env:
            line = 'exec sh -c ' + shlex.quote(f'set -a; . /dev/stdin; set +a; {command}')

        stdout = _LineSplitter('stdout', on_line)
        stderr = _LineSplitter('stderr', on_line)
        deadline = time.monotonic() + timeout if timeout else None
        reason = None
        exit_code = -1

        try:
            channel.exec_command(line)
            if env:
                channel.sendall(env_payload(env).encode())
            # Non-interactive: close stdin
            channel.shutdown_write()

            while True:
                progressed = False
                if channel.recv_ready():
                    stdout.feed(channel.recv(_READ_SIZE))
                    progressed = True
                if channel.recv_stderr_ready():
                    stderr.feed(channel.recv_stderr(_READ_SIZE))
                    progressed = True
                if progressed:
                    continue

                if channel.exit_status_ready() or channel.closed:
                    # Output can land together with the exit status
                    while channel.recv_ready() or channel.recv_stderr_ready():
                        if channel.recv_ready():
                            stdout.feed(channel.recv(_READ_SIZE))
                        if channel.recv_stderr_ready():
                            stderr.feed(channel.recv_stderr(_READ_SIZE))
                    break

                reason = self._interruption(deadline, timeout)
                if reason:
                    break

                time.sleep(_POLL_INTERVAL)

            if reason is None:
                exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            reason = f"SSH channel error: {e}"
        finally:
            with self._lock:
                self._channel = None
            channel.close()

        if reason is None and self.cancel_event.is_set():
            reason = "Command cancelled"

        stdout.close()
        stderr.close()

        if reason:
            exit_code = -1
            interrupted = True
            stderr.chunks.append(f"{reason}\n")
        else:
            # -1 means the channel closed without reporting a status
            interrupted = exit_code == -1

        if not transport.is_active():
            self.state = SessionState.DISCONNECTED

        return CommandResult(
            stdout=stdout.text(),
            stderr=stderr.text(),
            exit_code=exit_code,
            interrupted=interrupted,
        )

    def cancel(self):
        super().cancel()
        with self._lock:
            channel = self._channel
        if channel is not None:
            channel.close()

    def disconnect(self):
        """Close the SSH connection. Safe to call repeatedly."""
        was_connected = self.is_connected
        self._close_client()
        self.state = SessionState.DISCONNECTED
        if was_connected:
            logger.info(f"SSH connection to {self.target} closed")

    def _close_client(self):
        if self.ssh_client is not None:
            try:
                self.ssh_client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.debug(f"Error while closing SSH client: {e}")
            self.ssh_client = None


class LocalSession(Session):
    """
    Command session on the controlling machine.

    Used in pull mode, where this machine runs the transfer client and
    reaches out to the remote host itself.
    """

    def __init__(self, connect_timeout: Optional[float] = None,
                 cancel_event: Optional[threading.Event] = None):
        super().__init__(connect_timeout, cancel_event)
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def describe(self) -> str:
        return 'local'

    def connect(self, config: Optional[SSHConnectionConfig] = None) -> bool:
        self.state = SessionState.CONNECTED
        return True

    def execute_command(self, command: str, env: Optional[Dict[str, str]] = None,
                        timeout: Optional[float] = None,
                        on_line: Optional[LineHandler] = None) -> CommandResult:
        if not self.is_connected:
            raise ConnectionFailed("Local session is not open")

        process_env = dict(os.environ)
        process_env.update(env or {})

        try:
            process = subprocess.Popen(
                ['/bin/sh', '-c', command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=process_env,
                start_new_session=True,
            )
        except OSError as e:
            return CommandResult(stdout='', stderr=f"Failed to start command: {e}\n", exit_code=127)

        with self._lock:
            self._process = process

        chunks: queue.Queue = queue.Queue()
        readers = [
            threading.Thread(target=_pump, args=('stdout', process.stdout, chunks), daemon=True),
            threading.Thread(target=_pump, args=('stderr', process.stderr, chunks), daemon=True),
        ]
        for reader in readers:
            reader.start()

        splitters = {
            'stdout': _LineSplitter('stdout', on_line),
            'stderr': _LineSplitter('stderr', on_line),
        }
        deadline = time.monotonic() + timeout if timeout else None
        open_streams = 2
        reason = None

        try:
            while open_streams:
                try:
                    stream, data = chunks.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    reason = self._interruption(deadline, timeout)
                    if reason:
                        _terminate(process)
                        break
                    continue

                if data is None:
                    open_streams -= 1
                else:
                    splitters[stream].feed(data)

            exit_code = process.wait()
        finally:
            with self._lock:
                self._process = None

        # Drain whatever the readers delivered before the process ended
        while True:
            try:
                stream, data = chunks.get_nowait()
            except queue.Empty:
                break
            if data is not None:
                splitters[stream].feed(data)

        if reason is None and self.cancel_event.is_set():
            reason = "Command cancelled"

        for splitter in splitters.values():
            splitter.close()

        if reason:
            splitters['stderr'].chunks.append(f"{reason}\n")
            exit_code = exit_code if exit_code else -1

        return CommandResult(
            stdout=splitters['stdout'].text(),
            stderr=splitters['stderr'].text(),
            exit_code=exit_code,
            interrupted=reason is not None,
        )

    def cancel(self):
        super().cancel()
        with self._lock:
            process = self._process
        if process is not None:
            _terminate(process)

    def disconnect(self):
        self.state = SessionState.DISCONNECTED


def _pump(stream: str, pipe, chunks: queue.Queue):
    """Copy raw chunks from a pipe into the queue; None marks end of stream."""
    try:
        for data in iter(lambda: os.read(pipe.fileno(), _READ_SIZE), b''):
            chunks.put((stream, data))
    except OSError as e:
        logger.debug(f"Reader for {stream} stopped: {e}")
    finally:
        pipe.close()
        chunks.put((stream, None))


def _terminate(process: subprocess.Popen, grace: float = _KILL_GRACE):
    """Kill the command's whole process group, escalating to SIGKILL after grace seconds."""
    if process.poll() is not None:
        return
    _signal_group(process, signal.SIGTERM)
    try:
        process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {process.pid} ignored SIGTERM, sending SIGKILL")
        _signal_group(process, signal.SIGKILL)


def _signal_group(process: subprocess.Popen, sig: int):
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        process.send_signal(sig)
