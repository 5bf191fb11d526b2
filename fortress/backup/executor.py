"""
Backup executor - one job invocation's session and log stream.

The executor owns exactly one session (SSH, or local in pull mode), masks
every message before it is emitted, classifies tool output into
ExecutionLog entries as it arrives, and forwards them to subscribed sinks.
"""

import logging
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional

from fortress.config import Config
from fortress.utils.masking import mask_sensitive_data
from .logs import LogSink
from .session import LocalSession, Session, SSHSession
from .tools import BackupTool, Command, KEYFILE_PLACEHOLDER
from .types import CommandResult, ExecutionLog, LogType, SSHConnectionConfig


logger = logging.getLogger(__name__)

# Environment variables whose values are credentials
_SECRET_ENV = re.compile(r"PASS|KEY|SECRET|TOKEN|CREDENTIALS")


class TeardownOwner(str, Enum):
    """Party responsible for closing a connection."""
    INITIATOR = 'initiator'
    REMOTE_PULLER = 'remote_puller'


class ConnectionLease:
    """
    Result of BackupExecutor.connect().

    Truthy when the connection is up. `owner` states who must tear it down:
    the initiating runner, or (pull mode) whichever side completes the transfer.
    """

    def __init__(self, executor: 'BackupExecutor', connected: bool, owner: TeardownOwner):
        self.executor = executor
        self.connected = connected
        self.owner = owner

    def __bool__(self):
        return self.connected

    @property
    def active(self) -> bool:
        return self.connected and self.executor.is_connected

    def release(self):
        """Tear down the connection. Safe to call repeatedly."""
        self.executor.disconnect()
        self.connected = False

    def __repr__(self):
        return f'<ConnectionLease connected={self.connected} owner={self.owner.value}>'


class BackupExecutor:
    """
    Stateful wrapper around one session, bound to a single job invocation.
    """

    def __init__(self, pull_mode: bool = False, sink: Optional[LogSink] = None,
                 connect_timeout: Optional[float] = None,
                 command_timeout: Optional[float] = None,
                 cancel_event: Optional[threading.Event] = None,
                 session: Optional[Session] = None):
        """
        Initialize backup executor.

        Args:
            pull_mode: Run commands on this machine, pulling from the remote host
            sink: Optional log sink receiving every ExecutionLog as it is emitted
            connect_timeout: SSH connect timeout (defaults to Config.SSH_CONNECT_TIMEOUT)
            command_timeout: Per-command timeout (defaults to Config.COMMAND_TIMEOUT)
            cancel_event: Setting this event aborts the running command
            session: Pre-built session (mainly for tests)
        """
        self.pull_mode = pull_mode
        self.cancel_event = cancel_event or threading.Event()
        self.command_timeout = command_timeout if command_timeout is not None else Config.COMMAND_TIMEOUT

        session_class = LocalSession if pull_mode else SSHSession
        self.session = session or session_class(connect_timeout, self.cancel_event)

        self.logs: List[ExecutionLog] = []
        self.errors: List[str] = []
        self.tool: Optional[BackupTool] = None
        self.lease: Optional[ConnectionLease] = None
        self._sinks: List[LogSink] = [sink] if sink else []
        self._secrets = set()

    @property
    def is_connected(self) -> bool:
        return self.session.is_connected

    def subscribe(self, sink: LogSink):
        """Add a log sink. Entries are delivered in emission order."""
        self._sinks.append(sink)

    def register_secret(self, *values):
        """Values that must be masked out of every log and error message."""
        self._secrets.update(v for v in values if v)

    def mask(self, message: str) -> str:
        return mask_sensitive_data(message, self._secrets)

    def log(self, type: LogType, message: str):
        """
        Emit a log entry.

        Args:
            type: ExecutionLog type
            message: Message text (masked before it is stored or delivered)
        """
        entry = ExecutionLog(type=LogType(type), message=self.mask(message),
                             timestamp=datetime.now(timezone.utc))
        self.logs.append(entry)
        logger.debug(f"[{entry.type.value}] {entry.message}")
        for sink in list(self._sinks):
            try:
                sink(entry)
            except Exception as e:
                # A broken subscriber must not abort the job
                logger.warning(f"Dropping log sink after delivery failure: {e.__class__.__name__}: {e}")
                self._sinks.remove(sink)

    def add_error(self, message: str):
        self.errors.append(self.mask(message))

    def connect(self, config: SSHConnectionConfig) -> ConnectionLease:
        """
        Open the session.

        Returns:
            ConnectionLease, truthy on success. In pull mode teardown ownership
            belongs to the remote puller rather than the initiating runner.
        """
        self.register_secret(*config.secrets())

        if self.pull_mode:
            self.log(LogType.INFO, f"Running in local mode, pulling from {config.username}@{config.host}")
        else:
            self.log(LogType.SSH, f"Connecting to {config.username}@{config.host}:{config.port}...")

        connected = self.session.connect(config)
        owner = TeardownOwner.REMOTE_PULLER if self.pull_mode else TeardownOwner.INITIATOR

        if connected:
            if not self.pull_mode:
                self.log(LogType.SUCCESS, "SSH connection established")
        else:
            reason = self.session.last_error or 'unknown error'
            self.log(LogType.ERROR, f"SSH connection failed: {reason}")
            self.add_error(reason)

        self.lease = ConnectionLease(self, connected, owner)
        return self.lease

    def run(self, command: Command, key_material: Optional[str] = None,
            timeout: Optional[float] = None, stream_stdout: bool = True) -> CommandResult:
        """
        Execute a synthesized command, streaming classified output to the log.

        Args:
            command: Command from a tool builder
            key_material: Private key (text or path on this machine) substituted
                for the key file placeholder
            timeout: Override of the executor's command timeout
            stream_stdout: Log stdout lines as they arrive. Disabled for
                listings, whose stdout is machine-readable JSON

        Raises:
            ValueError: If the command needs a key file and no key was given
            ConnectionFailed: If the session is not connected
        """
        self.register_secret(*(
            value for name, value in command.env.items() if _SECRET_ENV.search(name)
        ))
        self.log(LogType.CMD, f"Executing: {command.describe()}")

        line = command.line
        temp_keyfile = None
        if KEYFILE_PLACEHOLDER in line:
            if not key_material:
                raise ValueError("Local rsync execution requires an SSH private key")
            if key_material.lstrip().startswith('-----'):
                temp_keyfile = write_keyfile(key_material)
                keyfile = temp_keyfile
            else:
                keyfile = str(Path(key_material).expanduser())
            line = line.replace(KEYFILE_PLACEHOLDER, keyfile)

        try:
            return self.session.execute_command(
                line,
                env=command.env,
                timeout=timeout if timeout is not None else self.command_timeout,
                on_line=self._on_line if stream_stdout else self._on_stderr_line,
            )
        finally:
            if temp_keyfile:
                _remove_keyfile(temp_keyfile)

    def _on_stderr_line(self, stream: str, line: str):
        if stream == 'stderr':
            self._on_line(stream, line)

    def _on_line(self, stream: str, line: str):
        if self.tool is not None:
            type = self.tool.classify_line(stream, line)
        else:
            type = LogType.ERROR if stream == 'stderr' else LogType.INFO
        self.log(type, line)

    def cancel(self):
        """Abort the in-flight command; it returns an interrupted CommandResult."""
        self.log(LogType.INFO, "Cancellation requested")
        self.session.cancel()

    def disconnect(self):
        """Close the session. Safe on closed or never-opened sessions."""
        if self.session.is_connected:
            self.session.disconnect()
            self.log(LogType.INFO, "SSH connection closed" if not self.pull_mode else "Local session closed")


def write_keyfile(key_material: str) -> str:
    """Write key material to a private (0600) temporary file and return its path."""
    os.makedirs(Config.KEYFILE_DIR, exist_ok=True)
    fd, path = tempfile.mkstemp(prefix='fortress_key_', dir=Config.KEYFILE_DIR)
    with os.fdopen(fd, 'w') as f:
        f.write(key_material if key_material.endswith('\n') else key_material + '\n')
    os.chmod(path, 0o600)
    return path


def _remove_keyfile(path: str):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove temporary key file: {e}")
