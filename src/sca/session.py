"""Run one command on one node over SSH."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

import asyncssh

from .config import NodeConfig

logger = logging.getLogger(__name__)


class NodeStatus(Enum):
    """Lifecycle of a node's session."""

    PENDING = "pending"
    CONNECTING = "connecting"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class OutcomeKind(Enum):
    """How a session ended."""

    SUCCESS = "success"
    CONNECT_TIMEOUT = "connect_timeout"
    TRANSPORT_ERROR = "transport_error"
    REMOTE_NON_ZERO_EXIT = "remote_non_zero_exit"


@dataclass(frozen=True)
class Outcome:
    """Terminal outcome of a session."""

    kind: OutcomeKind
    exit_code: int | None = None
    message: str = ""

    @classmethod
    def success(cls, exit_code: int = 0) -> Outcome:
        return cls(OutcomeKind.SUCCESS, exit_code=exit_code)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    def describe(self) -> str:
        """Short human-readable form used in failure summaries."""
        if self.kind is OutcomeKind.REMOTE_NON_ZERO_EXIT:
            return f"{self.kind.value} (exit {self.exit_code})"
        if self.message:
            return f"{self.kind.value}: {self.message}"
        return self.kind.value


# (host, **options) -> connection; asyncssh.connect in production
Connector = Callable[..., Awaitable[Any]]
StatusCallback = Callable[[NodeStatus], None]


class SessionRunner:
    """Executes a command on one node and streams its output lines.

    ``lines()`` is an async generator yielding the remote output one line
    at a time, in the order the remote process wrote it. When it finishes,
    ``outcome`` holds the terminal Outcome. Connection and process are
    closed on every exit path, including cancellation.
    """

    def __init__(
        self,
        node: NodeConfig,
        command: str,
        connect: Connector = asyncssh.connect,
        on_status: StatusCallback | None = None,
    ):
        self.node = node
        self.command = command
        self.on_status = on_status
        self.status = NodeStatus.PENDING
        self.outcome: Outcome | None = None
        self._connect = connect
        self._started = False

    def _set_status(self, status: NodeStatus) -> None:
        self.status = status
        if self.on_status:
            self.on_status(status)

    def _finish(self, outcome: Outcome) -> None:
        self.outcome = outcome
        if outcome.ok:
            logger.debug("%s: exited with status %s", self.node.name, outcome.exit_code)
            self._set_status(NodeStatus.SUCCESS)
        else:
            logger.warning("%s: %s", self.node.name, outcome.describe())
            self._set_status(NodeStatus.FAILED)

    @property
    def remote_command(self) -> str:
        """Command line sent to the remote shell."""
        # Prepend cd to work_dir so relative paths resolve there
        if self.node.work_dir:
            return f"cd {shlex.quote(self.node.work_dir)} && {self.command}"
        return self.command

    def _connect_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {
            "port": self.node.port,
            "known_hosts": None,  # Host key checking is left to the operator
        }
        if self.node.user:
            options["username"] = self.node.user
        if self.node.ssh_key:
            options["client_keys"] = [str(self.node.ssh_key)]
        return options

    async def lines(self) -> AsyncIterator[str]:
        """Yield output lines; sets ``outcome`` when the session ends."""
        if self._started:
            raise RuntimeError(f"Session for {self.node.name} has already run")
        self._started = True

        node = self.node
        self._set_status(NodeStatus.CONNECTING)
        logger.debug("%s: connecting to %s:%s", node.name, node.host, node.port)

        try:
            conn = await asyncio.wait_for(
                self._connect(node.host, **self._connect_options()),
                timeout=node.timeout,
            )
        except asyncio.TimeoutError:
            self._finish(
                Outcome(
                    OutcomeKind.CONNECT_TIMEOUT,
                    message=f"no connection after {node.timeout:g}s",
                )
            )
            return
        except (asyncssh.Error, OSError) as e:
            self._finish(Outcome(OutcomeKind.TRANSPORT_ERROR, message=str(e)))
            return

        self._set_status(NodeStatus.RUNNING)
        try:
            async with conn:
                async with conn.create_process(
                    self.remote_command,
                    stderr=asyncssh.STDOUT,
                    encoding="utf-8",
                    errors="replace",
                ) as proc:
                    while True:
                        line = await proc.stdout.readline()
                        if not line:
                            break
                        yield line.rstrip("\r\n")

                    await proc.wait()
                    exit_status = proc.exit_status
        except (asyncssh.Error, OSError) as e:
            self._finish(Outcome(OutcomeKind.TRANSPORT_ERROR, message=str(e)))
            return

        if exit_status is None:
            self._finish(
                Outcome(
                    OutcomeKind.TRANSPORT_ERROR,
                    message="channel closed without an exit status",
                )
            )
        elif exit_status != 0:
            self._finish(
                Outcome(OutcomeKind.REMOTE_NON_ZERO_EXIT, exit_code=exit_status)
            )
        else:
            self._finish(Outcome.success(exit_status))
