"""Fan-out execution engine for sca."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterable

import asyncssh

from .config import NodeConfig
from .errors import NoNodesError
from .session import Connector, NodeStatus, Outcome, OutcomeKind, SessionRunner

logger = logging.getLogger(__name__)

DEFAULT_MARGIN = " " * 8
DEFAULT_QUEUE_SIZE = 1024


@dataclass(frozen=True)
class OutputLine:
    """One line of output attributed to the node that produced it."""

    node: str
    text: str
    seq: int
    is_header: bool = False


@dataclass
class NodeState:
    """Runtime state for a node."""

    config: NodeConfig
    status: NodeStatus = NodeStatus.PENDING
    outcome: Outcome | None = None
    line_count: int = 0


@dataclass
class RunSummary:
    """Per-node outcomes of one invocation."""

    states: dict[str, NodeState]

    @property
    def failed(self) -> dict[str, Outcome | None]:
        """Nodes that did not succeed; None means the session never finished."""
        return {
            name: state.outcome
            for name, state in self.states.items()
            if state.outcome is None or not state.outcome.ok
        }

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def failure_lines(self) -> list[str]:
        lines = []
        for name, outcome in self.failed.items():
            reason = outcome.describe() if outcome else "did not finish"
            lines.append(f"{name}: {reason}")
        return lines


# Type alias for callbacks
OutputCallback = Callable[[OutputLine], None]
StatusCallback = Callable[[str, NodeStatus], None]  # (node_name, status) -> None

# Marks the end of a node's queue
_END = object()


class Executor:
    """Runs one command concurrently on many nodes.

    Each node gets its own task and its own bounded queue; a node whose
    consumer falls behind blocks on its queue instead of growing memory.
    Output is read either as the union of all nodes with ``lines()`` or
    per node with ``streams()`` (not both). Use as an async context manager
    so outstanding sessions are cancelled on exit::

        async with Executor(nodes, "uptime") as executor:
            async for line in executor.lines():
                print(executor.format_line(line))
        summary = executor.summary()
    """

    def __init__(
        self,
        nodes: Iterable[NodeConfig],
        command: str,
        quiet: bool = False,
        margin: str = DEFAULT_MARGIN,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        connect: Connector = asyncssh.connect,
        on_status: StatusCallback | None = None,
    ):
        self.nodes = list(nodes)
        if not self.nodes:
            raise NoNodesError("No nodes to run on")
        if queue_size < 1:
            raise ValueError(f"queue_size must be positive, got {queue_size}")

        self.command = command
        self.quiet = quiet
        self.margin = margin
        self.queue_size = queue_size
        self.on_status = on_status
        self.states: dict[str, NodeState] = {}
        self._connect = connect
        self._queues: dict[str, asyncio.Queue] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def header_for(self, node: NodeConfig) -> str:
        command = self.command.replace("\n", "; ")
        return f"Running ({command}) {node.name}"

    def format_line(self, line: OutputLine) -> str:
        """Display form of a line: headers as-is, output behind the margin."""
        if line.is_header:
            return line.text
        return f"{self.margin}{line.text}"

    def _emit_status(self, node_name: str, status: NodeStatus) -> None:
        """Emit status change for a node."""
        self.states[node_name].status = status
        if self.on_status:
            self.on_status(node_name, status)

    def start(self) -> None:
        """Dispatch one session task per node."""
        if self._tasks:
            raise RuntimeError("Executor has already been started")

        logger.debug("Running %r on %d nodes", self.command, len(self.nodes))
        for node in self.nodes:
            self.states[node.name] = NodeState(config=node)
            queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
            self._queues[node.name] = queue
            self._tasks[node.name] = asyncio.create_task(
                self._run_node(node, queue), name=f"sca-session-{node.name}"
            )

    async def cancel(self) -> None:
        """Cancel every unfinished session and wait for them to unwind."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            logger.debug("Cancelling %d outstanding sessions", len(tasks))
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def __aenter__(self) -> Executor:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.cancel()

    async def _run_node(self, node: NodeConfig, queue: asyncio.Queue) -> None:
        """Run the command on a single node, feeding its queue."""
        state = self.states[node.name]
        seq = 0

        if not self.quiet:
            await queue.put(
                OutputLine(node.name, self.header_for(node), seq, is_header=True)
            )
            seq += 1

        session = SessionRunner(
            node,
            self.command,
            connect=self._connect,
            on_status=lambda status: self._emit_status(node.name, status),
        )
        try:
            async for text in session.lines():
                await queue.put(OutputLine(node.name, text, seq))
                seq += 1
            state.outcome = session.outcome
        except Exception as e:
            # A broken session must not take its siblings down with it
            logger.exception("%s: session crashed", node.name)
            state.outcome = Outcome(OutcomeKind.TRANSPORT_ERROR, message=repr(e))
            self._emit_status(node.name, NodeStatus.FAILED)
        finally:
            state.line_count = seq

        await queue.put(_END)

    async def lines(self) -> AsyncIterator[OutputLine]:
        """Yield lines from all nodes as soon as any node produces one."""
        queues = self._queues
        pending = {
            asyncio.ensure_future(queue.get()): name for name, queue in queues.items()
        }
        try:
            while pending:
                done, _ = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for fut in done:
                    name = pending.pop(fut)
                    item = fut.result()
                    if item is _END:
                        continue
                    yield item
                    pending[asyncio.ensure_future(queues[name].get())] = name
        finally:
            for fut in pending:
                fut.cancel()

    def streams(self) -> dict[str, AsyncIterator[OutputLine]]:
        """One ordered line stream per node, in directory order."""
        return {name: self._drain(queue) for name, queue in self._queues.items()}

    @staticmethod
    async def _drain(queue: asyncio.Queue) -> AsyncIterator[OutputLine]:
        while True:
            item = await queue.get()
            if item is _END:
                return
            yield item

    async def wait(self) -> RunSummary:
        """Wait for every session to reach a terminal state."""
        await asyncio.gather(*self._tasks.values())
        return self.summary()

    def summary(self) -> RunSummary:
        return RunSummary(states=dict(self.states))

    async def run_all(self, on_output: OutputCallback | None = None) -> RunSummary:
        """Run on all nodes, passing each line to ``on_output`` as it arrives."""
        async with self:
            async for line in self.lines():
                if on_output:
                    on_output(line)
            return await self.wait()
