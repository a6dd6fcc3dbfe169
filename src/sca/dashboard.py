"""TUI Dashboard for sca."""

from __future__ import annotations

import asyncssh
from rich.text import Text
from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker, WorkerCancelled, WorkerFailed, WorkerState

from .config import NodeConfig
from .executor import Executor, OutputLine, RunSummary
from .session import Connector, NodeStatus


STATUS_ICONS = {
    NodeStatus.PENDING: ("·", "dim"),
    NodeStatus.CONNECTING: ("…", "yellow"),
    NodeStatus.RUNNING: ("▶", "yellow"),
    NodeStatus.SUCCESS: ("✔", "green"),
    NodeStatus.FAILED: ("✘", "red"),
}


def header_markup(node: NodeConfig, status: NodeStatus) -> str:
    """Markup for a node panel's title line."""
    icon, color = STATUS_ICONS.get(status, ("?", "white"))
    target = f"{node.user}@{node.host}" if node.user else node.host
    return f"[{color}]{icon}[/] [{color}][bold]{node.name}[/bold][/] [{color}]{target}:{node.port}[/]"


def line_style(line: OutputLine) -> str:
    """Rich style for a line of node output."""
    if line.is_header:
        return "bold cyan"
    return ""


class NodePanel(Static):
    """A panel displaying output for a single node."""

    status: reactive[NodeStatus] = reactive(NodeStatus.PENDING)

    def __init__(self, node: NodeConfig, **kwargs) -> None:
        super().__init__(**kwargs)
        self.node = node

    def compose(self) -> ComposeResult:
        yield Label(header_markup(self.node, self.status), classes="node-header")
        yield RichLog(highlight=False, markup=False, wrap=True, auto_scroll=True)

    def watch_status(self, status: NodeStatus) -> None:
        """Update header when status changes."""
        if not self.is_mounted:
            return
        self.query_one(Label).update(header_markup(self.node, status))

    def append_output(self, line: OutputLine) -> None:
        """Append a line of output to this panel."""
        # Remote text is not markup; wrap it so brackets print literally
        self.query_one(RichLog).write(Text(line.text, style=line_style(line)))

    def append_error(self, message: str) -> None:
        self.query_one(RichLog).write(Text(f"ERROR: {message}", style="bold red"))


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    failed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Complete"
        return (
            f"Progress: {self.completed}/{self.total} nodes complete "
            f"({self.failed} failed) | {status} | Press 'q' to quit"
        )


class NodeOutput(Message):
    """Message for node output."""

    def __init__(self, line: OutputLine) -> None:
        super().__init__()
        self.line = line


class NodeStatusChange(Message):
    """Message for node status change."""

    def __init__(self, node_name: str, status: NodeStatus) -> None:
        super().__init__()
        self.node_name = node_name
        self.status = status


class Dashboard(App):
    """One live panel per node while the command runs."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
    }

    NodePanel {
        border: solid $primary;
        height: 100%;
        min-height: 10;
    }

    NodePanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    NodePanel RichLog {
        height: 1fr;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(
        self,
        nodes: list[NodeConfig],
        command: str,
        quiet: bool = False,
        connect: Connector = asyncssh.connect,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.nodes = nodes
        self.command = command
        self.quiet = quiet
        self.connect = connect
        self.panels: dict[str, NodePanel] = {}
        self.executor: Executor | None = None
        self.summary: RunSummary | None = None
        self.error: BaseException | None = None
        self.quit_early = False
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        # Create panels for each node
        for index, node in enumerate(self.nodes):
            panel = NodePanel(node, id=f"panel-{index}")
            self.panels[node.name] = panel
            yield panel

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start execution when the app mounts."""
        self.title = f"sca: {self.command}"
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.total = len(self.nodes)

        self.executor = Executor(
            self.nodes,
            self.command,
            quiet=self.quiet,
            connect=self.connect,
            on_status=self._on_status,
        )

        # Runs on the app loop so cancelling the worker cancels the sessions
        self._worker = self.run_worker(
            self._run_execution(), exclusive=True, exit_on_error=False
        )

    async def _run_execution(self) -> RunSummary | None:
        """Run the executor and return its summary."""
        if self.executor:
            return await self.executor.run_all(on_output=self._on_output)
        return None

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        """Handle worker completion."""
        if event.worker is not self._worker:
            return
        if event.state == WorkerState.ERROR:
            self.error = event.worker.error
            self.query_one("#status-bar", StatusBar).running = False
            return
        if event.state != WorkerState.SUCCESS:
            return
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.running = False

        self.summary = event.worker.result
        if self.summary is None:
            return
        for name, outcome in self.summary.failed.items():
            reason = outcome.describe() if outcome else "did not finish"
            self.panels[name].append_error(reason)

    def _on_output(self, line: OutputLine) -> None:
        """Handle output from a node."""
        self.post_message(NodeOutput(line))

    def _on_status(self, node_name: str, status: NodeStatus) -> None:
        """Handle status change for a node."""
        self.post_message(NodeStatusChange(node_name, status))

    def on_node_output(self, message: NodeOutput) -> None:
        """Handle NodeOutput message."""
        panel = self.panels.get(message.line.node)
        if panel is not None:
            panel.append_output(message.line)

    def on_node_status_change(self, message: NodeStatusChange) -> None:
        """Handle NodeStatusChange message."""
        if message.node_name in self.panels:
            self.panels[message.node_name].status = message.status

        # Update completed count
        if message.status in (NodeStatus.SUCCESS, NodeStatus.FAILED):
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.completed += 1
            if message.status is NodeStatus.FAILED:
                status_bar.failed += 1

    async def action_quit(self) -> None:
        """Quit the application."""
        if self._worker and self._worker.is_running:
            self.quit_early = True
            self._worker.cancel()
            try:
                # Wait for the executor to close every session
                await self._worker.wait()
            except (WorkerCancelled, WorkerFailed):
                pass
        self.exit()
