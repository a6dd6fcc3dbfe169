#!/usr/bin/env python3
"""Main entry point for sca."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import TextIO

import asyncssh

from .collator import Collator
from .config import (
    Config,
    Defaults,
    NodeConfig,
    NodeDirectory,
    apply_overrides,
    load_config,
    load_node_list,
    node_from_host,
)
from .errors import ConfigError, NoNodesError
from .executor import DEFAULT_MARGIN, Executor, RunSummary
from .session import Connector

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/sca/nodes.yaml")
DEFAULT_IDENT_WIDTH = 15

# ANSI colors for different nodes
COLORS = [
    "\033[36m",  # Cyan
    "\033[33m",  # Yellow
    "\033[35m",  # Magenta
    "\033[32m",  # Green
    "\033[34m",  # Blue
    "\033[91m",  # Light Red
    "\033[96m",  # Light Cyan
    "\033[93m",  # Light Yellow
]
RESET = "\033[0m"


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sca",
        description="Run a command on every node of a cluster and collect the output",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to run on each node")

    nodes = parser.add_argument_group("nodes")
    nodes.add_argument(
        "-c",
        "--config",
        type=Path,
        help=f"YAML node directory (default: $SCA_CONFIG or {DEFAULT_CONFIG_PATH})",
    )
    nodes.add_argument("--cluster", help="Only run on the nodes of this cluster group")
    nodes.add_argument(
        "--node-list",
        type=Path,
        help="Plain-text node list, one '<uuid> <name> <host>' per line",
    )
    nodes.add_argument(
        "--node",
        dest="nodes",
        action="append",
        default=[],
        metavar="HOST",
        help="Additional node to run on (repeatable)",
    )

    ssh = parser.add_argument_group("connection")
    ssh.add_argument(
        "--timeout",
        type=_positive_float,
        help="Only wait this long in seconds for ssh connect (default: 5)",
    )
    ssh.add_argument("--user", help="Override SSH user for all nodes")
    ssh.add_argument("--key", type=Path, help="Override SSH key path for all nodes")
    workdir = ssh.add_mutually_exclusive_group()
    workdir.add_argument("--cwd", help="Remote directory to run the command in")
    workdir.add_argument(
        "--here",
        action="store_true",
        help="Run the command in the remote directory matching the local one",
    )

    output = parser.add_argument_group("output")
    mode = output.add_mutually_exclusive_group()
    mode.add_argument(
        "-m",
        "--merge",
        action="store_true",
        help="Collate the output of all nodes into a single time-ordered stream",
    )
    mode.add_argument(
        "--interleave",
        action="store_true",
        help="Print lines as they arrive, tagged with their node",
    )
    mode.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard",
    )
    output.add_argument(
        "-q", "--quiet", action="store_true", help="Don't display a banner for each node"
    )
    indent = output.add_mutually_exclusive_group()
    indent.add_argument(
        "--indent",
        default=DEFAULT_MARGIN,
        metavar="STR",
        help="String to indent output lines with (default: 8 spaces)",
    )
    indent.add_argument(
        "--no-indent",
        dest="indent",
        action="store_const",
        const="",
        help="Don't indent output",
    )
    output.add_argument(
        "--ident-width",
        type=int,
        default=DEFAULT_IDENT_WIDTH,
        help="Pad node names to this width in merged output",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if not verbose:
        # asyncssh logs every connection at INFO
        logging.getLogger("asyncssh").setLevel(logging.WARNING)


def _config_path(args: argparse.Namespace) -> Path | None:
    if args.config:
        return args.config
    env_path = os.environ.get("SCA_CONFIG")
    if env_path:
        return Path(env_path)
    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.exists() and not (args.node_list or args.nodes):
        return default
    return None


def resolve_nodes(args: argparse.Namespace) -> list[NodeConfig]:
    """Build the node set from the directory file, node list and --node flags."""
    config: Config | None = None
    config_path = _config_path(args)
    if config_path is not None:
        config = load_config(config_path)

    defaults = config.defaults if config else Defaults()
    extra: list[NodeConfig] = []
    if args.node_list:
        extra.extend(load_node_list(args.node_list, defaults))
    extra.extend(node_from_host(host, defaults) for host in args.nodes)

    nodes = NodeDirectory(config, extra).resolve(cluster=args.cluster)

    work_dir = os.getcwd() if args.here else args.cwd
    return apply_overrides(
        nodes,
        timeout=args.timeout,
        user=args.user,
        ssh_key=args.key.expanduser() if args.key else None,
        work_dir=work_dir,
    )


class NodeTagger:
    """Prefixes lines with a per-node colored tag."""

    def __init__(self, names: list[str], color: bool = True):
        self.color = color
        # Assign colors to nodes
        self.node_colors = {name: COLORS[i % len(COLORS)] for i, name in enumerate(names)}

    def tag(self, node_name: str, text: str) -> str:
        if not self.color:
            return f"[{node_name}] {text}"
        color = self.node_colors.get(node_name, "")
        return f"{color}[{node_name}]{RESET} {text}"


async def run_invocation(
    nodes: list[NodeConfig],
    command: str,
    merge: bool = False,
    interleave: bool = False,
    quiet: bool = False,
    margin: str = DEFAULT_MARGIN,
    ident_width: int = DEFAULT_IDENT_WIDTH,
    connect: Connector = asyncssh.connect,
    out: TextIO | None = None,
) -> RunSummary:
    """Run command on nodes and write the output in the selected mode."""
    out = out or sys.stdout

    def emit(text: str) -> None:
        print(text, file=out, flush=True)

    # Headers carry no timestamp and have no place in merged output
    executor = Executor(
        nodes, command, quiet=quiet or merge, margin=margin, connect=connect
    )
    async with executor:
        if merge:
            async for record in Collator().merge(executor.streams()):
                emit(record.format(ident_width))
        elif interleave:
            tagger = NodeTagger([node.name for node in nodes], color=out.isatty())
            async for line in executor.lines():
                emit(tagger.tag(line.node, executor.format_line(line)))
        else:
            # Grouped: each node's block in turn; later nodes keep running
            # and wait in their queues
            for stream in executor.streams().values():
                async for line in stream:
                    emit(executor.format_line(line))
        return await executor.wait()


def report_failures(summary: RunSummary, err: TextIO | None = None) -> None:
    err = err or sys.stderr
    failures = summary.failure_lines()
    if failures:
        print(f"\nFailed nodes ({len(failures)}/{len(summary.states)}):", file=err)
        for line in failures:
            print(f"  {line}", file=err)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    words = args.command
    if words and words[0] == "--":
        words = words[1:]
    command = " ".join(words).strip()
    if not command:
        parser.error("no command given")

    try:
        nodes = resolve_nodes(args)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except NoNodesError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    logger.debug("Resolved nodes: %s", ", ".join(node.name for node in nodes))

    # Validate all SSH keys exist
    ssh_keys = {node.ssh_key for node in nodes if node.ssh_key}
    for ssh_key in ssh_keys:
        if not ssh_key.exists():
            print(f"Error: SSH key not found: {ssh_key}", file=sys.stderr)
            return 2

    if args.dashboard:
        return _run_dashboard(nodes, command, args)

    try:
        summary = asyncio.run(
            run_invocation(
                nodes,
                command,
                merge=args.merge,
                interleave=args.interleave,
                quiet=args.quiet,
                margin=args.indent,
                ident_width=args.ident_width,
            )
        )
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130

    report_failures(summary)
    return summary.exit_code


def _run_dashboard(nodes: list[NodeConfig], command: str, args: argparse.Namespace) -> int:
    """Run executor behind the TUI dashboard."""
    from .dashboard import Dashboard

    app = Dashboard(nodes, command, quiet=args.quiet)
    app.run()

    if app.error is not None:
        print(f"Error: dashboard run failed: {app.error}", file=sys.stderr)
        return 1
    if app.summary is None:
        # Quit before every node finished
        return 130
    report_failures(app.summary)
    return app.summary.exit_code


if __name__ == "__main__":
    sys.exit(main())
