"""Tests for the command-line front end."""

import io
from pathlib import Path

import pytest

from sca import runner
from sca.config import NodeConfig
from sca.executor import NodeState, RunSummary
from sca.session import Outcome, OutcomeKind


def parse(*argv):
    return runner.build_parser().parse_args(list(argv))


class TestRunInvocation:
    """Test the three output modes end to end over a fake transport."""

    @pytest.mark.asyncio
    async def test_grouped_raw_output(self, transport, make_node):
        """Each node's block is one header then its indented lines"""
        transport.script("a", ["a1", "a2"])
        transport.script("b", ["b1"])
        out = io.StringIO()

        summary = await runner.run_invocation(
            [make_node("a"), make_node("b")],
            "ls",
            margin="  ",
            connect=transport.connect,
            out=out,
        )

        assert out.getvalue().splitlines() == [
            "Running (ls) a",
            "  a1",
            "  a2",
            "Running (ls) b",
            "  b1",
        ]
        assert summary.ok

    @pytest.mark.asyncio
    async def test_quiet_raw_output(self, transport, make_node):
        transport.script("a", ["a1"])
        out = io.StringIO()

        await runner.run_invocation(
            [make_node("a")], "ls", quiet=True, margin="", connect=transport.connect, out=out
        )

        assert out.getvalue() == "a1\n"

    @pytest.mark.asyncio
    async def test_merged_output(self, transport, make_node):
        """Merge mode prints timestamp, node, text in time order"""
        transport.script(
            "A", ["2024-01-01 00:00:01 start", "idle", "2024-01-01 00:00:03 end"]
        )
        transport.script("B", ["2024-01-01 00:00:02 tick"])
        out = io.StringIO()

        await runner.run_invocation(
            [make_node("A"), make_node("B")],
            "tail log",
            merge=True,
            ident_width=0,
            connect=transport.connect,
            out=out,
        )

        assert out.getvalue().splitlines() == [
            "2024-01-01 00:00:01 A start",
            "2024-01-01 00:00:01 A idle",
            "2024-01-01 00:00:02 B tick",
            "2024-01-01 00:00:03 A end",
        ]

    @pytest.mark.asyncio
    async def test_merged_output_includes_failed_node_lines(self, transport, make_node):
        """A failing node's lines are merged and its failure reported"""
        transport.script("A", ["2024-01-01 00:00:01 ok"])
        transport.script("B", ["2024-01-01 00:00:00 dying"], exit_status=1)
        out = io.StringIO()

        summary = await runner.run_invocation(
            [make_node("A"), make_node("B")],
            "tail log",
            merge=True,
            ident_width=3,
            connect=transport.connect,
            out=out,
        )

        assert out.getvalue().splitlines() == [
            "2024-01-01 00:00:00 B   dying",
            "2024-01-01 00:00:01 A   ok",
        ]
        assert list(summary.failed) == ["B"]

    @pytest.mark.asyncio
    async def test_interleaved_output_is_tagged(self, transport, make_node):
        transport.script("a", ["a1"])
        out = io.StringIO()

        await runner.run_invocation(
            [make_node("a")],
            "ls",
            interleave=True,
            margin="",
            connect=transport.connect,
            out=out,
        )

        assert out.getvalue().splitlines() == ["[a] Running (ls) a", "[a] a1"]


class TestNodeTagger:
    def test_colors_cycle_per_node(self):
        tagger = runner.NodeTagger(["a", "b"])
        assert tagger.tag("a", "x") == f"{runner.COLORS[0]}[a]{runner.RESET} x"
        assert tagger.tag("b", "x") == f"{runner.COLORS[1]}[b]{runner.RESET} x"

    def test_plain(self):
        assert runner.NodeTagger(["a"], color=False).tag("a", "x") == "[a] x"


class TestResolveNodes:
    """Test building the node set from arguments."""

    def test_config_and_extra_nodes(self, tmp_path):
        config = tmp_path / "nodes.yaml"
        config.write_text("defaults: {user: ops}\nnodes:\n  - {name: a, host: h1}\n")

        nodes = runner.resolve_nodes(parse("-c", str(config), "--node", "h9", "uptime"))

        assert [(n.name, n.host, n.user) for n in nodes] == [
            ("a", "h1", "ops"),
            ("h9", "h9", "ops"),
        ]

    def test_env_config(self, tmp_path, monkeypatch):
        config = tmp_path / "nodes.yaml"
        config.write_text("nodes: [h1, h2]\n")
        monkeypatch.setenv("SCA_CONFIG", str(config))

        nodes = runner.resolve_nodes(parse("uptime"))

        assert [n.name for n in nodes] == ["h1", "h2"]

    def test_overrides(self, tmp_path):
        nodes = runner.resolve_nodes(
            parse("--node", "h1", "--timeout", "0.5", "--user", "me", "--cwd", "/srv", "ls")
        )

        assert nodes == [
            NodeConfig("h1", "h1", user="me", timeout=0.5, work_dir="/srv")
        ]

    def test_here_uses_local_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        nodes = runner.resolve_nodes(parse("--node", "h1", "--here", "ls"))
        assert nodes[0].work_dir == str(tmp_path)

    def test_no_nodes(self):
        with pytest.raises(runner.NoNodesError):
            runner.resolve_nodes(parse("uptime"))


class TestParser:
    def test_command_keeps_its_options(self):
        args = parse("-m", "--node", "h1", "tail", "-n", "5", "/var/log/syslog")
        assert args.merge
        assert args.command == ["tail", "-n", "5", "/var/log/syslog"]

    def test_indent_defaults_to_eight_spaces(self):
        assert parse("ls").indent == " " * 8

    def test_no_indent(self):
        assert parse("--no-indent", "ls").indent == ""

    def test_custom_indent(self):
        assert parse("--indent", "> ", "ls").indent == "> "

    def test_fractional_timeout(self):
        assert parse("--timeout", "2.5", "ls").timeout == 2.5

    @pytest.mark.parametrize("value", ["0", "-1", "soon"])
    def test_timeout_must_be_positive(self, value, capsys):
        """A zero, negative or non-numeric timeout is a usage error"""
        with pytest.raises(SystemExit) as exc:
            parse("--timeout", value, "ls")
        assert exc.value.code == 2
        assert "--timeout" in capsys.readouterr().err


def summary_with(**outcomes) -> RunSummary:
    return RunSummary(
        states={
            name: NodeState(config=NodeConfig(name, name), outcome=outcome)
            for name, outcome in outcomes.items()
        }
    )


class TestMain:
    """Test exit codes and the failure report."""

    def test_no_nodes_exit_code(self, capsys):
        assert runner.main(["uptime"]) == 2
        assert "No nodes" in capsys.readouterr().err

    def test_missing_config(self, tmp_path, capsys):
        assert runner.main(["-c", str(tmp_path / "nope.yaml"), "uptime"]) == 2
        assert "Config file not found" in capsys.readouterr().err

    def test_invalid_defaults(self, tmp_path, capsys):
        """Bad values in the defaults section are reported, not raised"""
        config = tmp_path / "nodes.yaml"
        config.write_text("defaults: {timeout: soon}\nnodes: [h1]\n")

        assert runner.main(["-c", str(config), "uptime"]) == 2
        assert "Configuration error" in capsys.readouterr().err

    def test_missing_key(self, tmp_path, capsys):
        code = runner.main(["--node", "h1", "--key", str(tmp_path / "id_none"), "ls"])
        assert code == 2
        assert "SSH key not found" in capsys.readouterr().err

    def test_no_command(self):
        with pytest.raises(SystemExit):
            runner.main(["--node", "h1"])

    def test_failures_reported_on_stderr(self, monkeypatch, capsys):
        seen = {}

        async def fake_run(nodes, command, **kwargs):
            seen["command"] = command
            seen["kwargs"] = kwargs
            return summary_with(
                h1=Outcome.success(),
                h2=Outcome(OutcomeKind.CONNECT_TIMEOUT, message="no connection after 5s"),
            )

        monkeypatch.setattr(runner, "run_invocation", fake_run)

        code = runner.main(["--node", "h1", "--node", "h2", "-m", "--", "uptime", "-p"])

        captured = capsys.readouterr()
        assert code == 1
        assert seen["command"] == "uptime -p"
        assert seen["kwargs"]["merge"] is True
        assert captured.out == ""
        assert "h2: connect_timeout: no connection after 5s" in captured.err
        assert "h1" not in captured.err

    def test_all_succeeded(self, monkeypatch, capsys):
        async def fake_run(nodes, command, **kwargs):
            return summary_with(h1=Outcome.success())

        monkeypatch.setattr(runner, "run_invocation", fake_run)

        assert runner.main(["--node", "h1", "true"]) == 0
        assert capsys.readouterr().err == ""


class TestReportFailures:
    def test_not_finished(self):
        err = io.StringIO()
        runner.report_failures(summary_with(a=None), err)
        assert "a: did not finish" in err.getvalue()

    def test_silent_when_ok(self):
        err = io.StringIO()
        runner.report_failures(summary_with(a=Outcome.success()), err)
        assert err.getvalue() == ""


class FakeDashboard:
    """Stands in for the TUI; ``run`` leaves the given end state."""

    summary = None
    error = None

    def __init__(self, nodes, command, quiet=False):
        self.nodes = nodes
        self.command = command

    def run(self):
        pass


class TestRunDashboard:
    """Test exit codes after the dashboard closes."""

    def run_with(self, monkeypatch, **state):
        import sca.dashboard

        app_class = type("Finished", (FakeDashboard,), state)
        monkeypatch.setattr(sca.dashboard, "Dashboard", app_class)
        return runner.main(["--node", "h1", "--dashboard", "uptime"])

    def test_worker_error(self, monkeypatch, capsys):
        """A crashed run is an error, not an interrupted one"""
        code = self.run_with(monkeypatch, error=RuntimeError("boom"))

        assert code == 1
        assert "dashboard run failed: boom" in capsys.readouterr().err

    def test_quit_early(self, monkeypatch):
        assert self.run_with(monkeypatch) == 130

    def test_finished_run(self, monkeypatch, capsys):
        summary = summary_with(h1=Outcome(OutcomeKind.REMOTE_NON_ZERO_EXIT, exit_code=3))

        assert self.run_with(monkeypatch, summary=summary) == 1
        assert "h1:" in capsys.readouterr().err
