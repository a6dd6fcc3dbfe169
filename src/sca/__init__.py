"""sca: Run a command on every node of a cluster and collate the output."""

from .collator import CollatedRecord, Collator, TimestampContext, parse_timestamp
from .config import Config, Defaults, NodeConfig, NodeDirectory, load_config, load_node_list
from .errors import ConfigError, NoNodesError, ScaError
from .executor import Executor, NodeState, OutputLine, RunSummary
from .session import NodeStatus, Outcome, OutcomeKind, SessionRunner

__all__ = [
    "CollatedRecord",
    "Collator",
    "TimestampContext",
    "parse_timestamp",
    "Config",
    "Defaults",
    "NodeConfig",
    "NodeDirectory",
    "load_config",
    "load_node_list",
    "ConfigError",
    "NoNodesError",
    "ScaError",
    "Executor",
    "NodeState",
    "OutputLine",
    "RunSummary",
    "NodeStatus",
    "Outcome",
    "OutcomeKind",
    "SessionRunner",
]
