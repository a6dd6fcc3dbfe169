"""Node directory: resolve the nodes a command runs on."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable

import yaml

from .errors import ConfigError, NoNodesError

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5


@dataclass
class Defaults:
    """Default values that can be overridden per node."""

    user: str | None = None
    port: int = 22
    ssh_key: Path | None = None
    timeout: float = DEFAULT_CONNECT_TIMEOUT
    work_dir: str | None = None


@dataclass(frozen=True)
class NodeConfig:
    """Connection parameters for a single node."""

    name: str
    host: str
    port: int = 22
    user: str | None = None
    ssh_key: Path | None = None
    timeout: float = DEFAULT_CONNECT_TIMEOUT
    work_dir: str | None = None


@dataclass
class Config:
    """Contents of a node directory file."""

    nodes: list[NodeConfig]
    defaults: Defaults = field(default_factory=Defaults)
    clusters: dict[str, list[str]] = field(default_factory=dict)
    source_path: Path | None = None  # Path to the original config file


def load_config(config_path: str | Path) -> Config:
    """Load and validate a node directory from a YAML file."""
    config_path = Path(config_path).expanduser().resolve()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping at the top of {config_path}")

    config = _parse_config(raw)
    config.source_path = config_path
    logger.debug("Loaded %d nodes from %s", len(config.nodes), config_path)
    return config


def load_node_list(path: str | Path, defaults: Defaults | None = None) -> list[NodeConfig]:
    """Load nodes from a plain-text list.

    Each line holds ``<uuid> <name> <host>``; the name is used to label
    output and the host is connected to. Blank lines and ``#`` comments are
    skipped.
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Node list not found: {path}")

    defaults = defaults or Defaults()
    nodes = []
    for lineno, line in enumerate(path.read_text().splitlines(), start=1):
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        fields = line.split()
        if len(fields) < 3:
            raise ConfigError(
                f"{path}:{lineno}: expected '<uuid> <name> <host>', got {line!r}"
            )
        _uuid, name, host = fields[:3]
        nodes.append(_node_with_defaults(name, host, defaults))

    return nodes


def node_from_host(host: str, defaults: Defaults | None = None) -> NodeConfig:
    """Build a node for an address given directly on the command line."""
    return _node_with_defaults(host, host, defaults or Defaults())


def _node_with_defaults(name: str, host: str, defaults: Defaults) -> NodeConfig:
    return NodeConfig(
        name=name,
        host=host,
        port=defaults.port,
        user=defaults.user,
        ssh_key=defaults.ssh_key,
        timeout=defaults.timeout,
        work_dir=defaults.work_dir,
    )


def _parse_defaults(raw: dict[str, Any]) -> Defaults:
    """Parse the defaults section."""
    defaults_raw = raw.get("defaults") or {}
    if not isinstance(defaults_raw, dict):
        raise ConfigError("'defaults' must be a mapping")

    try:
        port = int(defaults_raw.get("port", 22))
        timeout = float(defaults_raw.get("timeout", DEFAULT_CONNECT_TIMEOUT))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"defaults: {e}") from e

    ssh_key_str = defaults_raw.get("ssh_key")
    return Defaults(
        user=defaults_raw.get("user"),
        port=port,
        ssh_key=Path(ssh_key_str).expanduser() if ssh_key_str else None,
        timeout=timeout,
        work_dir=defaults_raw.get("work_dir"),
    )


def _parse_config(raw: dict[str, Any]) -> Config:
    """Parse raw YAML data into Config object."""
    defaults = _parse_defaults(raw)

    nodes_raw = raw.get("nodes") or []
    if not isinstance(nodes_raw, list):
        raise ConfigError("'nodes' must be a list")

    nodes = []
    seen: set[str] = set()
    for node_raw in nodes_raw:
        node = _parse_node(node_raw, defaults)
        if node.name in seen:
            raise ConfigError(f"Duplicate node name '{node.name}'")
        seen.add(node.name)
        nodes.append(node)

    clusters = _parse_clusters(raw.get("clusters") or {}, seen)

    return Config(nodes=nodes, defaults=defaults, clusters=clusters)


def _parse_node(node_raw: Any, defaults: Defaults) -> NodeConfig:
    """Parse a single node configuration."""
    if isinstance(node_raw, str):
        # Bare host entry
        return node_from_host(node_raw, defaults)

    if not isinstance(node_raw, dict):
        raise ConfigError(f"Node entry must be a mapping or a host, got {node_raw!r}")

    host = node_raw.get("host")
    name = node_raw.get("name") or host
    if not name:
        raise ConfigError("Node must have a 'name' or 'host' field")
    if not host:
        raise ConfigError(f"Node '{name}' must have a 'host' field")

    # All these options inherit from defaults if not specified per-node
    ssh_key = defaults.ssh_key
    if node_raw.get("ssh_key"):
        ssh_key = Path(node_raw["ssh_key"]).expanduser()

    try:
        port = int(node_raw.get("port", defaults.port))
        timeout = float(node_raw.get("timeout", defaults.timeout))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Node '{name}': {e}") from e

    return NodeConfig(
        name=str(name),
        host=str(host),
        port=port,
        user=node_raw.get("user", defaults.user),
        ssh_key=ssh_key,
        timeout=timeout,
        work_dir=node_raw.get("work_dir", defaults.work_dir),
    )


def _parse_clusters(clusters_raw: Any, known: set[str]) -> dict[str, list[str]]:
    """Parse named node groups, checking every member is a known node."""
    if not isinstance(clusters_raw, dict):
        raise ConfigError("'clusters' must be a mapping of name to node list")

    clusters = {}
    for cluster, members in clusters_raw.items():
        members = list(members or [])
        unknown = [m for m in members if m not in known]
        if unknown:
            raise ConfigError(
                f"Cluster '{cluster}' references unknown nodes: {', '.join(unknown)}"
            )
        clusters[str(cluster)] = members

    return clusters


class NodeDirectory:
    """Ordered set of nodes for one invocation."""

    def __init__(
        self,
        config: Config | None = None,
        extra_nodes: Iterable[NodeConfig] = (),
    ):
        self.config = config
        self.extra_nodes = list(extra_nodes)

    def resolve(self, cluster: str | None = None) -> list[NodeConfig]:
        """Return the nodes to run on, in directory order.

        Raises NoNodesError when nothing is left to run on.
        """
        nodes: list[NodeConfig] = []
        if self.config is not None:
            if cluster is None:
                nodes.extend(self.config.nodes)
            else:
                if cluster not in self.config.clusters:
                    raise NoNodesError(f"Unknown cluster '{cluster}'")
                by_name = {node.name: node for node in self.config.nodes}
                nodes.extend(by_name[name] for name in self.config.clusters[cluster])
        elif cluster is not None:
            raise NoNodesError(f"Unknown cluster '{cluster}' (no node directory loaded)")

        seen = {node.name for node in nodes}
        for node in self.extra_nodes:
            if node.name in seen:
                logger.warning("Skipping duplicate node '%s'", node.name)
                continue
            seen.add(node.name)
            nodes.append(node)

        if not nodes:
            raise NoNodesError("No nodes to run on")

        return nodes


def apply_overrides(nodes: Iterable[NodeConfig], **overrides: Any) -> list[NodeConfig]:
    """Return copies of nodes with non-None overrides applied."""
    changes = {k: v for k, v in overrides.items() if v is not None}
    if not changes:
        return list(nodes)
    return [replace(node, **changes) for node in nodes]
