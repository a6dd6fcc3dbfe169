"""Exceptions raised by sca."""


class ScaError(Exception):
    """Base exception for sca errors."""

    pass


class ConfigError(ScaError):
    """Node directory file is malformed."""

    pass


class NoNodesError(ScaError):
    """No nodes to run on; nothing was dispatched."""

    pass
