"""CLI command groups."""

from .bridge import register_bridge_commands

__all__ = ["register_bridge_commands"]
