"""Commands __init__ - exports all commands."""

from portsync.cli.commands.replay import replay_command

__all__ = ["replay_command"]
