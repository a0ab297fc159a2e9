# CLI module for fcvm
from .commands import CLICommands

__all__ = ["CLICommands"]
