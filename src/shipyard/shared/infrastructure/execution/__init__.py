"""External command execution."""

from shipyard.shared.infrastructure.execution.command_executor import CommandExecutor, CommandResult

__all__ = ["CommandExecutor", "CommandResult"]
