from .base import CommandResult, CommandStatus, TaskCommand
from .rebalance import RebalanceCommand

__all__ = ['CommandResult', 'CommandStatus', 'TaskCommand', 'RebalanceCommand']
