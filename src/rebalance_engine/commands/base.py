"""
Base classes for task commands.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from rebalance_engine.models import RebalanceTask


class CommandStatus(Enum):
    """Status of command execution"""
    SUCCESS = "success"
    FAILED = "failed"
    STOPPED = "stopped"
    RETRY = "retry"


@dataclass
class CommandResult:
    """Result of command execution"""
    status: CommandStatus
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class TaskCommand(ABC):
    """Abstract base class for commands run by the task worker"""

    def __init__(self, task: RebalanceTask):
        self.task = task
        self.command_type = self._get_command_type()

    @abstractmethod
    def _get_command_type(self) -> str:
        """Return the command type identifier"""
        pass

    @abstractmethod
    async def execute(self, services: Dict[str, Any]) -> CommandResult:
        """
        Execute the command with provided services

        Args:
            services: Dictionary of service instances (engine, settings, etc.)

        Returns:
            CommandResult: The result of command execution
        """
        pass

    def __repr__(self) -> str:
        return (f"{self.__class__.__name__}(rebalance_request_id={self.task.rebalance_request_id}, "
                f"attempt={self.task.attempt})")
