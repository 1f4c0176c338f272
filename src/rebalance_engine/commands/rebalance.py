"""
Rebalance command implementation.
"""

from typing import Any, Dict

from rebalance_engine.commands.base import CommandResult, CommandStatus, TaskCommand
from rebalance_engine.exceptions import InvalidRequestError
from rebalance_engine.logger import AppLogger

app_logger = AppLogger(__name__)


class RebalanceCommand(TaskCommand):
    """Command to run one rebalance attempt through the engine"""

    def _get_command_type(self) -> str:
        return "rebalance"

    async def execute(self, services: Dict[str, Any]) -> CommandResult:
        engine = services.get('engine')
        if not engine:
            return CommandResult(status=CommandStatus.FAILED, error="Rebalance engine not available")

        max_attempts = services.get('max_attempts', 1)

        try:
            result = await engine.run(self.task, max_attempts=max_attempts)
        except InvalidRequestError as e:
            app_logger.log_error(f"Invalid rebalance task: {e.message}")
            return CommandResult(status=CommandStatus.FAILED, error=e.message, error_type=e.error_type.value)

        error_type = result.error_type.value if result.error_type else None
        response = result.to_response()

        if result.success:
            orders = (result.plan or {}).get("ordersCreated", 0)
            return CommandResult(
                status=CommandStatus.SUCCESS,
                message=f"Rebalance completed - orders created: {orders}",
                data=response,
            )
        if result.stopped:
            return CommandResult(status=CommandStatus.STOPPED, message=result.error, data=response)
        if result.retryable and result.retry_info.get("willRetry"):
            return CommandResult(status=CommandStatus.RETRY, error=result.error, error_type=error_type, data=response)
        return CommandResult(status=CommandStatus.FAILED, error=result.error, error_type=error_type, data=response)
