"""
Coordinator notification with bounded retry and fire-and-forget scheduling
"""
import asyncio
import aiohttp
from typing import Any, Dict, Optional, Set, Union

from rebalance_engine.exceptions import ErrorType
from rebalance_engine.logger import AppLogger
from rebalance_engine.models import WorkflowStepStatus
from rebalance_engine.store.base import RecordStore

app_logger = AppLogger(__name__)

ACTION_COMPLETE_REBALANCE = "complete-rebalance"
ACTION_REBALANCE_ERROR = "rebalance-error"
ACTION_ANALYSIS_COMPLETED = "analysis-completed"

NOTIFICATION_STEP = "coordinator_notification"


class CoordinatorNotifier:
    """
    Notifies the sibling workflow coordinator of completion or failure.

    Notification failures are logged and recorded on the request's workflow
    steps; they are never raised to the caller.
    """

    def __init__(self, coordinator_url: str, store: Optional[RecordStore] = None,
                 max_retries: int = 2, retry_delay_seconds: float = 1.0,
                 timeout_seconds: float = 10.0, service_token: str = ""):
        self.coordinator_url = coordinator_url
        self.store = store
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.timeout_seconds = timeout_seconds
        self.service_token = service_token
        self._pending: Set[asyncio.Task] = set()

    async def notify(self, action: str, rebalance_request_id: str, *,
                     phase: str = "portfolio", agent: str = "rebalance-portfolio-manager",
                     success: bool = True, error: Optional[str] = None,
                     error_type: Optional[Union[ErrorType, str]] = None,
                     user_id: Optional[str] = None, analysis_id: Optional[str] = None,
                     ticker: Optional[str] = None) -> bool:
        """
        POST a notification to the coordinator.

        Returns:
            True when the coordinator accepted it, False after all retries failed
        """
        body: Dict[str, Any] = {
            "action": action,
            "rebalanceRequestId": rebalance_request_id,
            "phase": phase,
            "agent": agent,
            "success": success,
        }
        if user_id:
            body["userId"] = user_id
        if analysis_id:
            body["analysisId"] = analysis_id
        if ticker:
            body["ticker"] = ticker
        if error:
            body["error"] = error
        if error_type:
            body["errorType"] = error_type.value if isinstance(error_type, ErrorType) else error_type

        last_error = "no attempts made"
        for attempt in range(1, self.max_retries + 1):
            try:
                await self._post(body)
                app_logger.log_info(f"Coordinator notified: {action} for {rebalance_request_id}")
                return True
            except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as e:
                last_error = str(e) or e.__class__.__name__
                app_logger.log_warning(f"Coordinator notification attempt {attempt}/{self.max_retries} "
                                       f"failed: {last_error}")
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay_seconds)

        app_logger.log_error(f"Coordinator notification failed for {rebalance_request_id}: {last_error}")
        await self._record_failure(rebalance_request_id, action, last_error)
        return False

    def notify_async(self, action: str, rebalance_request_id: str, **kwargs) -> asyncio.Task:
        """Schedule a notification without waiting for it"""
        task = asyncio.create_task(self.notify(action, rebalance_request_id, **kwargs))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled notifications to finish"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _post(self, body: Dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self.service_token:
            headers["Authorization"] = f"Bearer {self.service_token}"

        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.coordinator_url,
                json=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            ) as response:
                if response.status >= 400:
                    response_text = await response.text()
                    raise RuntimeError(f"Coordinator returned status {response.status}: {response_text}")

    async def _record_failure(self, rebalance_request_id: str, action: str, error: str) -> None:
        if self.store is None:
            return
        try:
            await self.store.update_workflow_step(
                rebalance_request_id,
                NOTIFICATION_STEP,
                WorkflowStepStatus.ERROR,
                {"action": action, "error": f"COORDINATOR_NOTIFICATION_FAILED: {error}"},
            )
        except Exception as e:
            app_logger.log_error(f"Failed to record notification failure: {e}")
