"""
HTTP entry point for triggering rebalance runs.
"""
import asyncio
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import Field

from rebalance_engine import __version__
from rebalance_engine.container import ServiceContainer
from rebalance_engine.engine import validate_task
from rebalance_engine.exceptions import ErrorType, InvalidRequestError
from rebalance_engine.logger import AppLogger
from rebalance_engine.models import RebalanceConstraints, RebalanceTask, WireModel

app_logger = AppLogger(__name__)


class RebalanceTrigger(WireModel):
    """Body of POST /rebalance; required fields are checked after parsing to answer 400, not 422"""
    rebalance_request_id: Optional[str] = None
    user_id: Optional[str] = None
    tickers: List[str] = Field(default_factory=list)
    api_settings: Optional[Dict[str, Any]] = None
    risk_manager_decisions: Optional[Dict[str, Dict[str, Any]]] = None
    constraints: Optional[RebalanceConstraints] = None
    enqueue: bool = False

    def to_task(self) -> RebalanceTask:
        return RebalanceTask(
            rebalance_request_id=self.rebalance_request_id or "",
            user_id=self.user_id or "",
            api_settings=self.api_settings or {},
            tickers=self.tickers,
            risk_manager_decisions=self.risk_manager_decisions,
            constraints=self.constraints,
        )


def _error_response(status_code: int, message: str, error_type: ErrorType) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "errorType": error_type.value},
    )


def create_app(container: ServiceContainer) -> FastAPI:
    app = FastAPI(
        title="Rebalance Engine",
        description="Cash-safe rebalance decision and execution engine",
        version=__version__,
    )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "version": __version__,
            "storeBackend": container.config.store.backend(),
        }

    @app.post("/rebalance")
    async def trigger_rebalance(request: Request):
        try:
            body = await request.json()
        except ValueError:
            return _error_response(400, "Request body must be JSON", ErrorType.OTHER)

        try:
            trigger = RebalanceTrigger.model_validate(body or {})
            task = trigger.to_task()
            validate_task(task)
        except InvalidRequestError as e:
            return _error_response(400, e.message, e.error_type)
        except ValueError as e:
            return _error_response(400, f"Invalid rebalance request: {e}", ErrorType.OTHER)

        watchdog = container.watchdog_config()

        if trigger.enqueue:
            try:
                queued = await container.task_queue().enqueue(task)
            except Exception as e:
                app_logger.log_error(f"Failed to enqueue rebalance task: {e}")
                return _error_response(500, f"Failed to enqueue rebalance task: {e}", ErrorType.DATABASE)

            if not queued:
                return JSONResponse(status_code=409, content={
                    "success": False,
                    "error": f"Rebalance {task.rebalance_request_id} is already queued or running",
                    "retryInfo": {"attempt": task.attempt, "maxAttempts": watchdog.max_attempts,
                                  "willRetry": False},
                })
            return JSONResponse(status_code=202, content={
                "success": True,
                "queued": True,
                "rebalanceRequestId": task.rebalance_request_id,
                "retryInfo": {"attempt": task.attempt, "maxAttempts": watchdog.max_attempts, "willRetry": True},
            })

        engine = container.engine()
        try:
            result = await asyncio.wait_for(engine.run(task, max_attempts=1), timeout=watchdog.timeout_seconds)
        except asyncio.TimeoutError:
            message = f"Rebalance error (timeout): exceeded {watchdog.timeout_seconds}s"
            await engine.fail_request(task, message, ErrorType.TIMEOUT)
            return JSONResponse(status_code=504, content={
                "success": False,
                "error": message,
                "errorType": ErrorType.TIMEOUT.value,
                "retryInfo": {"attempt": task.attempt, "maxAttempts": 1, "willRetry": False},
            })

        status_code = 200 if result.success or result.stopped else 500
        return JSONResponse(status_code=status_code, content=result.to_response())

    return app
