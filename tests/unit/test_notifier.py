"""
Tests for coordinator notification retry and failure recording.
"""
import pytest
from unittest.mock import AsyncMock, patch

from rebalance_engine.exceptions import ErrorType
from rebalance_engine.models import RebalanceRequest, WorkflowStepStatus
from rebalance_engine.notifier import (
    ACTION_COMPLETE_REBALANCE,
    ACTION_REBALANCE_ERROR,
    NOTIFICATION_STEP,
    CoordinatorNotifier,
)

pytestmark = pytest.mark.asyncio


def _notifier(store=None):
    return CoordinatorNotifier("http://coordinator.local/notify", store=store,
                               max_retries=2, retry_delay_seconds=0.0)


async def test_notify_sends_camel_case_body():
    notifier = _notifier()

    with patch.object(CoordinatorNotifier, "_post", new=AsyncMock()) as post:
        delivered = await notifier.notify(ACTION_REBALANCE_ERROR, "rb-1", success=False,
                                          error="boom", error_type=ErrorType.DATA_FETCH, user_id="u-1")

    assert delivered is True
    body = post.await_args.args[0]
    assert body == {
        "action": ACTION_REBALANCE_ERROR,
        "rebalanceRequestId": "rb-1",
        "phase": "portfolio",
        "agent": "rebalance-portfolio-manager",
        "success": False,
        "userId": "u-1",
        "error": "boom",
        "errorType": "data_fetch",
    }


async def test_notify_retries_then_succeeds():
    notifier = _notifier()

    with patch.object(CoordinatorNotifier, "_post",
                      new=AsyncMock(side_effect=[RuntimeError("Coordinator returned status 502"), None])) as post:
        delivered = await notifier.notify(ACTION_COMPLETE_REBALANCE, "rb-1")

    assert delivered is True
    assert post.await_count == 2


async def test_notify_failure_is_recorded_not_raised(store):
    await store.save_rebalance_request(RebalanceRequest(id="rb-1", user_id="u-1"))
    notifier = _notifier(store)

    with patch.object(CoordinatorNotifier, "_post", new=AsyncMock(side_effect=RuntimeError("down"))):
        delivered = await notifier.notify(ACTION_COMPLETE_REBALANCE, "rb-1")

    assert delivered is False
    step = (await store.get_rebalance_request("rb-1")).workflow_steps[NOTIFICATION_STEP]
    assert step.status == WorkflowStepStatus.ERROR
    assert step.data["error"].startswith("COORDINATOR_NOTIFICATION_FAILED")


async def test_notify_async_is_drained():
    notifier = _notifier()

    with patch.object(CoordinatorNotifier, "_post", new=AsyncMock()) as post:
        notifier.notify_async(ACTION_COMPLETE_REBALANCE, "rb-1")
        await notifier.drain()

    post.assert_awaited_once()
