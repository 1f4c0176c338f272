"""
Tests for the Redis task queue using a mocked client.
"""
import pytest
from unittest.mock import AsyncMock, Mock

from rebalance_engine.models import RebalanceTask
from rebalance_engine.queue_service import RedisTaskQueue

pytestmark = pytest.mark.asyncio


def _client():
    client = Mock()
    pipeline = Mock()
    pipeline.execute = AsyncMock(return_value=[])
    client.pipeline.return_value = pipeline
    return client, pipeline


def _queue(client):
    return RedisTaskQueue("redis://localhost:6379/0", queue_name="q", delayed_set_name="d",
                          active_set_name="a", client=client)


def _task(attempt=1):
    return RebalanceTask(rebalance_request_id="rb-1", user_id="u", api_settings={"k": "v"}, attempt=attempt)


async def test_enqueue_pushes_new_task():
    client, pipeline = _client()
    client.sadd = AsyncMock(return_value=1)

    queued = await _queue(client).enqueue(_task())

    assert queued is True
    client.sadd.assert_awaited_once_with("a", "rb-1")
    pipeline.lpush.assert_called_once()
    assert pipeline.lpush.call_args.args[0] == "q"


async def test_enqueue_skips_active_request():
    client, pipeline = _client()
    client.sadd = AsyncMock(return_value=0)

    queued = await _queue(client).enqueue(_task())

    assert queued is False
    pipeline.lpush.assert_not_called()


async def test_dequeue_parses_task():
    client, _ = _client()
    client.brpop = AsyncMock(return_value=("q", _task(attempt=2).model_dump_json()))

    task = await _queue(client).dequeue(timeout=1)

    assert task.rebalance_request_id == "rb-1"
    assert task.attempt == 2


async def test_dequeue_returns_none_when_idle():
    client, _ = _client()
    client.brpop = AsyncMock(return_value=None)

    assert await _queue(client).dequeue(timeout=1) is None


async def test_schedule_retry_advances_attempt():
    client, pipeline = _client()

    retry_task = await _queue(client).schedule_retry(_task(), delay_seconds=3)

    assert retry_task.attempt == 2
    mapping = pipeline.zadd.call_args.args[1]
    payload = next(iter(mapping))
    assert RebalanceTask.model_validate_json(payload).attempt == 2


async def test_promote_due_moves_ready_tasks():
    client, pipeline = _client()
    payload = _task(attempt=2).model_dump_json()
    client.zrangebyscore = AsyncMock(return_value=[payload])

    promoted = await _queue(client).promote_due()

    assert promoted == 1
    pipeline.lpush.assert_called_once_with("q", payload)
    pipeline.zrem.assert_called_once_with("d", payload)


async def test_recover_requeues_only_in_flight_tasks():
    client, pipeline = _client()
    waiting = RebalanceTask(rebalance_request_id="rb-2", user_id="u", api_settings={"k": "v"})
    pipeline.execute = AsyncMock(side_effect=[
        [{"rb-1", "rb-2"}, [waiting.model_dump_json()], []],
        [],
    ])
    client.hmget = AsyncMock(return_value=[_task().model_dump_json()])

    recovered = await _queue(client).recover_stuck_tasks()

    assert recovered == 1
    client.hmget.assert_awaited_once_with("q:payloads", ["rb-1"])
    pipeline.lpush.assert_called_once()


async def test_queue_stats():
    client, _ = _client()
    client.llen = AsyncMock(return_value=2)
    client.scard = AsyncMock(return_value=3)
    client.zcard = AsyncMock(return_value=1)

    stats = await _queue(client).get_queue_stats()

    assert stats == {'main_queue': 2, 'active_tasks': 3, 'delayed_queue': 1}
