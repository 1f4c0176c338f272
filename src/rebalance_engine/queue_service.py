"""
Redis Task Queue for rebalance runs
Handles enqueue, delayed retries and recovery of tasks left active by a restart
"""
import time
import redis.asyncio as redis
from typing import Dict, List, Optional

from rebalance_engine.logger import AppLogger
from rebalance_engine.models import RebalanceTask
from rebalance_engine.redis_service import BaseRedisService

app_logger = AppLogger(__name__)


class RedisTaskQueue(BaseRedisService):
    """
    Durable queue of rebalance tasks.

    Keys:
        queue_name         list of task JSON waiting to run
        delayed_set_name   zset of task JSON scored by the time it may run again
        active_set_name    set of request ids queued, delayed or in flight
        {queue_name}:payloads  hash request id -> latest task JSON, used for recovery
    """

    def __init__(self, redis_url: str, queue_name: str = "rebalance_task_queue",
                 delayed_set_name: str = "rebalance_task_delayed",
                 active_set_name: str = "rebalance_task_active",
                 max_retries: int = 3, client: Optional[redis.Redis] = None):
        super().__init__(redis_url=redis_url, max_retries=max_retries, client=client)
        self.queue_name = queue_name
        self.delayed_set_name = delayed_set_name
        self.active_set_name = active_set_name
        self.payloads_name = f"{queue_name}:payloads"

    async def enqueue(self, task: RebalanceTask) -> bool:
        """
        Queue a task unless one for the same request is already active

        Returns:
            True if queued, False if a task for the request is already active
        """
        payload = task.model_dump_json()

        async def enqueue_operation(client):
            added = await client.sadd(self.active_set_name, task.rebalance_request_id)
            if not added:
                return False
            pipe = client.pipeline()
            pipe.hset(self.payloads_name, task.rebalance_request_id, payload)
            pipe.lpush(self.queue_name, payload)
            await pipe.execute()
            return True

        queued = await self.execute_with_retry(enqueue_operation)
        if queued:
            app_logger.log_info(f"Queued rebalance task {task.rebalance_request_id} (attempt {task.attempt})")
        else:
            app_logger.log_warning(f"Rebalance task {task.rebalance_request_id} already active - not queued")
        return queued

    async def dequeue(self, timeout: int = 5) -> Optional[RebalanceTask]:
        """Next task, or None when the queue stays empty for the timeout"""
        try:
            # Timeout is expected when idle, so no retry wrapper here
            client = await self._get_client()
            result = await client.brpop(self.queue_name, timeout=timeout)
        except redis.TimeoutError:
            return None

        if not result:
            return None

        _, payload = result
        try:
            return RebalanceTask.model_validate_json(payload)
        except ValueError as e:
            app_logger.log_error(f"Dropping malformed task payload: {e}")
            return None

    async def schedule_retry(self, task: RebalanceTask, delay_seconds: float) -> RebalanceTask:
        """Put the task in the delayed set with its attempt counter advanced"""
        retry_task = task.model_copy(update={"attempt": task.attempt + 1})
        payload = retry_task.model_dump_json()
        run_at = time.time() + delay_seconds

        async def delay_operation(client):
            pipe = client.pipeline()
            pipe.zadd(self.delayed_set_name, {payload: run_at})
            pipe.hset(self.payloads_name, task.rebalance_request_id, payload)
            return await pipe.execute()

        await self.execute_with_retry(delay_operation)
        app_logger.log_info(f"Rebalance task {task.rebalance_request_id} scheduled for attempt "
                            f"{retry_task.attempt} in {delay_seconds}s")
        return retry_task

    async def promote_due(self) -> int:
        """
        Move delayed tasks whose time has come back onto the main queue

        Returns:
            Number of tasks promoted
        """
        now = time.time()

        async def get_ready(client):
            return await client.zrangebyscore(self.delayed_set_name, 0, now)

        ready = await self.execute_with_retry(get_ready)
        if not ready:
            return 0

        async def move_tasks(client):
            pipe = client.pipeline()
            for payload in ready:
                pipe.lpush(self.queue_name, payload)
                pipe.zrem(self.delayed_set_name, payload)
            return await pipe.execute()

        await self.execute_with_retry(move_tasks)
        app_logger.log_info(f"Promoted {len(ready)} delayed tasks to main queue")
        return len(ready)

    async def complete(self, rebalance_request_id: str) -> None:
        """Release the request id so a later trigger can queue it again"""
        async def complete_operation(client):
            pipe = client.pipeline()
            pipe.srem(self.active_set_name, rebalance_request_id)
            pipe.hdel(self.payloads_name, rebalance_request_id)
            return await pipe.execute()

        await self.execute_with_retry(complete_operation)
        app_logger.log_debug(f"Removed {rebalance_request_id} from active tasks")

    async def recover_stuck_tasks(self) -> int:
        """
        Requeue tasks that were in flight when the worker stopped

        A task is stuck when its request id is active but it is neither
        waiting in the main queue nor in the delayed set.

        Returns:
            Number of tasks recovered
        """
        async def snapshot(client):
            pipe = client.pipeline()
            pipe.smembers(self.active_set_name)
            pipe.lrange(self.queue_name, 0, -1)
            pipe.zrange(self.delayed_set_name, 0, -1)
            return await pipe.execute()

        active_ids, queued, delayed = await self.execute_with_retry(snapshot)
        if not active_ids:
            return 0

        waiting = {self._request_id_of(payload) for payload in list(queued) + list(delayed)}
        stuck: List[str] = [request_id for request_id in active_ids if request_id not in waiting]
        if not stuck:
            return 0

        app_logger.log_info(f"Found {len(stuck)} stuck tasks during startup")

        async def recover(client):
            payloads = await client.hmget(self.payloads_name, stuck)
            pipe = client.pipeline()
            recovered = 0
            for request_id, payload in zip(stuck, payloads):
                if payload:
                    pipe.lpush(self.queue_name, payload)
                    recovered += 1
                    app_logger.log_debug(f"Recovering stuck task: {request_id}")
                else:
                    app_logger.log_warning(f"No payload for stuck task {request_id}, releasing it")
                    pipe.srem(self.active_set_name, request_id)
            await pipe.execute()
            return recovered

        recovered = await self.execute_with_retry(recover)
        app_logger.log_info(f"Successfully recovered {recovered} stuck tasks")
        return recovered

    async def get_queue_stats(self) -> Dict[str, int]:
        async def get_stats(client):
            return {
                'main_queue': await client.llen(self.queue_name),
                'active_tasks': await client.scard(self.active_set_name),
                'delayed_queue': await client.zcard(self.delayed_set_name),
            }

        return await self.execute_with_retry(get_stats)

    @staticmethod
    def _request_id_of(payload: str) -> Optional[str]:
        try:
            return RebalanceTask.model_validate_json(payload).rebalance_request_id
        except ValueError:
            return None
