"""
Redis-backed record store.

Layout, under the configured key prefix:
    {prefix}:request:{id}            JSON RebalanceRequest
    {prefix}:analysis:{id}           JSON AnalysisRecord
    {prefix}:request:{id}:analyses   set of analysis ids
    {prefix}:request:{id}:orders     hash ticker -> JSON TradeOrder
"""
import uuid
import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError
from typing import Any, Dict, List, Optional

from rebalance_engine.exceptions import StoreError
from rebalance_engine.logger import AppLogger
from rebalance_engine.models import (
    AnalysisRecord,
    AnalysisStatus,
    RebalanceRequest,
    TradeOrder,
    WorkflowStep,
    WorkflowStepStatus,
    utcnow,
)
from rebalance_engine.redis_service import BaseRedisService
from rebalance_engine.store.base import RecordStore

app_logger = AppLogger(__name__)


class RedisRecordStore(BaseRedisService, RecordStore):
    """Record store persisted in Redis"""

    def __init__(self, redis_url: str, key_prefix: str = "rebalance", max_retries: int = 3,
                 client: Optional[redis.Redis] = None):
        super().__init__(redis_url=redis_url, max_retries=max_retries, client=client)
        self.key_prefix = key_prefix

    def _request_key(self, request_id: str) -> str:
        return f"{self.key_prefix}:request:{request_id}"

    def _analysis_key(self, analysis_id: str) -> str:
        return f"{self.key_prefix}:analysis:{analysis_id}"

    def _analyses_index_key(self, request_id: str) -> str:
        return f"{self.key_prefix}:request:{request_id}:analyses"

    def _orders_key(self, request_id: str) -> str:
        return f"{self.key_prefix}:request:{request_id}:orders"

    async def _run(self, description: str, operation):
        try:
            return await self.execute_with_retry(operation)
        except StoreError:
            raise
        except RedisError as e:
            app_logger.log_error(f"Failed to {description}: {e}")
            raise StoreError(f"Redis store failed to {description}: {e}") from e

    async def save_rebalance_request(self, request: RebalanceRequest) -> RebalanceRequest:
        async def save_operation(client):
            return await client.set(self._request_key(request.id), request.model_dump_json())

        await self._run("save rebalance request", save_operation)
        return request

    async def get_rebalance_request(self, request_id: str) -> Optional[RebalanceRequest]:
        async def get_operation(client):
            return await client.get(self._request_key(request_id))

        data = await self._run("read rebalance request", get_operation)
        return RebalanceRequest.model_validate_json(data) if data else None

    async def update_rebalance_request(self, request_id: str, updates: Dict[str, Any]) -> RebalanceRequest:
        key = self._request_key(request_id)

        def apply(raw: str) -> RebalanceRequest:
            merged = RebalanceRequest.model_validate_json(raw).model_dump()
            merged.update(updates)
            merged["updated_at"] = utcnow()
            return RebalanceRequest.model_validate(merged)

        return await self._read_modify_write(key, request_id, apply, "update rebalance request")

    async def delete_rebalance_request(self, request_id: str) -> None:
        async def delete_operation(client):
            return await client.delete(self._request_key(request_id), self._orders_key(request_id))

        await self._run("delete rebalance request", delete_operation)

    async def save_analysis(self, analysis: AnalysisRecord) -> AnalysisRecord:
        async def save_operation(client):
            pipe = client.pipeline()
            pipe.set(self._analysis_key(analysis.id), analysis.model_dump_json())
            if analysis.rebalance_request_id:
                pipe.sadd(self._analyses_index_key(analysis.rebalance_request_id), analysis.id)
            return await pipe.execute()

        await self._run("save analysis", save_operation)
        return analysis

    async def get_analysis(self, analysis_id: str) -> Optional[AnalysisRecord]:
        async def get_operation(client):
            return await client.get(self._analysis_key(analysis_id))

        data = await self._run("read analysis", get_operation)
        return AnalysisRecord.model_validate_json(data) if data else None

    async def list_analyses(self, rebalance_request_id: str) -> List[AnalysisRecord]:
        async def list_operation(client):
            analysis_ids = await client.smembers(self._analyses_index_key(rebalance_request_id))
            if not analysis_ids:
                return []
            return await client.mget([self._analysis_key(analysis_id) for analysis_id in sorted(analysis_ids)])

        rows = await self._run("list analyses", list_operation)
        return [AnalysisRecord.model_validate_json(row) for row in rows if row]

    async def update_analysis_status(self, analysis_id: str, status: AnalysisStatus) -> None:
        key = self._analysis_key(analysis_id)

        def apply(raw: str) -> AnalysisRecord:
            return AnalysisRecord.model_validate_json(raw).model_copy(update={"status": status})

        await self._read_modify_write(key, analysis_id, apply, "update analysis status")

    async def list_trade_orders(self, rebalance_request_id: str) -> List[TradeOrder]:
        async def list_operation(client):
            return await client.hvals(self._orders_key(rebalance_request_id))

        rows = await self._run("list trade orders", list_operation)
        orders = [TradeOrder.model_validate_json(row) for row in rows]
        return sorted(orders, key=lambda order: order.ticker)

    async def create_trade_orders(self, orders: List[TradeOrder]) -> List[TradeOrder]:
        prepared = [order.model_copy(update={"id": order.id or str(uuid.uuid4())}) for order in orders]

        async def create_operation(client):
            pipe = client.pipeline()
            for order in prepared:
                pipe.hsetnx(self._orders_key(order.rebalance_request_id), order.ticker, order.model_dump_json())
            inserted = await pipe.execute()

            created = []
            for order, was_inserted in zip(prepared, inserted):
                if was_inserted:
                    created.append(order)
                    continue
                existing = await client.hget(self._orders_key(order.rebalance_request_id), order.ticker)
                app_logger.log_warning(f"{order.ticker}: trade order already exists, keeping existing")
                created.append(TradeOrder.model_validate_json(existing))
            return created

        return await self._run("create trade orders", create_operation)

    async def update_workflow_step(self, request_id: str, step: str, status: WorkflowStepStatus,
                                   data: Optional[Dict[str, Any]] = None) -> WorkflowStep:
        key = self._request_key(request_id)
        result: Dict[str, WorkflowStep] = {}

        def apply(raw: str) -> RebalanceRequest:
            request = RebalanceRequest.model_validate_json(raw)
            previous = request.workflow_steps.get(step)
            merged_data = dict(previous.data) if previous else {}
            merged_data.update(data or {})
            workflow_step = WorkflowStep(status=status, data=merged_data)
            steps = dict(request.workflow_steps)
            steps[step] = workflow_step
            result["step"] = workflow_step
            return request.model_copy(update={"workflow_steps": steps, "updated_at": utcnow()})

        await self._read_modify_write(key, request_id, apply, "update workflow step")
        return result["step"]

    async def _read_modify_write(self, key: str, record_id: str, apply, description: str):
        """Optimistic WATCH/MULTI update of one JSON record, retried on concurrent writes"""

        async def transaction(client):
            async with client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if raw is None:
                            raise StoreError(f"Record {record_id} not found in store")
                        updated = apply(raw)
                        pipe.multi()
                        pipe.set(key, updated.model_dump_json())
                        await pipe.execute()
                        return updated
                    except WatchError:
                        app_logger.log_debug(f"Concurrent write on {key}, retrying")
                        continue

        return await self._run(description, transaction)
