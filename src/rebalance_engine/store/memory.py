import asyncio
import uuid
from typing import Any, Dict, List, Optional

from rebalance_engine.exceptions import StoreError
from rebalance_engine.models import (
    AnalysisRecord,
    AnalysisStatus,
    RebalanceRequest,
    TradeOrder,
    WorkflowStep,
    WorkflowStepStatus,
    utcnow,
)
from rebalance_engine.store.base import RecordStore


class InMemoryRecordStore(RecordStore):
    """Process-local record store guarded by a single asyncio lock"""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._requests: Dict[str, RebalanceRequest] = {}
        self._analyses: Dict[str, AnalysisRecord] = {}
        self._orders: Dict[str, Dict[str, TradeOrder]] = {}

    async def save_rebalance_request(self, request: RebalanceRequest) -> RebalanceRequest:
        async with self._lock:
            self._requests[request.id] = request.model_copy(deep=True)
            return request

    async def get_rebalance_request(self, request_id: str) -> Optional[RebalanceRequest]:
        async with self._lock:
            request = self._requests.get(request_id)
            return request.model_copy(deep=True) if request else None

    async def update_rebalance_request(self, request_id: str, updates: Dict[str, Any]) -> RebalanceRequest:
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise StoreError(f"Rebalance request {request_id} not found in store")
            merged = request.model_dump()
            merged.update(updates)
            merged["updated_at"] = utcnow()
            updated = RebalanceRequest.model_validate(merged)
            self._requests[request_id] = updated
            return updated.model_copy(deep=True)

    async def delete_rebalance_request(self, request_id: str) -> None:
        async with self._lock:
            self._requests.pop(request_id, None)
            self._orders.pop(request_id, None)

    async def save_analysis(self, analysis: AnalysisRecord) -> AnalysisRecord:
        async with self._lock:
            self._analyses[analysis.id] = analysis.model_copy(deep=True)
            return analysis

    async def get_analysis(self, analysis_id: str) -> Optional[AnalysisRecord]:
        async with self._lock:
            analysis = self._analyses.get(analysis_id)
            return analysis.model_copy(deep=True) if analysis else None

    async def list_analyses(self, rebalance_request_id: str) -> List[AnalysisRecord]:
        async with self._lock:
            return [
                analysis.model_copy(deep=True)
                for analysis in self._analyses.values()
                if analysis.rebalance_request_id == rebalance_request_id
            ]

    async def update_analysis_status(self, analysis_id: str, status: AnalysisStatus) -> None:
        async with self._lock:
            analysis = self._analyses.get(analysis_id)
            if analysis is None:
                raise StoreError(f"Analysis {analysis_id} not found in store")
            self._analyses[analysis_id] = analysis.model_copy(update={"status": status})

    async def list_trade_orders(self, rebalance_request_id: str) -> List[TradeOrder]:
        async with self._lock:
            return [order.model_copy(deep=True) for order in self._orders.get(rebalance_request_id, {}).values()]

    async def create_trade_orders(self, orders: List[TradeOrder]) -> List[TradeOrder]:
        async with self._lock:
            created = []
            for order in orders:
                by_ticker = self._orders.setdefault(order.rebalance_request_id, {})
                existing = by_ticker.get(order.ticker)
                if existing is not None:
                    created.append(existing.model_copy(deep=True))
                    continue
                stored = order.model_copy(update={"id": order.id or str(uuid.uuid4())})
                by_ticker[order.ticker] = stored
                created.append(stored.model_copy(deep=True))
            return created

    async def update_workflow_step(self, request_id: str, step: str, status: WorkflowStepStatus,
                                   data: Optional[Dict[str, Any]] = None) -> WorkflowStep:
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise StoreError(f"Rebalance request {request_id} not found in store")
            previous = request.workflow_steps.get(step)
            merged_data = dict(previous.data) if previous else {}
            merged_data.update(data or {})
            workflow_step = WorkflowStep(status=status, data=merged_data)
            steps = dict(request.workflow_steps)
            steps[step] = workflow_step
            self._requests[request_id] = request.model_copy(update={"workflow_steps": steps, "updated_at": utcnow()})
            return workflow_step
