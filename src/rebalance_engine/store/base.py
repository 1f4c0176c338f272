"""
Record store contract consumed by the engine and the coordination layer.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from rebalance_engine.models import (
    AnalysisRecord,
    AnalysisStatus,
    RebalanceRequest,
    TradeOrder,
    WorkflowStep,
    WorkflowStepStatus,
)


class RecordStore(ABC):
    """
    Persistent storage for rebalance requests, analyses and trade orders.

    All failures surface as StoreError.
    """

    @abstractmethod
    async def save_rebalance_request(self, request: RebalanceRequest) -> RebalanceRequest:
        pass

    @abstractmethod
    async def get_rebalance_request(self, request_id: str) -> Optional[RebalanceRequest]:
        """Return the request, or None when it does not exist"""
        pass

    @abstractmethod
    async def update_rebalance_request(self, request_id: str, updates: Dict[str, Any]) -> RebalanceRequest:
        """Apply field updates; raises StoreError when the request does not exist"""
        pass

    @abstractmethod
    async def delete_rebalance_request(self, request_id: str) -> None:
        pass

    @abstractmethod
    async def save_analysis(self, analysis: AnalysisRecord) -> AnalysisRecord:
        pass

    @abstractmethod
    async def get_analysis(self, analysis_id: str) -> Optional[AnalysisRecord]:
        pass

    @abstractmethod
    async def list_analyses(self, rebalance_request_id: str) -> List[AnalysisRecord]:
        pass

    @abstractmethod
    async def update_analysis_status(self, analysis_id: str, status: AnalysisStatus) -> None:
        pass

    @abstractmethod
    async def list_trade_orders(self, rebalance_request_id: str) -> List[TradeOrder]:
        pass

    @abstractmethod
    async def create_trade_orders(self, orders: List[TradeOrder]) -> List[TradeOrder]:
        """
        Persist orders, assigning ids. An order for a ticker that already has
        one under the same rebalance is not created again; the existing one
        is returned in its place.
        """
        pass

    @abstractmethod
    async def update_workflow_step(self, request_id: str, step: str, status: WorkflowStepStatus,
                                   data: Optional[Dict[str, Any]] = None) -> WorkflowStep:
        """Atomically set one workflow step without clobbering concurrent step updates"""
        pass
