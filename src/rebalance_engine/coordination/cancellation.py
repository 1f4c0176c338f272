"""
Cooperative cancellation: status is re-read from the record store at
checkpoints, and a stop is signalled by raising RebalanceStopped.
"""
from dataclasses import dataclass
from typing import List, Optional

from rebalance_engine.exceptions import RebalanceStopped
from rebalance_engine.logger import AppLogger
from rebalance_engine.models import AnalysisRecord, AnalysisStatus, RebalanceStatus
from rebalance_engine.notifier import ACTION_ANALYSIS_COMPLETED, CoordinatorNotifier
from rebalance_engine.store.base import RecordStore

app_logger = AppLogger(__name__)


@dataclass
class CancellationCheck:
    should_stop: bool
    is_cancelled: bool = False
    is_deleted: bool = False
    reason: Optional[str] = None


CONTINUE = CancellationCheck(should_stop=False)


class CancellationChecker:
    """Reads request and analysis status to decide whether work should continue"""

    def __init__(self, store: RecordStore, notifier: Optional[CoordinatorNotifier] = None):
        self.store = store
        self.notifier = notifier

    async def check_rebalance(self, rebalance_request_id: str) -> CancellationCheck:
        """
        Store read errors allow the run to continue; a missing request stops it
        as deleted and a cancelled one stops it as cancelled.
        """
        try:
            request = await self.store.get_rebalance_request(rebalance_request_id)
        except Exception as e:
            app_logger.log_warning(f"Unable to check cancellation status, continuing: {e}")
            return CancellationCheck(should_stop=False, reason="Unable to check cancellation status")

        if request is None:
            app_logger.log_warning(f"Rebalance request {rebalance_request_id} not found - may have been deleted")
            return CancellationCheck(should_stop=True, is_deleted=True,
                                     reason="Rebalance request not found - may have been deleted")

        if request.status == RebalanceStatus.CANCELLED:
            app_logger.log_info(f"Rebalance request {rebalance_request_id} has been cancelled")
            return CancellationCheck(should_stop=True, is_cancelled=True,
                                     reason="Rebalance request was cancelled")

        return CONTINUE

    async def check_analysis(self, analysis_id: str) -> CancellationCheck:
        try:
            analysis = await self.store.get_analysis(analysis_id)
        except Exception as e:
            app_logger.log_warning(f"Unable to check analysis status, continuing: {e}")
            return CancellationCheck(should_stop=False, reason="Unable to check cancellation status")

        if analysis is None:
            return CancellationCheck(should_stop=True, is_deleted=True,
                                     reason="Analysis not found - may have been deleted")
        if analysis.status == AnalysisStatus.CANCELLED:
            return CancellationCheck(should_stop=True, is_cancelled=True, reason="User cancelled the analysis")
        return CONTINUE

    async def check_combined(self, analysis_id: str,
                             rebalance_request_id: Optional[str] = None) -> CancellationCheck:
        """
        Check an analysis together with its parent rebalance.

        A cancelled parent cancels the child. A child cancelled on its own is
        reported to the parent's coordinator as a failed analysis so the
        rebalance does not wait on it.
        """
        if rebalance_request_id:
            parent = await self.check_rebalance(rebalance_request_id)
            if parent.should_stop:
                if parent.is_cancelled:
                    await self._cancel_analysis(analysis_id)
                return parent

        child = await self.check_analysis(analysis_id)
        if child.should_stop and child.is_cancelled and rebalance_request_id:
            analysis = None
            try:
                analysis = await self.store.get_analysis(analysis_id)
            except Exception as e:
                app_logger.log_warning(f"Failed to re-read analysis {analysis_id}: {e}")
            self._report_cancelled_child(rebalance_request_id, analysis_id, analysis.ticker if analysis else None)
        return child

    async def cancel_child_analyses(self, rebalance_request_id: str) -> int:
        """Cancel every unfinished analysis of a cancelled rebalance"""
        try:
            analyses = await self.store.list_analyses(rebalance_request_id)
        except Exception as e:
            app_logger.log_warning(f"Unable to list analyses of {rebalance_request_id}: {e}")
            return 0

        cancelled = 0
        for analysis in analyses:
            if analysis.status in (AnalysisStatus.PENDING, AnalysisStatus.RUNNING):
                if await self._cancel_analysis(analysis.id):
                    cancelled += 1
        if cancelled:
            app_logger.log_info(f"Cancelled {cancelled} analyses with their parent rebalance")
        return cancelled

    def drop_cancelled_analyses(self, rebalance_request_id: str,
                                analyses: List[AnalysisRecord]) -> List[AnalysisRecord]:
        """Exclude analyses cancelled on their own, reporting each to the coordinator"""
        kept = []
        for analysis in analyses:
            if analysis.status == AnalysisStatus.CANCELLED:
                app_logger.log_info(f"Skipping cancelled analysis {analysis.id} ({analysis.ticker})")
                self._report_cancelled_child(rebalance_request_id, analysis.id, analysis.ticker)
            else:
                kept.append(analysis)
        return kept

    async def _cancel_analysis(self, analysis_id: str) -> bool:
        try:
            await self.store.update_analysis_status(analysis_id, AnalysisStatus.CANCELLED)
            app_logger.log_info(f"Cancelled analysis {analysis_id} with its parent rebalance")
            return True
        except Exception as e:
            app_logger.log_warning(f"Failed to cancel analysis {analysis_id}: {e}")
            return False

    def _report_cancelled_child(self, rebalance_request_id: str, analysis_id: str,
                                ticker: Optional[str]) -> None:
        if self.notifier is None:
            return
        self.notifier.notify_async(
            ACTION_ANALYSIS_COMPLETED,
            rebalance_request_id,
            phase="analysis",
            agent="analysis-coordinator",
            success=False,
            error="Analysis cancelled by user",
            analysis_id=analysis_id,
            ticker=ticker,
        )

    async def checkpoint(self, rebalance_request_id: str, name: str) -> None:
        """Raise RebalanceStopped when the request was cancelled or deleted"""
        check = await self.check_rebalance(rebalance_request_id)
        if check.should_stop:
            app_logger.log_info(f"Stopping at checkpoint '{name}': {check.reason}")
            raise RebalanceStopped(check.reason or "stopped", is_cancelled=check.is_cancelled,
                                   is_deleted=check.is_deleted)
