"""
End-to-end orchestration of one rebalance run.

Flow: entry checkpoint -> portfolio fetch -> resumption lookup -> risk
decisions and allocation targets -> decision and extraction calls (skipped on
resumption) -> order synthesis -> non-fatal reasoning call -> trade-order
creation -> plan persistence -> coordinator notification.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from rebalance_engine import prompts
from rebalance_engine.allocations import calculate_target_allocations
from rebalance_engine.cash_constraints import calculate_deployable_cap
from rebalance_engine.clients.base import BrokerClient, TextGenerationClient
from rebalance_engine.config.models import EngineConfig, ExtractionConfig, SizingConfig
from rebalance_engine.context import RunContext, clear_current_run, set_current_run
from rebalance_engine.coordination.cancellation import CancellationChecker
from rebalance_engine.coordination.idempotence import (
    ResumptionPlanner,
    orders_to_raw,
    reconstruct_decision_text,
)
from rebalance_engine.coordination.state import transition
from rebalance_engine.exceptions import (
    ApiKeyError,
    DataFetchError,
    ErrorType,
    InvalidRequestError,
    RebalanceEngineError,
    RebalanceStopped,
    StoreError,
    classify_error,
)
from rebalance_engine.extraction.extractor import DecisionExtractor
from rebalance_engine.logger import AppLogger
from rebalance_engine.models import (
    AccountState,
    AnalysisRecord,
    RebalanceRequest,
    RebalanceStatus,
    RebalanceTask,
    RiskDecision,
    WorkflowStepStatus,
    utcnow,
)
from rebalance_engine.notifier import (
    ACTION_COMPLETE_REBALANCE,
    ACTION_REBALANCE_ERROR,
    CoordinatorNotifier,
)
from rebalance_engine.portfolio import (
    adjust_confidences_for_risk_level,
    build_portfolio_snapshot,
    build_recommended_positions,
    build_risk_decisions,
    create_trade_orders_from_actions,
    filter_tickers_by_pending_orders,
    resolve_risk_profile,
    resolve_sizing,
    trade_order_summary,
)
from rebalance_engine.store.base import RecordStore
from rebalance_engine.synthesizer import OrderSynthesizer, SynthesisContext

app_logger = AppLogger(__name__)

WORKFLOW_STEP = "portfolio_management"

# Only watchdog timeouts get another attempt from the task queue; data_fetch and
# database failures mark the request ERROR immediately
RETRYABLE_ERROR_TYPES = frozenset({ErrorType.TIMEOUT})


@dataclass
class EngineResult:
    success: bool
    plan: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    stopped: bool = False
    retryable: bool = False
    retry_info: Dict[str, Any] = field(default_factory=dict)

    def to_response(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {"success": self.success, "retryInfo": self.retry_info}
        if self.success:
            response["plan"] = self.plan
        else:
            response["error"] = self.error
        if self.error_type is not None:
            response["errorType"] = self.error_type.value
        if self.stopped:
            response["stopped"] = True
        return response


def validate_task(task: RebalanceTask) -> None:
    missing = []
    if not task.rebalance_request_id:
        missing.append("rebalanceRequestId")
    if not task.user_id:
        missing.append("userId")
    if not task.api_settings:
        missing.append("apiSettings")
    if missing:
        raise InvalidRequestError(f"Missing required parameters: {', '.join(missing)}")


class RebalanceEngine:
    """Runs one rebalance request to a completed, error or stopped outcome"""

    def __init__(self, store: RecordStore, broker: BrokerClient, generation_client: TextGenerationClient,
                 notifier: CoordinatorNotifier,
                 engine_config: Optional[EngineConfig] = None,
                 extraction_config: Optional[ExtractionConfig] = None,
                 sizing_defaults: Optional[SizingConfig] = None,
                 checker: Optional[CancellationChecker] = None,
                 resumption: Optional[ResumptionPlanner] = None,
                 synthesizer: Optional[OrderSynthesizer] = None):
        self.store = store
        self.broker = broker
        self.generation_client = generation_client
        self.notifier = notifier
        self.engine_config = engine_config or EngineConfig()
        self.extraction_config = extraction_config or ExtractionConfig()
        self.sizing_defaults = sizing_defaults or SizingConfig()
        self.checker = checker or CancellationChecker(store, notifier)
        self.resumption = resumption or ResumptionPlanner(store)
        self.synthesizer = synthesizer or OrderSynthesizer()

    async def run(self, task: RebalanceTask, max_attempts: int = 1) -> EngineResult:
        """
        Execute a rebalance.

        A timeout on a non-final attempt leaves the request RUNNING so the
        task queue can try again. Any other failure marks the request ERROR
        and notifies the coordinator.

        Raises:
            InvalidRequestError: when required trigger fields are missing
        """
        validate_task(task)
        final_attempt = task.attempt >= max_attempts
        retry_info = {"attempt": task.attempt, "maxAttempts": max_attempts, "willRetry": False}

        set_current_run(RunContext(task.rebalance_request_id, task.user_id, task.attempt))
        progress = {"stage": "Rebalance"}
        try:
            await self.checker.checkpoint(task.rebalance_request_id, "entry")

            request = await self.store.get_rebalance_request(task.rebalance_request_id)
            if request is None:
                raise RebalanceStopped("Rebalance request not found - may have been deleted", is_deleted=True)
            if request.is_terminal:
                return self._terminal_result(request, retry_info)

            transition(request, RebalanceStatus.RUNNING)
            await self.store.update_rebalance_request(request.id, {"status": RebalanceStatus.RUNNING})
            await self.store.update_workflow_step(request.id, WORKFLOW_STEP, WorkflowStepStatus.RUNNING,
                                                  {"attempt": task.attempt})

            progress["stage"] = "Portfolio Manager"
            account = await self._fetch_portfolio(task)
            await self.checker.checkpoint(request.id, "after_portfolio_fetch")

            progress["stage"] = "Rebalance planning"
            existing_orders = await self.resumption.find_existing(request.id)
            analyses = self.checker.drop_cancelled_analyses(request.id, [
                analysis for analysis in await self.store.list_analyses(request.id) if not analysis.is_failed
            ])

            if not analyses and not task.risk_manager_decisions:
                plan = await self._complete_without_analyses(request, task, account)
                return EngineResult(success=True, plan=plan, retry_info=retry_info)

            plan = await self._plan_and_execute(request, task, account, analyses, existing_orders, progress)
            return EngineResult(success=True, plan=plan, retry_info=retry_info)

        except RebalanceStopped as e:
            app_logger.log_info(f"Rebalance stopped: {e.reason}")
            if e.is_cancelled:
                await self.checker.cancel_child_analyses(task.rebalance_request_id)
            return EngineResult(success=False, error=e.reason, stopped=True, retry_info=retry_info)

        except Exception as e:
            error_type = classify_error(e)
            message = getattr(e, "message", None) or str(e) or e.__class__.__name__
            error_message = f"{progress['stage']} error ({error_type.value}): {message}"
            app_logger.log_error(error_message, exc_info=not isinstance(e, RebalanceEngineError))

            retryable = error_type in RETRYABLE_ERROR_TYPES
            if retryable and not final_attempt:
                retry_info["willRetry"] = True
                await self._record_step(task.rebalance_request_id, WorkflowStepStatus.ERROR,
                                        {"error": error_message, "errorType": error_type.value,
                                         "attempt": task.attempt, "willRetry": True})
                return EngineResult(success=False, error=error_message, error_type=error_type,
                                    retryable=True, retry_info=retry_info)

            await self.fail_request(task, error_message, error_type)
            return EngineResult(success=False, error=error_message, error_type=error_type,
                                retryable=retryable, retry_info=retry_info)

        finally:
            clear_current_run()

    async def fail_request(self, task: RebalanceTask, error_message: str, error_type: ErrorType) -> None:
        """Mark the request ERROR and notify the coordinator; used by the engine and the task worker"""
        await self._record_step(task.rebalance_request_id, WorkflowStepStatus.ERROR,
                                {"error": error_message, "errorType": error_type.value, "attempt": task.attempt})
        try:
            request = await self.store.get_rebalance_request(task.rebalance_request_id)
            if request is not None and not request.is_terminal:
                transition(request, RebalanceStatus.ERROR)
                await self.store.update_rebalance_request(request.id, {
                    "status": RebalanceStatus.ERROR,
                    "error_message": error_message,
                    "error_type": error_type.value,
                    "completed_at": utcnow(),
                    "rebalance_plan": {
                        "error": error_message,
                        "errorType": error_type.value,
                        "timestamp": utcnow().isoformat(),
                    },
                })
        except Exception as e:
            app_logger.log_error(f"Failed to update rebalance status: {e}")

        self.notifier.notify_async(
            ACTION_REBALANCE_ERROR,
            task.rebalance_request_id,
            success=False,
            error=error_message,
            error_type=error_type,
            user_id=task.user_id,
        )

    async def _fetch_portfolio(self, task: RebalanceTask) -> AccountState:
        try:
            account = await self.broker.get_account_state(task.user_id, task.api_settings)
        except (ApiKeyError, DataFetchError):
            raise
        except RebalanceEngineError:
            raise
        except Exception as e:
            raise DataFetchError(f"Failed to fetch portfolio data: {e}") from e

        if account.portfolio_value <= 0:
            raise DataFetchError("Portfolio value is zero or unavailable from broker")
        return account

    async def _complete_without_analyses(self, request: RebalanceRequest, task: RebalanceTask,
                                         account: AccountState) -> Dict[str, Any]:
        app_logger.log_info(f"No analyses found for rebalance request {request.id}")
        plan = {
            "recommendation": "no_action_needed",
            "message": "No analyses were created - no opportunities met criteria",
            "totalValue": account.portfolio_value,
            "cashBalance": account.cash,
            "actions": [],
            "completedAt": utcnow().isoformat(),
        }
        await self._persist_completion(request, plan, build_portfolio_snapshot(account))
        self.notifier.notify_async(ACTION_COMPLETE_REBALANCE, request.id, user_id=task.user_id)
        return plan

    def _risk_decisions(self, task: RebalanceTask, analyses: List[AnalysisRecord]) -> Dict[str, RiskDecision]:
        if task.risk_manager_decisions:
            return {
                ticker.upper(): RiskDecision.model_validate({**(decision or {}), "ticker": ticker.upper()})
                for ticker, decision in task.risk_manager_decisions.items()
            }
        return build_risk_decisions(analyses)

    async def _plan_and_execute(self, request: RebalanceRequest, task: RebalanceTask, account: AccountState,
                                analyses: List[AnalysisRecord], existing_orders,
                                progress: Dict[str, str]) -> Dict[str, Any]:
        constraints = task.constraints or request.constraints
        sizing = resolve_sizing(constraints, task.api_settings, self.sizing_defaults)
        risk_profile = resolve_risk_profile(constraints, task.api_settings, self.engine_config.default_risk_profile)
        target_cash_percent = next(
            value for value in (
                constraints.target_cash_allocation if constraints else None,
                request.target_cash_allocation,
                self.engine_config.default_target_cash_percent,
            ) if value is not None
        )

        decisions = adjust_confidences_for_risk_level(self._risk_decisions(task, analyses), risk_profile)

        tickers: List[str] = []
        for ticker in list(task.tickers) + [analysis.ticker for analysis in analyses] + list(decisions):
            if ticker not in tickers:
                tickers.append(ticker)
        held = [position.ticker for position in account.positions if position.ticker not in tickers]
        considered = tickers + held

        total_value = account.portfolio_value
        available_cash = account.available_cash
        deployable_cap = calculate_deployable_cap(available_cash, total_value, target_cash_percent)

        allowed, blocked, pending = filter_tickers_by_pending_orders(considered, account.open_orders)
        allocation_plan = calculate_target_allocations(tickers, decisions, target_cash_percent, risk_profile, held)

        prompt_context = prompts.PromptContext(
            total_value=total_value,
            available_cash=available_cash,
            deployable_cap=deployable_cap,
            current_cash=account.cash,
            target_cash_percent=target_cash_percent,
            positions=account.positions,
            tickers=considered,
            allowed_tickers=allowed,
            blocked_tickers=blocked,
            risk_decisions=decisions,
            sizing=sizing,
            risk_profile=risk_profile,
            pending_display=prompts.format_pending_orders(account.open_orders, account.reserved_capital),
            near_limit_threshold=_setting(constraints, "near_limit_threshold", task.api_settings, 20.0),
            near_position_threshold=_setting(constraints, "near_position_threshold", task.api_settings, 20.0),
        )

        client = self.generation_client.for_settings(task.api_settings)
        extractor = DecisionExtractor(client, self.extraction_config)

        if existing_orders:
            raw_orders = orders_to_raw(existing_orders, allowed)
        else:
            progress["stage"] = "Rebalance decision"
            await self.checker.checkpoint(request.id, "before_decision")
            decision = await extractor.request_decision(
                prompts.build_decision_prompt(prompt_context), prompts.DECISION_SYSTEM_PROMPT
            )
            progress["stage"] = "Order extraction"
            await self.checker.checkpoint(request.id, "before_extraction")
            extraction = await extractor.extract_orders(decision.text, total_value, allowed)
            raw_orders = extraction.orders

        prices = {analysis.ticker: analysis.current_price for analysis in analyses if analysis.current_price}
        synthesis = self.synthesizer.synthesize(raw_orders, SynthesisContext(
            total_value=total_value,
            available_cash=available_cash,
            target_cash_percent=target_cash_percent,
            sizing=sizing,
            positions={position.ticker: position for position in account.positions},
            risk_decisions=decisions,
            prices=prices,
            blocked_tickers=set(blocked),
            tickers=allowed,
            current_cash=account.cash,
            noise_floor_percent=self.engine_config.noise_floor_percent,
            default_price=self.engine_config.default_price,
        ))

        decision_text = reconstruct_decision_text(synthesis.actions, [])
        await self.checker.checkpoint(request.id, "before_reasoning")
        reasoning = await self._generate_reasoning(client, decision_text, prompt_context)
        combined = f"{decision_text}\n\n---\n\n## Detailed Portfolio Reasoning\n\n{reasoning}"

        progress["stage"] = "Trade order creation"
        await self.checker.checkpoint(request.id, "before_order_creation")
        if existing_orders:
            trade_orders = existing_orders
            orders_created = 0
        else:
            orders = create_trade_orders_from_actions(
                synthesis.actions, request.id, pending,
                {position.ticker: position for position in account.positions},
            )
            try:
                trade_orders = await self.store.create_trade_orders(orders) if orders else []
            except StoreError as e:
                raise StoreError(f"Trade order submission failed: {e.message}") from e
            orders_created = len(trade_orders)

        progress["stage"] = "Plan persistence"
        snapshot = build_portfolio_snapshot(account, total_value)
        plan = {
            "portfolio": {
                "totalValue": total_value,
                "cashAvailable": account.cash,
                "stockValue": snapshot["stockValue"],
                "targetStockAllocation": 100 - target_cash_percent,
                "targetCashAllocation": target_cash_percent,
                "currentStockAllocation": snapshot["currentStockAllocation"],
                "currentCashAllocation": snapshot["currentCashAllocation"],
                "deployableCap": synthesis.initial_cap,
            },
            "targetAllocations": allocation_plan.allocations,
            "recommendedPositions": build_recommended_positions(synthesis.actions),
            "actions": [action.to_wire() for action in synthesis.actions],
            "summary": synthesis.summary.to_wire(),
            "decisionText": combined,
            "tradeOrders": [trade_order_summary(order) for order in trade_orders],
            "relatedAnalyses": [
                {
                    "id": analysis.id,
                    "ticker": analysis.ticker,
                    "decision": analysis.decision,
                    "confidence": analysis.confidence,
                    "riskScore": analysis.risk_score,
                }
                for analysis in analyses
            ],
            "agentInsights": {"portfolioManager": combined},
            "ordersCreated": orders_created,
            "resumed": bool(existing_orders),
            "pendingOrdersConsidered": len(account.open_orders),
            "reservedCapital": account.reserved_capital,
            "completedAt": utcnow().isoformat(),
        }

        await self._persist_completion(request, plan, snapshot)
        self.notifier.notify_async(ACTION_COMPLETE_REBALANCE, request.id, user_id=task.user_id)

        app_logger.log_info(f"Rebalance complete: {orders_created} orders created, "
                            f"{synthesis.summary.total_trades} trades planned")
        return plan

    async def _generate_reasoning(self, client: TextGenerationClient, decision_text: str,
                                  prompt_context: prompts.PromptContext) -> str:
        try:
            return await client.generate(
                prompts.build_reasoning_prompt(decision_text, prompt_context),
                prompts.REASONING_SYSTEM_PROMPT,
                self.extraction_config.reasoning_output_budget,
            )
        except Exception as e:
            error_type = classify_error(e)
            if error_type == ErrorType.OTHER:
                error_type = ErrorType.AI_ERROR
            message = getattr(e, "message", None) or str(e)
            app_logger.log_warning(f"Failed to generate detailed reasoning ({error_type.value}): {message}")
            return f"Unable to generate detailed reasoning ({error_type.value}): {message}"

    async def _persist_completion(self, request: RebalanceRequest, plan: Dict[str, Any],
                                  snapshot: Dict[str, Any]) -> None:
        current = await self.store.get_rebalance_request(request.id)
        if current is None:
            raise RebalanceStopped("Rebalance request not found - may have been deleted", is_deleted=True)
        if current.status == RebalanceStatus.CANCELLED:
            raise RebalanceStopped("Rebalance request was cancelled", is_cancelled=True)
        transition(current, RebalanceStatus.COMPLETED)
        await self.store.update_rebalance_request(request.id, {
            "status": RebalanceStatus.COMPLETED,
            "rebalance_plan": plan,
            "portfolio_snapshot": snapshot,
            "completed_at": utcnow(),
            "error_message": None,
            "error_type": None,
        })
        await self._record_step(request.id, WorkflowStepStatus.COMPLETED, {
            "ordersCreated": plan.get("ordersCreated", 0),
            "completedAt": plan.get("completedAt"),
        })

    def _terminal_result(self, request: RebalanceRequest, retry_info: Dict[str, Any]) -> EngineResult:
        if request.status == RebalanceStatus.COMPLETED:
            app_logger.log_info(f"Rebalance request {request.id} already completed - returning stored plan")
            return EngineResult(success=True, plan=request.rebalance_plan, retry_info=retry_info)
        if request.status == RebalanceStatus.CANCELLED:
            return EngineResult(success=False, error="Rebalance request was cancelled", stopped=True,
                                retry_info=retry_info)
        try:
            error_type = ErrorType(request.error_type) if request.error_type else None
        except ValueError:
            error_type = ErrorType.OTHER
        return EngineResult(success=False, error=request.error_message or "Rebalance request already failed",
                            error_type=error_type, retry_info=retry_info)

    async def _record_step(self, request_id: str, status: WorkflowStepStatus, data: Dict[str, Any]) -> None:
        try:
            await self.store.update_workflow_step(request_id, WORKFLOW_STEP, status,
                                                  {**data, "timestamp": datetime.now().isoformat()})
        except Exception as e:
            app_logger.log_error(f"Failed to update workflow step: {e}")


def _setting(constraints, name: str, api_settings: Dict[str, Any], default: float) -> float:
    value = getattr(constraints, name, None) if constraints else None
    if value is None:
        value = api_settings.get(name)
    return float(value) if value is not None else default
