"""Bounded retry around generation calls whose output must parse into orders."""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from rebalance_engine.clients.base import TextGenerationClient
from rebalance_engine.config.models import ExtractionConfig
from rebalance_engine.exceptions import (
    ErrorType,
    ExtractionError,
    ProviderError,
    RateLimitError,
)
from rebalance_engine.extraction.parser import (
    ExtractionOutcome,
    Ok,
    Truncated,
    format_decision_lines,
    parse_itemized_decisions,
    parse_order_payload,
)
from rebalance_engine.models import RawOrder
from rebalance_engine import prompts

_AFFORD_PATTERN = re.compile(r"can only afford (\d+)", re.IGNORECASE)
_CREDIT_SIGNALS = ("can only afford", "requires more credits")


@dataclass
class ExtractionResult:
    """Text returned by the provider together with the orders parsed from it"""
    text: str
    orders: List[RawOrder]
    attempts: int


class DecisionExtractor:
    """Runs the decision and extraction generation calls with retry and truncation recovery"""

    def __init__(self, client: TextGenerationClient, config: Optional[ExtractionConfig] = None,
                 logger: Optional[logging.Logger] = None):
        self.client = client
        self.config = config or ExtractionConfig()
        self.logger = logger or logging.getLogger(__name__)

    async def request_decision(self, prompt: str, system_prompt: str,
                               base_budget: Optional[int] = None) -> ExtractionResult:
        """Natural-language decision call; the reply must contain a numbered action list"""
        result = await self._with_retry(
            "decision", prompt, system_prompt, parse_itemized_decisions, base_budget
        )
        result.text = format_decision_lines(result.text)
        return result

    async def extract_orders(self, decision_text: str, total_value: float, tickers: List[str],
                             base_budget: Optional[int] = None) -> ExtractionResult:
        """Structured extraction call turning a decision text into an order payload"""
        prompt = prompts.build_extraction_prompt(decision_text, tickers, total_value)
        return await self._with_retry(
            "extraction",
            prompt,
            prompts.EXTRACTION_SYSTEM_PROMPT,
            lambda text: parse_order_payload(text, total_value),
            base_budget,
        )

    async def _with_retry(self, label: str, prompt: str, system_prompt: str,
                          parse: Callable[[str], ExtractionOutcome],
                          base_budget: Optional[int] = None) -> ExtractionResult:
        max_attempts = self.config.max_attempts
        base_budget = base_budget or self.config.base_output_budget
        budget_ceiling: Optional[int] = None
        last_error = "no attempts made"
        last_outcome: Optional[ExtractionOutcome] = None

        for attempt in range(1, max_attempts + 1):
            budget = base_budget + (attempt - 1) * self.config.budget_increment
            if budget_ceiling is not None:
                budget = min(budget, budget_ceiling)

            attempt_system_prompt = system_prompt
            if attempt > 1:
                attempt_system_prompt = system_prompt + "\n\n" + prompts.completeness_instruction(
                    attempt, truncated=isinstance(last_outcome, Truncated)
                )

            self.logger.info(f"{label} attempt {attempt}/{max_attempts} with output budget {budget}")

            try:
                text, budget_ceiling = await self._generate(
                    prompt, attempt_system_prompt, budget, budget_ceiling
                )
            except ProviderError as e:
                if e.error_type in (ErrorType.RATE_LIMIT, ErrorType.API_KEY):
                    raise
                last_error = e.message
                last_outcome = None
                self.logger.warning(f"{label} attempt {attempt} failed: {e.message}")
            else:
                last_outcome = parse(text)
                if isinstance(last_outcome, Ok):
                    self.logger.info(f"{label} succeeded on attempt {attempt} "
                                     f"with {len(last_outcome.orders)} orders")
                    return ExtractionResult(text=text, orders=last_outcome.orders, attempts=attempt)

                last_error = f"{last_outcome.kind}: {last_outcome.reason}"
                self.logger.warning(f"{label} attempt {attempt} returned {last_error}")

            if attempt < max_attempts and self.config.retry_delay_seconds > 0:
                await asyncio.sleep(self.config.retry_delay_seconds * attempt)

        raise ExtractionError(
            f"Extraction failed after {max_attempts} attempts. Last error: {last_error}",
            ErrorType.AI_ERROR,
        )

    async def _generate(self, prompt: str, system_prompt: str, budget: int,
                        budget_ceiling: Optional[int]):
        """
        Call the provider once, retrying immediately with a reduced budget when the
        provider reports it can only afford fewer output units.

        Returns:
            (text, budget ceiling to apply to later attempts)
        """
        try:
            return await self.client.generate(prompt, system_prompt, budget), budget_ceiling
        except ProviderError as e:
            if budget_ceiling is not None or not self._is_credit_error(e.message):
                raise

            reduced = self._reduced_budget(e.message)
            self.logger.warning(f"Provider cannot afford {budget} output units, retrying once with {reduced}")
            try:
                return await self.client.generate(prompt, system_prompt, reduced), reduced
            except ProviderError as retry_error:
                if retry_error.error_type == ErrorType.RATE_LIMIT:
                    raise RateLimitError(retry_error.message, retry_error.status) from retry_error
                raise

    @staticmethod
    def _is_credit_error(message: str) -> bool:
        text = (message or "").lower()
        return any(signal in text for signal in _CREDIT_SIGNALS)

    def _reduced_budget(self, message: str) -> int:
        match = _AFFORD_PATTERN.search(message or "")
        if not match:
            return self.config.max_reduced_budget
        affordable = int(match.group(1))
        return max(1, min(affordable - self.config.credit_buffer, self.config.max_reduced_budget))
