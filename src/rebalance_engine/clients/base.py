"""
Abstract client interfaces for the external collaborators of a rebalance run.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from rebalance_engine.models import AccountState


class TextGenerationClient(ABC):
    """Large-language-model provider used for the decision, extraction and reasoning calls"""

    @abstractmethod
    async def generate(self, prompt: str, system_prompt: str, max_output_units: int) -> str:
        """
        Generate text for a prompt.

        Raises:
            ProviderError: on any provider failure; RateLimitError when the
                provider reports quota or rate exhaustion
        """
        pass

    def for_settings(self, api_settings: Optional[Dict[str, Any]]) -> "TextGenerationClient":
        """Return a client bound to a user's provider settings"""
        return self


class BrokerClient(ABC):
    """Source of account positions, cash and open orders"""

    @abstractmethod
    async def get_account_state(self, user_id: str,
                                api_settings: Optional[Dict[str, Any]] = None) -> AccountState:
        """
        Fetch the current account state for a user.

        Raises:
            ApiKeyError: when the broker rejects the credentials
            DataFetchError: on any other fetch failure
        """
        pass
