import aiohttp
from typing import Any, Dict, Optional

from rebalance_engine.clients.base import TextGenerationClient
from rebalance_engine.exceptions import ProviderError, RateLimitError
from rebalance_engine.logger import AppLogger

app_logger = AppLogger(__name__)


class HttpTextGenerationClient(TextGenerationClient):
    """OpenAI-compatible chat completions client"""

    def __init__(self, base_url: str, model: str, api_key: Optional[str] = None,
                 timeout_seconds: float = 120.0, temperature: float = 0.2):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature

    def for_settings(self, api_settings: Optional[Dict[str, Any]]) -> "HttpTextGenerationClient":
        settings = api_settings or {}
        return HttpTextGenerationClient(
            base_url=settings.get("ai_base_url") or self.base_url,
            model=settings.get("ai_model") or self.model,
            api_key=settings.get("ai_api_key") or self.api_key,
            timeout_seconds=self.timeout_seconds,
            temperature=self.temperature,
        )

    async def generate(self, prompt: str, system_prompt: str, max_output_units: int) -> str:
        url = f"{self.base_url}/chat/completions"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_output_units,
            "temperature": self.temperature,
        }

        app_logger.log_debug(f"Calling {self.model} with max_tokens={max_output_units}")

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    json=body,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
                ) as response:
                    if response.status != 200:
                        response_text = await response.text()
                        message = f"AI provider returned status {response.status}: {response_text}"
                        if response.status == 429:
                            raise RateLimitError(message, response.status)
                        raise ProviderError(message, response.status)

                    data = await response.json()

        except aiohttp.ClientError as e:
            raise ProviderError(f"AI provider request failed: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"AI provider response missing content: {e}") from e

        if not content:
            raise ProviderError("AI provider returned an empty response")
        return content
