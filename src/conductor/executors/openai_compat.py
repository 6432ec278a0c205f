"""Executor backed by an OpenAI-compatible chat completions API."""

import logging
import os
import time
import uuid
from typing import Any

import aiohttp

from ..errors import ConfigurationError, ExecutorError
from .base import ExecutionResult, Executor

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TOKEN_ENV = "OPENAI_API_KEY"
DEFAULT_MODEL = "gpt-4o"
DEFAULT_TEMPERATURE = 0.3

MODEL_MAP = {
    "gpt-4o": "gpt-4o",
    "gpt-4-turbo": "gpt-4-turbo-preview",
    "gpt-3.5-turbo": "gpt-3.5-turbo",
}

# Rough USD per token, for stats only
COST_PER_TOKEN = {
    "gpt-4o": 0.00003,
    "gpt-4-turbo-preview": 0.00003,
    "gpt-3.5-turbo": 0.0000015,
}


class OpenAIExecutor(Executor):
    """Keeps a message history and posts it to ``/chat/completions`` each call."""

    def __init__(
        self,
        instance_name: str,
        model: str | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        api_version: str | None = None,
        token_env: str | None = None,
        base_url: str | None = None,
        timeout: float = 300,
    ):
        """Initialize the executor.

        Raises:
            ConfigurationError: If the API key environment variable is unset
        """
        super().__init__(instance_name)
        self.token_env = token_env or DEFAULT_TOKEN_ENV
        self.api_key = os.environ.get(self.token_env)
        if not self.api_key:
            raise ConfigurationError(
                f"OpenAI API key not found in environment variable: {self.token_env}"
            )

        self.model = MODEL_MAP.get(model or DEFAULT_MODEL, model or DEFAULT_MODEL)
        self.temperature = DEFAULT_TEMPERATURE if temperature is None else temperature
        self.api_version = api_version or "chat_completion"
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.messages: list[dict[str, str]] = []
        if system_prompt:
            self.messages.append({"role": "system", "content": system_prompt})

    def _set_system_prompt(self, system_prompt: str) -> None:
        message = {"role": "system", "content": system_prompt}
        for index, existing in enumerate(self.messages):
            if existing["role"] == "system":
                self.messages[index] = message
                return
        self.messages.insert(0, message)

    def _payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
            "temperature": self.temperature,
        }
        if self.api_version == "responses":
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(
                f"{self.base_url}/chat/completions", headers=headers, json=payload
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise ExecutorError(
                        f"API returned status {response.status}: {error_text[:200]}"
                    )
                return await response.json()

    async def execute(self, prompt: str, system_prompt: str | None = None) -> ExecutionResult:
        if system_prompt:
            self._set_system_prompt(system_prompt)
        self.messages.append({"role": "user", "content": prompt})
        if self._session_id is None:
            self._session_id = uuid.uuid4().hex

        started = time.monotonic()
        try:
            data = await self._post(self._payload())
        except aiohttp.ClientError as e:
            self.messages.pop()
            raise ExecutorError(f"Network error calling {self.base_url}: {e}") from e
        except ExecutorError:
            self.messages.pop()
            raise

        choices = data.get("choices") or []
        content = ""
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        self.messages.append({"role": "assistant", "content": content})

        tokens = int((data.get("usage") or {}).get("total_tokens") or 0)
        cost = tokens * COST_PER_TOKEN.get(self.model, COST_PER_TOKEN["gpt-4o"])
        self.stats.total_calls += 1
        self.stats.total_tokens += tokens
        self.stats.total_cost += cost

        return ExecutionResult(
            text=content,
            session_id=self._session_id,
            cost=cost,
            tokens=tokens,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def reset_session(self) -> str | None:
        """Drop the conversation, keeping only the system message."""
        self.messages = [m for m in self.messages if m["role"] == "system"]
        return await super().reset_session()
