from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import CollaboratorUnavailable, SchemaValidationFailure
from .schemas import LlmClientConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors worth another attempt; anything else from the SDK is final
TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def make_openai_client(config: LlmClientConfig):
    """One SDK handle per process, shared by the completion and embedding collaborators."""
    if config.provider == "azure":
        return AsyncAzureOpenAI(
            api_version=config.api_version,
            azure_endpoint=config.azure_endpoint,
            timeout=config.timeout,
        )
    return AsyncOpenAI(timeout=config.timeout)


def retrying(max_attempts: int, backoff: float) -> AsyncRetrying:
    return AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max(max_attempts, 1)),
        wait=wait_exponential(multiplier=backoff, min=0, max=10),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
    )


class LlmJSONClient:
    def __init__(self, config: Optional[LlmClientConfig] = None, client: Any = None):
        self.config = config or LlmClientConfig()
        self.client = client if client is not None else make_openai_client(self.config)

    async def create_json(
        self,
        messages: List[Dict[str, Any]],
        json_schema: Optional[Dict] = None,
    ) -> Optional[Dict[str, Any]]:
        try:
            async for attempt in retrying(self.config.max_attempts, self.config.retry_backoff):
                with attempt:
                    response = await self.client.chat.completions.create(
                        model=self.config.model,
                        temperature=self.config.temperature,
                        messages=messages,
                        response_format=(
                            {"type": "json_schema", "json_schema": json_schema}
                            if json_schema is not None
                            else {"type": "json_object"}
                        ),
                    )
        except openai.OpenAIError as e:
            raise CollaboratorUnavailable(f"Completion request failed: {e}") from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            logger.warning("Completion response had no message content: %s", e)
            return None
        if not content:
            logger.warning("Completion response was empty (refusal=%s)", getattr(response.choices[0].message, "refusal", None))
            return None

        try:
            obj = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON returned: %s: %s", e, content[:200])
            return None
        if not isinstance(obj, dict):
            logger.warning("Completion returned JSON %s, expected an object", type(obj).__name__)
            return None
        return obj

    async def complete(
        self,
        system: str,
        user: str,
        json_schema: Dict,
        factory: Callable[[Dict[str, Any]], T],
    ) -> Optional[T]:
        """
        Run one structured completion and validate it through `factory`.

        Returns None when the model output cannot be parsed or does not fit the
        schema. Raises CollaboratorUnavailable on transport or auth failure once
        the retry budget is spent.
        """
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        obj = await self.create_json(messages, json_schema)
        if obj is None:
            return None
        try:
            return factory(obj)
        except (SchemaValidationFailure, TypeError, ValueError, KeyError) as e:
            logger.warning("Completion for %s failed validation: %s", json_schema.get("name"), e)
            return None
