from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import openai

from .errors import CollaboratorUnavailable
from .llm_client import make_openai_client, retrying
from .schemas import EmbeddingConfig, EmbeddingTier, LlmClientConfig

logger = logging.getLogger(__name__)


class OpenAIEmbedder:
    """Text → vector through the OpenAI (or Azure OpenAI) embeddings endpoint."""

    def __init__(self, config: Optional[EmbeddingConfig] = None, client: Any = None):
        self.config = config or EmbeddingConfig()
        self.client = client if client is not None else make_openai_client(LlmClientConfig.from_env())

    async def embed(self, text: str, tier: EmbeddingTier = "small") -> List[float]:
        model = self.config.model_for(tier)
        try:
            async for attempt in retrying(self.config.max_attempts, self.config.retry_backoff):
                with attempt:
                    response = await self.client.embeddings.create(model=model, input=text)
        except openai.OpenAIError as e:
            raise CollaboratorUnavailable(f"Embedding request failed ({model}): {e}") from e
        data = getattr(response, "data", None)
        embedding = getattr(data[0], "embedding", None) if data else None
        if not embedding:
            raise CollaboratorUnavailable(f"Embedding response from {model} carried no vector")
        return list(embedding)


class LocalEmbedder:
    """Text → vector with a local sentence-transformers model, loaded lazily per tier."""

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or EmbeddingConfig(backend="local")
        self.models: Dict[str, Any] = {}

    def _ensure_model(self, name: str):
        if name not in self.models:
            from sentence_transformers import SentenceTransformer  # lazy import

            self.models[name] = SentenceTransformer(name)
        return self.models[name]

    def _encode(self, text: str, name: str) -> List[float]:
        model = self._ensure_model(name)
        return [float(x) for x in model.encode([text], normalize_embeddings=False)[0]]

    async def embed(self, text: str, tier: EmbeddingTier = "small") -> List[float]:
        name = self.config.model_for(tier)
        try:
            return await asyncio.to_thread(self._encode, text, name)
        except Exception as e:
            raise CollaboratorUnavailable(f"Local embedding failed ({name}): {e}") from e


def make_embedder(config: EmbeddingConfig, client: Any = None):
    if config.backend == "local":
        return LocalEmbedder(config)
    return OpenAIEmbedder(config, client=client)
