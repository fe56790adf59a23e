import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep tests hermetic regardless of local shell/.env values.
os.environ.pop("LLM_CODING_PROVIDER", None)
os.environ.pop("LLM_CODING_MODEL", None)

from llm_coding.errors import SchemaValidationFailure  # noqa: E402
from llm_coding.schemas import VectorIndexConfig  # noqa: E402
from llm_coding.vector_index import EmbeddingIndex  # noqa: E402


CODE_VECTORS = {
    "J01.90": [1.0, 0.0, 0.0, 0.0],
    "R51.9": [0.0, 1.0, 0.0, 0.0],
    "R50.9": [0.0, 0.0, 1.0, 0.0],
    "R21": [0.0, 0.0, 0.0, 1.0],
}

CODE_DESCRIPTIONS = {
    "J01.90": "Acute sinusitis, unspecified",
    "R51.9": "Headache, unspecified",
    "R50.9": "Fever, unspecified",
    "R21": "Rash and other nonspecific skin eruption",
}

SYMPTOM_VECTORS = {
    "headache": [0.1, 1.0, 0.0, 0.0],
    "fever": [0.0, 0.1, 1.0, 0.0],
}


class FakeCompleter:
    """Scripted structured-completion collaborator keyed by JSON schema name."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses = dict(responses or {})
        self.calls: List[Dict[str, Any]] = []

    @property
    def stages(self) -> List[str]:
        return [c["name"] for c in self.calls]

    def call(self, name: str) -> Dict[str, Any]:
        return next(c for c in self.calls if c["name"] == name)

    async def complete(self, system, user, json_schema, factory):
        name = json_schema["name"]
        self.calls.append({"name": name, "system": system, "user": user, "schema": json_schema})
        await asyncio.sleep(0)
        resp = self.responses.get(name)
        if isinstance(resp, BaseException):
            raise resp
        if resp is None:
            return None
        try:
            return factory(resp)
        except SchemaValidationFailure:
            return None


class FakeEmbedder:
    def __init__(self, vectors: Dict[str, List[float]], delays: Optional[Dict[str, float]] = None, error: Optional[BaseException] = None):
        self.vectors = vectors
        self.delays = delays or {}
        self.error = error
        self.started: List[str] = []
        self.finished: List[str] = []

    async def embed(self, text, tier="small"):
        self.started.append(text)
        await asyncio.sleep(self.delays.get(text, 0))
        if self.error is not None:
            raise self.error
        self.finished.append(text)
        return list(self.vectors[text])


@pytest.fixture
def code_index():
    index = EmbeddingIndex(dimension=4, max_elements=len(CODE_VECTORS), config=VectorIndexConfig())
    index.insert_batch(CODE_VECTORS.items())
    return index


@pytest.fixture
def descriptions():
    return dict(CODE_DESCRIPTIONS)
