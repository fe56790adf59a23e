from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .errors import (
    BatchInsertError,
    CapacityExceeded,
    DimensionMismatch,
    DuplicateIdentifier,
    EmptyIndex,
    VectorIndexError,
)
from .schemas import NeighborResult, VectorIndexConfig


try:
    import faiss  # type: ignore
except Exception as e:  # pragma: no cover - import error clarity
    faiss = None  # type: ignore

logger = logging.getLogger(__name__)


def _normalize_rows(x: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(x, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return x / norms


class EmbeddingIndex:
    """Append-only ANN index over code embeddings, searched by cosine distance.

    FAISS only knows dense row positions; this class owns the bijection between
    caller identifiers and those positions. Positions are handed out from 0 in
    insertion order and are never reused.
    """

    def __init__(self, dimension: int, max_elements: int, config: Optional[VectorIndexConfig] = None):
        if faiss is None:
            raise ImportError(
                "faiss-cpu is required. Please install faiss-cpu in requirements."
            )
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        if max_elements <= 0:
            raise ValueError(f"max_elements must be positive, got {max_elements}")
        self.dimension = dimension
        self.max_elements = max_elements
        self.config = config or VectorIndexConfig()
        self.index = self._new_faiss_index()
        self.id_to_position: Dict[str, int] = {}
        self.position_to_id: List[str] = []

    def _new_faiss_index(self):
        if self.config.backend == "flat":
            return faiss.IndexFlatIP(self.dimension)
        if self.config.backend != "hnsw":
            raise ValueError(f"Unknown index backend: {self.config.backend!r}")
        # Inner product search on normalized vectors approximates cosine similarity
        index = faiss.IndexHNSWFlat(self.dimension, self.config.hnsw_m, faiss.METRIC_INNER_PRODUCT)
        index.hnsw.efConstruction = self.config.ef_construction
        index.hnsw.efSearch = self.config.ef_search
        return index

    def _as_row(self, vector: Sequence[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32)
        if arr.ndim != 1 or arr.shape[0] != self.dimension:
            actual = arr.shape[0] if arr.ndim == 1 else int(arr.size)
            raise DimensionMismatch(self.dimension, actual)
        return _normalize_rows(arr.reshape(1, -1))

    # ------------------------ Insert ------------------------
    @property
    def size(self) -> int:
        return len(self.position_to_id)

    def __len__(self) -> int:
        return self.size

    def __contains__(self, identifier: object) -> bool:
        return identifier in self.id_to_position

    def insert(self, identifier: str, embedding: Sequence[float]) -> int:
        row = self._as_row(embedding)
        if self.size >= self.max_elements:
            raise CapacityExceeded(self.max_elements)
        if identifier in self.id_to_position:
            raise DuplicateIdentifier(identifier)

        position = self.size
        self.index.add(row)
        self.id_to_position[identifier] = position
        self.position_to_id.append(identifier)
        return position

    def insert_batch(self, items: Iterable[Tuple[str, Sequence[float]]]) -> int:
        inserted = 0
        for identifier, embedding in items:
            try:
                self.insert(identifier, embedding)
            except VectorIndexError as e:
                raise BatchInsertError(inserted, e) from e
            inserted += 1
        logger.debug("Inserted %d items; index size is now %d", inserted, self.size)
        return inserted

    # ------------------------ Query ------------------------
    def position_of(self, identifier: str) -> Optional[int]:
        return self.id_to_position.get(identifier)

    def identifier_at(self, position: int) -> str:
        return self.position_to_id[position]

    def identifiers(self) -> List[str]:
        return list(self.position_to_id)

    def query(self, vector: Sequence[float], k: int = 10) -> List[NeighborResult]:
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")
        q = self._as_row(vector)
        if self.size == 0:
            raise EmptyIndex()

        fetch = min(self.size, k + max(self.config.overfetch, 0))
        if self.config.backend == "hnsw":
            params = faiss.SearchParametersHNSW(efSearch=max(self.config.ef_search, fetch))
            scores, idx = self.index.search(q, fetch, params=params)  # type: ignore
        else:
            scores, idx = self.index.search(q, fetch)  # type: ignore

        hits: List[NeighborResult] = []
        for j, score in zip(idx[0].tolist(), scores[0].tolist()):
            if j == -1:
                continue
            distance = min(max(1.0 - float(score), 0.0), 2.0)
            hits.append(NeighborResult(code=self.position_to_id[j], distance=distance, position=j))

        # Equal distances resolve to the earlier insertion
        hits.sort(key=lambda h: (h.distance, h.position))
        return hits[:k]
