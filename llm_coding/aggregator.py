from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Sequence

from .schemas import CandidateCode
from .vector_index import EmbeddingIndex

logger = logging.getLogger(__name__)


def aggregate_candidates(
    query_vectors: Sequence[Sequence[float]],
    index: EmbeddingIndex,
    descriptions: Mapping[str, str],
    k: int,
) -> List[CandidateCode]:
    """
    Merge the k nearest codes of every query vector into one candidate list.

    Neighbors are flattened in query order, then rank order. A code keeps its
    first occurrence, so the earliest query vector decides where it lands no
    matter which later vectors also retrieved it. Codes missing from
    `descriptions` are skipped with one warning each.
    """
    seen: Dict[str, bool] = {}
    out: List[CandidateCode] = []
    for vector in query_vectors:
        for neighbor in index.query(vector, k):
            if neighbor.code in seen:
                continue
            description = descriptions.get(neighbor.code)
            if description is None:
                logger.warning("Indexed code %s has no description; skipping candidate", neighbor.code)
                seen[neighbor.code] = False
                continue
            seen[neighbor.code] = True
            out.append(CandidateCode(code=neighbor.code, description=description))
    return out
