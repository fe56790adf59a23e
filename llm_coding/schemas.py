from __future__ import annotations

import os
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from .errors import SchemaValidationFailure


class Stage(str, Enum):
    EXTRACT = "S1"
    RETRIEVE = "S2"
    SYNTHESIZE = "S3"
    ASSIGN = "S4"
    REVIEW = "S5"
    RESOLVE = "S6"

    @property
    def label(self) -> str:
        return _STAGE_LABELS[self]


_STAGE_LABELS = {
    Stage.EXTRACT: "symptom extraction",
    Stage.RETRIEVE: "candidate retrieval",
    Stage.SYNTHESIZE: "assessment synthesis",
    Stage.ASSIGN: "code assignment",
    Stage.REVIEW: "patient review",
    Stage.RESOLVE: "dispute resolution",
}


# -------------------- Index / lookup records --------------------
@dataclass
class CodeEntry:
    code: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SeedRecord:
    code: str
    description: str
    emb: List[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NeighborResult:
    code: str
    distance: float
    position: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CandidateCode:
    code: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -------------------- Stage outputs --------------------
def _require(data: Any, key: str) -> Any:
    if not isinstance(data, dict):
        raise SchemaValidationFailure(f"expected an object, got {type(data).__name__}", raw=data)
    if key not in data:
        raise SchemaValidationFailure(f"missing field '{key}'", raw=data)
    return data[key]


def _require_str(data: Any, key: str) -> str:
    val = _require(data, key)
    if not isinstance(val, str):
        raise SchemaValidationFailure(f"field '{key}' must be a string", raw=data)
    return val


def _require_list(data: Any, key: str) -> List[Any]:
    val = _require(data, key)
    if not isinstance(val, list):
        raise SchemaValidationFailure(f"field '{key}' must be an array", raw=data)
    return val


@dataclass
class SymptomList:
    symptoms: List[str]

    @classmethod
    def from_dict(cls, data: Any) -> "SymptomList":
        items = _require_list(data, "symptoms")
        symptoms: List[str] = []
        for s in items:
            if not isinstance(s, str):
                raise SchemaValidationFailure("symptoms must be strings", raw=data)
            if s.strip():
                symptoms.append(s.strip())
        return cls(symptoms=symptoms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AssessmentPlan:
    assessment: str
    plan: str

    @classmethod
    def from_dict(cls, data: Any) -> "AssessmentPlan":
        return cls(assessment=_require_str(data, "assessment"), plan=_require_str(data, "plan"))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AssignedCode:
    code: str
    description: str
    evidence: str

    @classmethod
    def from_dict(cls, data: Any) -> "AssignedCode":
        return cls(
            code=_require_str(data, "code").strip(),
            description=_require_str(data, "description"),
            evidence=_require_str(data, "evidence"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CodeAssignment:
    codes: List[AssignedCode]

    @classmethod
    def from_dict(cls, data: Any) -> "CodeAssignment":
        return cls(codes=[AssignedCode.from_dict(c) for c in _require_list(data, "codes")])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReviewEntry:
    code: str
    accept: bool
    reason: str

    @classmethod
    def from_dict(cls, data: Any) -> "ReviewEntry":
        accept = _require(data, "accept")
        # bool only; 0/1 or "false" are rejected
        if not isinstance(accept, bool):
            raise SchemaValidationFailure("field 'accept' must be a boolean", raw=data)
        return cls(
            code=_require_str(data, "code").strip(),
            accept=accept,
            reason=_require_str(data, "reason"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PatientReview:
    review: List[ReviewEntry]

    @classmethod
    def from_dict(cls, data: Any) -> "PatientReview":
        return cls(review=[ReviewEntry.from_dict(r) for r in _require_list(data, "review")])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


StageOutput = Union[SymptomList, AssessmentPlan, CodeAssignment, PatientReview]

_STAGE_OUTPUT_TYPES = {
    Stage.EXTRACT: SymptomList,
    Stage.SYNTHESIZE: AssessmentPlan,
    Stage.ASSIGN: CodeAssignment,
    Stage.REVIEW: PatientReview,
    Stage.RESOLVE: CodeAssignment,
}


def validate(stage: Stage, raw: Any) -> StageOutput:
    """Coerce a raw completion object into the declared output type of `stage`.

    Raises SchemaValidationFailure when the shape does not match. S2 is computed
    locally and has no declared completion shape.
    """
    output_type = _STAGE_OUTPUT_TYPES.get(Stage(stage))
    if output_type is None:
        raise ValueError(f"Stage {stage} has no structured completion output")
    return output_type.from_dict(raw)


@dataclass
class DisputeRecord:
    code: str
    description: Optional[str]
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CodingRun:
    text: str
    symptoms: List[str] = field(default_factory=list)
    candidates: List[CandidateCode] = field(default_factory=list)
    assessment: Optional[AssessmentPlan] = None
    physician_codes: List[AssignedCode] = field(default_factory=list)
    review: List[ReviewEntry] = field(default_factory=list)
    disputes: List[DisputeRecord] = field(default_factory=list)
    final_codes: List[AssignedCode] = field(default_factory=list)
    resolution_skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -------------------- Configuration --------------------
EmbeddingTier = Literal["small", "large"]


@dataclass
class VectorIndexConfig:
    backend: Literal["hnsw", "flat"] = "hnsw"
    hnsw_m: int = 16
    ef_construction: int = 200
    ef_search: int = 64
    # extra raw hits fetched per query so equal distances can be ordered by position
    overfetch: int = 8

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EmbeddingConfig:
    backend: Literal["openai", "local"] = "openai"
    small_model: str = "text-embedding-3-small"
    large_model: str = "text-embedding-3-large"
    local_small_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    local_large_model: str = "sentence-transformers/all-mpnet-base-v2"
    max_attempts: int = 3
    retry_backoff: float = 1.0

    def model_for(self, tier: EmbeddingTier) -> str:
        if tier not in ("small", "large"):
            raise ValueError(f"Unknown embedding tier: {tier!r}")
        if self.backend == "local":
            return self.local_small_model if tier == "small" else self.local_large_model
        return self.small_model if tier == "small" else self.large_model

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LlmClientConfig:
    provider: Literal["openai", "azure"] = "openai"
    model: str = "gpt-4o"
    temperature: float = 0.0
    timeout: int = 60
    api_version: str = "2024-08-01-preview"
    azure_endpoint: Optional[str] = None
    max_attempts: int = 3
    retry_backoff: float = 1.0

    @classmethod
    def from_env(cls) -> "LlmClientConfig":
        cfg = cls()
        provider = os.environ.get("LLM_CODING_PROVIDER")
        if provider:
            if provider not in ("openai", "azure"):
                raise ValueError(f"LLM_CODING_PROVIDER must be 'openai' or 'azure', got {provider!r}")
            cfg.provider = provider  # type: ignore[assignment]
        cfg.model = os.environ.get("LLM_CODING_MODEL", cfg.model)
        cfg.api_version = os.environ.get("LLM_CODING_API_VERSION", cfg.api_version)
        cfg.azure_endpoint = os.environ.get("AZURE_OPENAI_ENDPOINT", cfg.azure_endpoint)
        return cfg

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineConfig:
    """Configuration for one clinical note → ICD-10 coding run."""
    retrieve_top_k: int = 10
    embedding_tier: EmbeddingTier = "small"
    embed_concurrency: int = 8
    # When True and the reviewer rejects nothing, S4's codes are final and S6 is not called
    skip_resolution_without_disputes: bool = False
    out_of_candidate_policy: Literal["drop", "fail"] = "drop"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
