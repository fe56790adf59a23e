"""LLM-assisted ICD-10 coding of clinical notes.

Modules:
- schemas: dataclass models for index records, stage outputs and configs
- errors: exception hierarchy for the index, pipeline and collaborators
- vector_index: append-only FAISS index with code ↔ position mapping
- aggregator: merge and deduplicate neighbors into candidate codes
- prompt_builder: construct constrained JSON prompts per stage
- llm_client: async OpenAI structured-completion client with retries
- embedder: OpenAI or local sentence-transformers embeddings
- pipeline: six-stage coding orchestration
- seed: build/load/save the embedded code table
- batch_runner: code one note or a CSV of notes from the command line
"""

__all__ = [
    "schemas",
    "errors",
    "vector_index",
    "aggregator",
    "prompt_builder",
    "llm_client",
    "embedder",
    "pipeline",
    "seed",
    "batch_runner",
]
