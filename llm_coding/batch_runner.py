from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

import pandas as pd
from dotenv import load_dotenv

from .embedder import make_embedder
from .errors import CodingError
from .llm_client import LlmJSONClient, make_openai_client
from .pipeline import CodingPipeline
from .schemas import CodingRun, EmbeddingConfig, LlmClientConfig, PipelineConfig
from .seed import build_index, descriptions_from_entries, load_code_table, load_seed

logger = logging.getLogger(__name__)


@dataclass
class NoteInput:
    note_id: str
    text: str


@dataclass
class NoteOutcome:
    note_id: str
    run: Optional[CodingRun] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _load_notes_csv(path: str) -> List[NoteInput]:
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    if not {"note_id", "text"}.issubset(df.columns):
        raise ValueError("Input CSV must contain 'note_id' and 'text' columns.")
    return [NoteInput(note_id=str(row["note_id"]).strip(), text=str(row["text"])) for _, row in df.iterrows()]


async def run_batch(pipeline: CodingPipeline, notes: List[NoteInput], concurrency: int) -> List[NoteOutcome]:
    """Code every note; a failed note is recorded and does not affect the others."""
    sem = asyncio.Semaphore(max(concurrency, 1))
    results: List[Optional[NoteOutcome]] = [None] * len(notes)

    async def worker(i: int, note: NoteInput):
        async with sem:
            try:
                results[i] = NoteOutcome(note_id=note.note_id, run=await pipeline.run(note.text))
            except CodingError as e:
                logger.error("Note %s failed: %s", note.note_id, e)
                results[i] = NoteOutcome(note_id=note.note_id, error=str(e))
            except Exception as e:
                logger.exception("Note %s failed unexpectedly", note.note_id)
                results[i] = NoteOutcome(note_id=note.note_id, error=f"{type(e).__name__}: {e}")

    await asyncio.gather(*(worker(i, n) for i, n in enumerate(notes)))
    return [r for r in results if r is not None]


def _write_results_jsonl(path: str, results: List[NoteOutcome]):
    with open(path, "w") as f:
        for r in results:
            f.write(json.dumps(r.to_dict()) + "\n")


def _write_results_csv(path: str, results: List[NoteOutcome]):
    rows = []
    for r in results:
        if r.run is None:
            rows.append({"note_id": r.note_id, "code": None, "description": None, "evidence": None, "error": r.error})
            continue
        for c in r.run.final_codes:
            rows.append({"note_id": r.note_id, "code": c.code, "description": c.description, "evidence": c.evidence, "error": None})
    pd.DataFrame(rows, columns=["note_id", "code", "description", "evidence", "error"]).to_csv(path, index=False)


def build_pipeline(
    seed_path: str,
    codes_csv: Optional[str],
    llm_config: LlmClientConfig,
    embedding_config: EmbeddingConfig,
    pipeline_config: PipelineConfig,
) -> CodingPipeline:
    records = load_seed(seed_path)
    index = build_index(records)
    descriptions = (
        descriptions_from_entries(load_code_table(codes_csv)) if codes_csv else descriptions_from_entries(records)
    )
    client = make_openai_client(llm_config)
    return CodingPipeline(
        index=index,
        descriptions=descriptions,
        llm=LlmJSONClient(llm_config, client=client),
        embedder=make_embedder(embedding_config, client=client),
        config=pipeline_config,
    )


def main():
    parser = argparse.ArgumentParser(description="Assign ICD-10 codes to clinical notes with retrieval + multi-agent review")
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--note-file", help="Plain-text file holding a single note")
    src.add_argument("--input", help="CSV with columns: note_id, text")
    parser.add_argument("--seed", required=True, help="Seed JSON built by `python -m llm_coding.seed`")
    parser.add_argument("--codes-csv", default=None, help="Optional description table (code,description); defaults to the seed's")
    parser.add_argument("--out-jsonl", default="results.jsonl")
    parser.add_argument("--out-csv", default="results.csv")
    parser.add_argument("--model", default=None, help="Completion model or Azure deployment (default from env or gpt-4o)")
    parser.add_argument("--embedding", choices=["openai", "local"], default="openai")
    parser.add_argument("--concurrency", type=int, default=4, help="Notes coded in parallel")
    parser.add_argument("--retrieve-top-k", type=int, default=10)
    parser.add_argument("--skip-resolution-without-disputes", action="store_true")
    parser.add_argument("--out-of-candidate-policy", choices=["drop", "fail"], default="drop")
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    llm_config = LlmClientConfig.from_env()
    if args.model:
        llm_config.model = args.model
    pipeline = build_pipeline(
        args.seed,
        args.codes_csv,
        llm_config,
        EmbeddingConfig(backend=args.embedding),
        PipelineConfig(
            retrieve_top_k=args.retrieve_top_k,
            skip_resolution_without_disputes=args.skip_resolution_without_disputes,
            out_of_candidate_policy=args.out_of_candidate_policy,
        ),
    )

    if args.note_file:
        with open(args.note_file) as f:
            notes = [NoteInput(note_id="note", text=f.read())]
    else:
        notes = _load_notes_csv(args.input)

    results = asyncio.run(run_batch(pipeline, notes, args.concurrency))

    if args.note_file:
        outcome = results[0]
        if outcome.run is None:
            print(f"Coding failed: {outcome.error}")
            raise SystemExit(1)
        print(json.dumps([c.to_dict() for c in outcome.run.final_codes], indent=2))
        return

    _write_results_jsonl(args.out_jsonl, results)
    _write_results_csv(args.out_csv, results)
    failed = sum(1 for r in results if r.run is None)
    print(f"Wrote {len(results)} results ({failed} failed) to {args.out_jsonl} and {args.out_csv}")


if __name__ == "__main__":
    main()
