from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

import pandas as pd

from .pipeline import gather_fail_fast
from .schemas import CodeEntry, EmbeddingTier, SeedRecord, VectorIndexConfig
from .vector_index import EmbeddingIndex

logger = logging.getLogger(__name__)


def load_code_table(
    csv_path: str,
    code_col: str = "code",
    description_col: str = "description",
) -> List[CodeEntry]:
    df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
    missing = {code_col, description_col} - set(df.columns)
    if missing:
        raise ValueError(f"Code table {csv_path} is missing column(s): {sorted(missing)}")
    entries: List[CodeEntry] = []
    seen: Dict[str, bool] = {}
    for _, row in df.iterrows():
        code = str(row[code_col]).strip()
        if not code:
            continue
        if code in seen:
            logger.warning("Duplicate code %s in %s; keeping the first row", code, csv_path)
            continue
        seen[code] = True
        entries.append(CodeEntry(code=code, description=str(row[description_col]).strip()))
    return entries


def descriptions_from_entries(entries: List[Any]) -> Dict[str, str]:
    return {e.code: e.description for e in entries}


async def build_seed(
    entries: List[CodeEntry],
    embedder: Any,
    tier: EmbeddingTier = "small",
    concurrency: int = 8,
) -> List[SeedRecord]:
    """Embed every code description; records come back in `entries` order."""
    sem = asyncio.Semaphore(max(concurrency, 1))

    async def worker(entry: CodeEntry) -> SeedRecord:
        async with sem:
            emb = await embedder.embed(entry.description, tier)
        return SeedRecord(code=entry.code, description=entry.description, emb=list(emb))

    return await gather_fail_fast(*(worker(e) for e in entries))


def save_seed(records: List[SeedRecord], path: str):
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w") as f:
        json.dump([r.to_dict() for r in records], f)


def load_seed(path: str) -> List[SeedRecord]:
    with open(path) as f:
        raw = json.load(f)
    if not isinstance(raw, list):
        raise ValueError(f"Seed file {path} must hold a JSON array")
    records: List[SeedRecord] = []
    dimension: Optional[int] = None
    for i, item in enumerate(raw):
        try:
            rec = SeedRecord(code=str(item["code"]), description=str(item["description"]), emb=[float(x) for x in item["emb"]])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Seed record {i} in {path} is malformed: {e}") from e
        if dimension is None:
            dimension = len(rec.emb)
        elif len(rec.emb) != dimension:
            raise ValueError(f"Seed record {i} ({rec.code}) has {len(rec.emb)} dims, expected {dimension}")
        records.append(rec)
    return records


def build_index(
    records: List[SeedRecord],
    dimension: Optional[int] = None,
    max_elements: Optional[int] = None,
    config: Optional[VectorIndexConfig] = None,
) -> EmbeddingIndex:
    if dimension is None:
        if not records:
            raise ValueError("Cannot infer the index dimension from an empty seed")
        dimension = len(records[0].emb)
    index = EmbeddingIndex(dimension, max_elements or max(len(records), 1), config)
    index.insert_batch((r.code, r.emb) for r in records)
    return index


def _cli_build():
    import argparse

    from dotenv import load_dotenv

    from .embedder import make_embedder
    from .schemas import EmbeddingConfig

    parser = argparse.ArgumentParser(description="Embed an ICD-10 code table into a seed file for the vector index")
    parser.add_argument("--codes-csv", required=True, help="CSV with columns: code,description")
    parser.add_argument("--out", required=True, help="Seed JSON path to write")
    parser.add_argument("--code-col", default="code")
    parser.add_argument("--description-col", default="description")
    parser.add_argument("--embedding", choices=["openai", "local"], default="openai")
    parser.add_argument("--tier", choices=["small", "large"], default="small")
    parser.add_argument("--concurrency", type=int, default=16)
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    entries = load_code_table(args.codes_csv, code_col=args.code_col, description_col=args.description_col)
    embedder = make_embedder(EmbeddingConfig(backend=args.embedding))
    records = asyncio.run(build_seed(entries, embedder, tier=args.tier, concurrency=args.concurrency))
    save_seed(records, args.out)
    print(f"Embedded {len(records)} codes to: {args.out}")


if __name__ == "__main__":
    _cli_build()
