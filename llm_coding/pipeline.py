from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, List, Mapping, Optional, Set, Type, TypeVar

from .aggregator import aggregate_candidates
from .errors import CollaboratorUnavailable, StageFailure, VectorIndexError
from .prompt_builder import (
    StagePrompt,
    build_assign_prompt,
    build_extract_prompt,
    build_resolve_prompt,
    build_review_prompt,
    build_synthesis_prompt,
)
from .schemas import (
    AssessmentPlan,
    AssignedCode,
    CandidateCode,
    CodeAssignment,
    CodingRun,
    DisputeRecord,
    PatientReview,
    PipelineConfig,
    ReviewEntry,
    Stage,
    SymptomList,
    validate,
)
from .vector_index import EmbeddingIndex

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def gather_fail_fast(*aws: Awaitable[Any]) -> List[Any]:
    """Like asyncio.gather, but cancels the siblings as soon as one awaitable raises.

    Results come back in argument order regardless of completion order.
    """
    tasks = [asyncio.ensure_future(a) for a in aws]
    if not tasks:
        return []
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for t in tasks:
            t.cancel()
        raise
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    first: Optional[BaseException] = None
    for t in tasks:
        if t.cancelled():
            continue
        exc = t.exception()
        if exc is not None and first is None:
            first = exc
    if first is not None:
        raise first
    return [t.result() for t in tasks]


def extract_disputes(review: List[ReviewEntry], descriptions: Mapping[str, str]) -> List[DisputeRecord]:
    return [
        DisputeRecord(code=r.code, description=descriptions.get(r.code), reason=r.reason)
        for r in review
        if not r.accept
    ]


class CodingPipeline:
    """
    Six-stage note → ICD-10 pipeline.

    S1 extracts symptoms; S2 embeds them and retrieves candidate codes while S3
    drafts the assessment and plan; S4 assigns codes from the candidates; S5
    reviews them from the patient's side; rejected codes become disputes that S6
    resolves into the final code list. Any stage failure aborts the run.
    """

    def __init__(
        self,
        index: EmbeddingIndex,
        descriptions: Mapping[str, str],
        llm: Any,
        embedder: Any,
        config: Optional[PipelineConfig] = None,
    ):
        self.index = index
        self.descriptions = descriptions
        self.llm = llm
        self.embedder = embedder
        self.config = config or PipelineConfig()
        if self.config.out_of_candidate_policy not in ("drop", "fail"):
            raise ValueError(f"Unknown out_of_candidate_policy: {self.config.out_of_candidate_policy!r}")

    # ------------------------ Stage calls ------------------------
    async def _complete(self, stage: Stage, prompt: StagePrompt, output_type: Type[T]) -> T:
        system, user, schema = prompt
        logger.debug("%s %s: requesting completion", stage.value, stage.label)
        try:
            out = await self.llm.complete(system, user, schema, lambda d: validate(stage, d))
        except CollaboratorUnavailable as e:
            raise StageFailure(stage, e) from e
        if out is None:
            raise StageFailure(stage, "returned an unparseable structured object")
        if not isinstance(out, output_type):
            raise StageFailure(stage, f"returned {type(out).__name__}, expected {output_type.__name__}")
        return out

    async def extract_symptoms(self, text: str) -> List[str]:
        out = await self._complete(Stage.EXTRACT, build_extract_prompt(text), SymptomList)
        if not out.symptoms:
            raise StageFailure(Stage.EXTRACT, "produced no symptoms")
        return out.symptoms

    async def _embed_all(self, phrases: List[str]) -> List[List[float]]:
        sem = asyncio.Semaphore(max(self.config.embed_concurrency, 1))

        async def worker(phrase: str) -> List[float]:
            async with sem:
                return await self.embedder.embed(phrase, self.config.embedding_tier)

        return await gather_fail_fast(*(worker(p) for p in phrases))

    async def retrieve_candidates(self, symptoms: List[str]) -> List[CandidateCode]:
        try:
            vectors = await self._embed_all(symptoms)
            candidates = await asyncio.to_thread(
                aggregate_candidates, vectors, self.index, self.descriptions, self.config.retrieve_top_k
            )
        except (CollaboratorUnavailable, VectorIndexError) as e:
            raise StageFailure(Stage.RETRIEVE, e) from e
        if not candidates:
            raise StageFailure(Stage.RETRIEVE, "retrieved no candidate codes")
        logger.debug("S2: %d symptoms → %d candidates", len(symptoms), len(candidates))
        return candidates

    async def synthesize(self, text: str) -> AssessmentPlan:
        return await self._complete(Stage.SYNTHESIZE, build_synthesis_prompt(text), AssessmentPlan)

    def _constrain(self, stage: Stage, codes: List[AssignedCode], allowed: Set[str]) -> List[AssignedCode]:
        out: List[AssignedCode] = []
        seen: Set[str] = set()
        for c in codes:
            if c.code not in allowed:
                if self.config.out_of_candidate_policy == "fail":
                    raise StageFailure(stage, f"returned code {c.code!r} outside the candidate set")
                logger.warning("%s returned code %s outside the candidate set; dropping it", stage.value, c.code)
                continue
            if c.code in seen:
                continue
            seen.add(c.code)
            # Normalize description to the canonical table to prevent hallucinations
            out.append(AssignedCode(code=c.code, description=self.descriptions.get(c.code, c.description), evidence=c.evidence))
        return out

    async def assign_codes(self, text: str, ap: AssessmentPlan, candidates: List[CandidateCode]) -> List[AssignedCode]:
        out = await self._complete(Stage.ASSIGN, build_assign_prompt(text, ap, candidates), CodeAssignment)
        codes = self._constrain(Stage.ASSIGN, out.codes, {c.code for c in candidates})
        if not codes:
            raise StageFailure(Stage.ASSIGN, "assigned no codes from the candidate set")
        return codes

    async def review_codes(self, text: str, codes: List[AssignedCode]) -> List[ReviewEntry]:
        out = await self._complete(Stage.REVIEW, build_review_prompt(text, codes), PatientReview)
        if not out.review:
            raise StageFailure(Stage.REVIEW, "produced no review entries")
        return out.review

    async def resolve(
        self,
        text: str,
        codes: List[AssignedCode],
        disputes: List[DisputeRecord],
        candidates: List[CandidateCode],
    ) -> List[AssignedCode]:
        prompt = build_resolve_prompt(text, codes, disputes, candidates)
        out = await self._complete(Stage.RESOLVE, prompt, CodeAssignment)
        final = self._constrain(Stage.RESOLVE, out.codes, {c.code for c in candidates})
        if not final:
            raise StageFailure(Stage.RESOLVE, "produced no final codes from the candidate set")
        return final

    # ------------------------ Run ------------------------
    async def run(self, text: str) -> CodingRun:
        run = CodingRun(text=text)

        run.symptoms = await self.extract_symptoms(text)

        # S3 does not depend on S1/S2; it starts once S1 has succeeded
        candidates, ap = await gather_fail_fast(
            self.retrieve_candidates(run.symptoms),
            self.synthesize(text),
        )
        run.candidates = candidates
        run.assessment = ap

        run.physician_codes = await self.assign_codes(text, ap, candidates)
        run.review = await self.review_codes(text, run.physician_codes)
        run.disputes = extract_disputes(run.review, self.descriptions)

        if not run.disputes and self.config.skip_resolution_without_disputes:
            logger.debug("No disputes; keeping S4 codes and skipping S6")
            run.final_codes = list(run.physician_codes)
            run.resolution_skipped = True
            return run

        run.final_codes = await self.resolve(text, run.physician_codes, run.disputes, candidates)
        return run

    async def code_note(self, text: str) -> List[AssignedCode]:
        return (await self.run(text)).final_codes
