import asyncio
import json

import pytest

from conftest import SYMPTOM_VECTORS, FakeCompleter, FakeEmbedder
from llm_coding.errors import CollaboratorUnavailable, StageFailure
from llm_coding.pipeline import CodingPipeline, extract_disputes, gather_fail_fast
from llm_coding.schemas import PipelineConfig, ReviewEntry, Stage


NOTE = "18-year-old with severe frontal headache and fever after a week of catarrh."

ASSIGNED = {
    "codes": [
        {"code": "R51.9", "description": "headache", "evidence": "severe frontal headache"},
        {"code": "R50.9", "description": "fever", "evidence": "fever up to 38.5"},
    ]
}


def _responses(**overrides):
    responses = {
        "symptom_extraction": {"symptoms": ["headache", "fever"]},
        "assessment_plan": {"assessment": "Acute sinusitis", "plan": "IV cephalosporins"},
        "code_assignment": ASSIGNED,
        "patient_review": {
            "review": [
                {"code": "R51.9", "accept": True, "reason": "I had a headache"},
                {"code": "R50.9", "accept": False, "reason": "The fever was mild"},
            ]
        },
        "code_resolution": {
            "codes": [{"code": "R51.9", "description": "Headache", "evidence": "severe frontal headache"}]
        },
    }
    responses.update(overrides)
    return responses


def _pipeline(code_index, descriptions, llm, embedder=None, **config):
    return CodingPipeline(
        index=code_index,
        descriptions=descriptions,
        llm=llm,
        embedder=embedder or FakeEmbedder(SYMPTOM_VECTORS),
        config=PipelineConfig(retrieve_top_k=2, **config),
    )


def test_full_run(code_index, descriptions):
    llm = FakeCompleter(_responses())
    run = asyncio.run(_pipeline(code_index, descriptions, llm).run(NOTE))

    assert run.symptoms == ["headache", "fever"]
    assert [c.code for c in run.candidates] == ["R51.9", "J01.90", "R50.9"]
    assert run.assessment.plan == "IV cephalosporins"
    # canonical descriptions replace the model's wording
    assert [c.description for c in run.physician_codes] == ["Headache, unspecified", "Fever, unspecified"]
    assert [(d.code, d.description, d.reason) for d in run.disputes] == [
        ("R50.9", "Fever, unspecified", "The fever was mild")
    ]
    assert [c.code for c in run.final_codes] == ["R51.9"]
    assert run.resolution_skipped is False

    assert llm.stages[0] == "symptom_extraction"
    assert llm.stages[-3:] == ["code_assignment", "patient_review", "code_resolution"]
    resolution = llm.call("code_resolution")
    assert "The fever was mild" in resolution["user"]
    assert "J01.90: Acute sinusitis, unspecified" in resolution["system"]


def test_assign_schema_restricts_codes_to_candidates(code_index, descriptions):
    llm = FakeCompleter(_responses())
    asyncio.run(_pipeline(code_index, descriptions, llm).run(NOTE))

    schema = llm.call("code_assignment")["schema"]
    code_prop = schema["schema"]["properties"]["codes"]["items"]["properties"]["code"]
    assert code_prop["enum"] == ["J01.90", "R50.9", "R51.9"]


def test_scenario_c_no_symptoms_stops_at_s1(code_index, descriptions):
    llm = FakeCompleter(_responses(symptom_extraction={"symptoms": []}))
    embedder = FakeEmbedder(SYMPTOM_VECTORS)

    with pytest.raises(StageFailure) as exc:
        asyncio.run(_pipeline(code_index, descriptions, llm, embedder).run(NOTE))

    assert exc.value.stage == Stage.EXTRACT
    assert "no symptoms" in str(exc.value)
    assert llm.stages == ["symptom_extraction"]
    assert embedder.started == []


def test_unparseable_stage_output_fails_run(code_index, descriptions):
    llm = FakeCompleter(_responses(code_assignment={"codes": "R51.9"}))

    with pytest.raises(StageFailure) as exc:
        asyncio.run(_pipeline(code_index, descriptions, llm).run(NOTE))

    assert exc.value.stage == Stage.ASSIGN
    assert "unparseable" in str(exc.value)
    assert "patient_review" not in llm.stages


def test_scenario_d_resolution_still_runs_without_disputes(code_index, descriptions):
    accept_all = {"review": [{"code": "R51.9", "accept": True, "reason": "ok"}, {"code": "R50.9", "accept": True, "reason": "ok"}]}
    llm = FakeCompleter(_responses(patient_review=accept_all, code_resolution=ASSIGNED))

    run = asyncio.run(_pipeline(code_index, descriptions, llm).run(NOTE))

    assert run.disputes == []
    assert "Patient disputes:\n[]" in llm.call("code_resolution")["user"]
    assert [c.code for c in run.final_codes] == [c.code for c in run.physician_codes]
    assert {c.code for c in run.final_codes} <= {c.code for c in run.candidates}
    assert run.resolution_skipped is False


def test_scenario_d_skip_resolution_without_disputes(code_index, descriptions):
    accept_all = {"review": [{"code": "R51.9", "accept": True, "reason": "ok"}, {"code": "R50.9", "accept": True, "reason": "ok"}]}
    llm = FakeCompleter(_responses(patient_review=accept_all))
    pipeline = _pipeline(code_index, descriptions, llm, skip_resolution_without_disputes=True)

    run = asyncio.run(pipeline.run(NOTE))

    assert "code_resolution" not in llm.stages
    assert run.resolution_skipped is True
    assert run.final_codes == run.physician_codes
    assert {c.code for c in run.final_codes} <= {c.code for c in run.candidates}


def test_skip_policy_still_resolves_real_disputes(code_index, descriptions):
    llm = FakeCompleter(_responses())
    run = asyncio.run(_pipeline(code_index, descriptions, llm, skip_resolution_without_disputes=True).run(NOTE))

    assert "code_resolution" in llm.stages
    assert [c.code for c in run.final_codes] == ["R51.9"]


def test_out_of_candidate_codes_are_dropped(code_index, descriptions):
    assigned = {"codes": ASSIGNED["codes"] + [{"code": "B27.90", "description": "Mononucleosis", "evidence": "history"}]}
    resolved = {"codes": [{"code": "Z99.9", "description": "x", "evidence": "y"}, {"code": "R51.9", "description": "h", "evidence": "e"}]}
    llm = FakeCompleter(_responses(code_assignment=assigned, code_resolution=resolved))

    run = asyncio.run(_pipeline(code_index, descriptions, llm).run(NOTE))

    candidates = {c.code for c in run.candidates}
    assert [c.code for c in run.physician_codes] == ["R51.9", "R50.9"]
    assert [c.code for c in run.final_codes] == ["R51.9"]
    assert all(c.code in candidates for c in run.physician_codes + run.final_codes)


def test_out_of_candidate_codes_fail_under_strict_policy(code_index, descriptions):
    assigned = {"codes": [{"code": "B27.90", "description": "Mononucleosis", "evidence": "history"}]}
    llm = FakeCompleter(_responses(code_assignment=assigned))
    pipeline = _pipeline(code_index, descriptions, llm, out_of_candidate_policy="fail")

    with pytest.raises(StageFailure) as exc:
        asyncio.run(pipeline.run(NOTE))

    assert exc.value.stage == Stage.ASSIGN
    assert "B27.90" in str(exc.value)


def test_all_codes_outside_candidates_fails_assignment(code_index, descriptions):
    assigned = {"codes": [{"code": "B27.90", "description": "Mononucleosis", "evidence": "history"}]}
    llm = FakeCompleter(_responses(code_assignment=assigned))

    with pytest.raises(StageFailure) as exc:
        asyncio.run(_pipeline(code_index, descriptions, llm).run(NOTE))

    assert exc.value.stage == Stage.ASSIGN


def test_duplicate_assignments_keep_first(code_index, descriptions):
    assigned = {"codes": [ASSIGNED["codes"][0], dict(ASSIGNED["codes"][0], evidence="again")]}
    llm = FakeCompleter(_responses(code_assignment=assigned))

    run = asyncio.run(_pipeline(code_index, descriptions, llm).run(NOTE))

    assert [(c.code, c.evidence) for c in run.physician_codes] == [("R51.9", "severe frontal headache")]


def test_empty_review_fails(code_index, descriptions):
    llm = FakeCompleter(_responses(patient_review={"review": []}))

    with pytest.raises(StageFailure) as exc:
        asyncio.run(_pipeline(code_index, descriptions, llm).run(NOTE))

    assert exc.value.stage == Stage.REVIEW
    assert "code_resolution" not in llm.stages


def test_completion_outage_becomes_stage_failure(code_index, descriptions):
    outage = CollaboratorUnavailable("Completion request failed: 503")
    llm = FakeCompleter(_responses(assessment_plan=outage))

    with pytest.raises(StageFailure) as exc:
        asyncio.run(_pipeline(code_index, descriptions, llm).run(NOTE))

    assert exc.value.stage == Stage.SYNTHESIZE
    assert exc.value.__cause__ is outage
    assert "code_assignment" not in llm.stages


def test_embedding_outage_fails_retrieval(code_index, descriptions):
    llm = FakeCompleter(_responses())
    embedder = FakeEmbedder(SYMPTOM_VECTORS, error=CollaboratorUnavailable("embeddings down"))

    with pytest.raises(StageFailure) as exc:
        asyncio.run(_pipeline(code_index, descriptions, llm, embedder).run(NOTE))

    assert exc.value.stage == Stage.RETRIEVE
    assert isinstance(exc.value.__cause__, CollaboratorUnavailable)


def test_embedding_dimension_mismatch_fails_retrieval(code_index, descriptions):
    llm = FakeCompleter(_responses())
    embedder = FakeEmbedder({"headache": [1.0, 0.0], "fever": [0.0, 1.0]})

    with pytest.raises(StageFailure) as exc:
        asyncio.run(_pipeline(code_index, descriptions, llm, embedder).run(NOTE))

    assert exc.value.stage == Stage.RETRIEVE


def test_candidate_order_ignores_embedding_completion_order(code_index, descriptions):
    llm = FakeCompleter(_responses())
    embedder = FakeEmbedder(SYMPTOM_VECTORS, delays={"headache": 0.05, "fever": 0.0})

    run = asyncio.run(_pipeline(code_index, descriptions, llm, embedder).run(NOTE))

    assert embedder.finished == ["fever", "headache"]
    assert [c.code for c in run.candidates] == ["R51.9", "J01.90", "R50.9"]


def test_extract_disputes_projects_rejections():
    review = [
        ReviewEntry(code="R51.9", accept=True, reason="fine"),
        ReviewEntry(code="R21", accept=False, reason="no rash"),
        ReviewEntry(code="Q99", accept=False, reason="unknown"),
    ]
    disputes = extract_disputes(review, {"R21": "Rash"})

    assert [(d.code, d.description, d.reason) for d in disputes] == [("R21", "Rash", "no rash"), ("Q99", None, "unknown")]


def test_gather_fail_fast_cancels_siblings():
    cancelled = []

    async def slow():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    async def boom():
        await asyncio.sleep(0)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        asyncio.run(gather_fail_fast(slow(), boom()))
    assert cancelled == [True]


def test_gather_fail_fast_keeps_argument_order():
    async def value(v, delay):
        await asyncio.sleep(delay)
        return v

    assert asyncio.run(gather_fail_fast(value("a", 0.02), value("b", 0.0))) == ["a", "b"]


def test_run_result_serializes(code_index, descriptions):
    run = asyncio.run(_pipeline(code_index, descriptions, FakeCompleter(_responses())).run(NOTE))
    payload = json.loads(json.dumps(run.to_dict()))
    assert payload["final_codes"][0]["code"] == "R51.9"


class _SlowSynthesis(FakeCompleter):
    """Holds S3 open and notes what the embedder had finished when S3 began."""

    def __init__(self, responses, embedder, delay):
        super().__init__(responses)
        self.embedder = embedder
        self.delay = delay
        self.embedded_at_s3 = None
        self.s3_cancelled = False

    async def complete(self, system, user, json_schema, factory):
        if json_schema["name"] == "assessment_plan":
            self.embedded_at_s3 = list(self.embedder.finished)
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.s3_cancelled = True
                raise
        return await super().complete(system, user, json_schema, factory)


def test_synthesis_overlaps_retrieval(code_index, descriptions):
    embedder = FakeEmbedder(SYMPTOM_VECTORS, delays={"headache": 0.03, "fever": 0.03})
    llm = _SlowSynthesis(_responses(), embedder, delay=0.0)

    run = asyncio.run(_pipeline(code_index, descriptions, llm, embedder).run(NOTE))

    assert llm.embedded_at_s3 == []
    assert sorted(embedder.finished) == ["fever", "headache"]
    assert run.assessment.assessment == "Acute sinusitis"


def test_retrieval_failure_cancels_inflight_synthesis(code_index, descriptions):
    embedder = FakeEmbedder(SYMPTOM_VECTORS, delays={"headache": 0.01}, error=CollaboratorUnavailable("embeddings down"))
    llm = _SlowSynthesis(_responses(), embedder, delay=10)

    with pytest.raises(StageFailure) as exc:
        asyncio.run(_pipeline(code_index, descriptions, llm, embedder).run(NOTE))

    assert exc.value.stage == Stage.RETRIEVE
    assert llm.s3_cancelled
    assert "assessment_plan" not in llm.stages
    assert "code_assignment" not in llm.stages
