from __future__ import annotations

import json
from typing import Dict, Iterable, List, Tuple

from .schemas import (
    AssessmentPlan,
    AssignedCode,
    CandidateCode,
    DisputeRecord,
)

# (system prompt, user content, json schema)
StagePrompt = Tuple[str, str, Dict]


def _strict(name: str, properties: Dict, required: List[str]) -> Dict:
    return {
        "name": name,
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "properties": properties,
            "required": required,
        },
        "strict": True,
    }


def _code_list_schema(name: str, allowed_codes: Iterable[str]) -> Dict:
    # Restrict code to the allowed set; the pipeline re-checks membership afterwards
    code_enum = sorted(set(allowed_codes))
    code_prop: Dict = {"type": "string", "enum": code_enum} if code_enum else {"type": "string"}
    item = {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "code": code_prop,
            "description": {"type": "string"},
            "evidence": {"type": "string"},
        },
        "required": ["code", "description", "evidence"],
    }
    return _strict(name, {"codes": {"type": "array", "items": item}}, ["codes"])


def _format_candidates(cands: List[CandidateCode]) -> str:
    lines: List[str] = []
    for c in cands:
        description = c.description.replace("\n", " ")
        lines.append(f"- {c.code}: {description}")
    return "\n".join(lines) if lines else "(none)"


def _codes_json(codes: List[AssignedCode]) -> str:
    return json.dumps([c.to_dict() for c in codes], ensure_ascii=False)


def build_extract_prompt(note: str) -> StagePrompt:
    system = (
        "You are a physician reviewing a patient's medical notes."
        " List every symptom, finding and diagnosis the notes support."
        " Phrase each item the way an ICD-10 code description would phrase it."
        " Do not include any codes."
    )
    user = f"Medical notes:\n{note}"
    schema = _strict(
        "symptom_extraction",
        {"symptoms": {"type": "array", "items": {"type": "string"}}},
        ["symptoms"],
    )
    return system, user, schema


def build_synthesis_prompt(note: str) -> StagePrompt:
    system = (
        "You are a physician who treats patients and strives to give each of them the best care."
        " From the subjective and objective findings in the note, write the assessment"
        " and the plan sections of the EHR note."
    )
    schema = _strict(
        "assessment_plan",
        {"assessment": {"type": "string"}, "plan": {"type": "string"}},
        ["assessment", "plan"],
    )
    return system, note, schema


def build_assign_prompt(note: str, ap: AssessmentPlan, candidates: List[CandidateCode]) -> StagePrompt:
    system = (
        "You are a physician assigning ICD-10 codes to a medical note."
        " Compare the generated assessment and plan with the original note and watch for inconsistencies."
        " Assign every code the note supports and give the evidence for each one."
        "\n\nRules:"
        "\n1) Choose codes from ALLOWED_CANDIDATES only. Never invent codes."
        "\n2) Copy each code string exactly as listed."
        "\n3) Evidence must quote or paraphrase the note."
        f"\n\nALLOWED_CANDIDATES:\n{_format_candidates(candidates)}"
    )
    user = (
        f"Original medical notes:\n{note}\n\n"
        f"Generated assessment:\n{ap.assessment}\n\n"
        f"Generated plan:\n{ap.plan}"
    )
    return system, user, _code_list_schema("code_assignment", (c.code for c in candidates))


def build_review_prompt(note: str, codes: List[AssignedCode]) -> StagePrompt:
    system = (
        "You are a patient who was treated at the hospital and cooperates fully with the care team."
        " You accept only ICD-10 codes that accurately reflect your conditions and symptoms, to avoid being overbilled."
        " Review every assigned code. If a code is not needed, reject it and explain why."
        " You told the physician about all of your symptoms and the physician's notes are accurate."
    )
    user = f"Physician notes:\n{note}\n\nPhysician codes:\n{_codes_json(codes)}\n"
    item = {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "code": {"type": "string", "enum": sorted({c.code for c in codes})},
            "accept": {"type": "boolean"},
            "reason": {"type": "string"},
        },
        "required": ["code", "accept", "reason"],
    }
    schema = _strict("patient_review", {"review": {"type": "array", "items": item}}, ["review"])
    return system, user, schema


def build_resolve_prompt(
    note: str,
    codes: List[AssignedCode],
    disputes: List[DisputeRecord],
    candidates: List[CandidateCode],
) -> StagePrompt:
    system = (
        "You adjudicate ICD-10 coding when a patient and a physician disagree."
        " Review the note, the physician's codes and the patient's disputes."
        " You may add or remove codes so that the final set is valid and exact."
        " Assign every code the note supports and give the evidence for each one."
        "\n\nRules:"
        "\n1) Choose codes from ALLOWED_CANDIDATES only. Never invent codes."
        "\n2) A disputed code stays only if the note clearly supports it."
        f"\n\nALLOWED_CANDIDATES:\n{_format_candidates(candidates)}"
    )
    dispute_json = json.dumps([d.to_dict() for d in disputes], ensure_ascii=False)
    user = (
        f"Physician notes:\n{note}\n\n"
        f"Physician codes:\n{_codes_json(codes)}\n\n"
        f"Patient disputes:\n{dispute_json}\n"
    )
    return system, user, _code_list_schema("code_resolution", (c.code for c in candidates))
