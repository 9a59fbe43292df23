"""
Prompts sent to the text-generation capability.

Each prompt is pitched at a complexity tier. The diagnostic prompt asks for
a JSON verdict that is validated before it may touch proficiency state.
"""

from __future__ import annotations

import json
import re

from pydantic import BaseModel, Field, ValidationError

from studyloop.core.adaptation import ComplexityTier
from studyloop.errors import CapabilityFailure

# =============================================================================
# Tier guidance
# =============================================================================

TIER_GUIDANCE = {
    ComplexityTier.BASIC: (
        "The student is new to this topic. Use plain language, define every term, "
        "and work through one small concrete example step by step."
    ),
    ComplexityTier.INTERMEDIATE: (
        "The student knows the fundamentals. Connect the idea to what they already "
        "know, show the key reasoning steps, and point out one common mistake."
    ),
    ComplexityTier.ADVANCED: (
        "The student is proficient. Be concise, use precise terminology, and cover "
        "edge cases, proofs or derivations where relevant."
    ),
}

# =============================================================================
# Prompts
# =============================================================================

EXPLAIN_PROMPT = """Explain the answer to this student question.

TOPIC: {topic_id}
LEVEL: {tier}
{guidance}

QUESTION:
{question}
"""

DIAGNOSE_PROMPT = """Diagnose the student's understanding from their question.

TOPIC: {topic_id}
CURRENT PROFICIENCY ESTIMATE: {score:.2f} (0.0 = no mastery, 1.0 = full mastery)

QUESTION:
{question}

Return ONLY a JSON object:
{{"estimate": <new proficiency estimate between 0.0 and 1.0>,
  "rationale": "<one sentence explaining the estimate>",
  "correct": <true if the question shows a correct grasp, false if it shows a misconception, null if unclear>}}
"""

CHALLENGE_ITEM_PROMPT = """Write one practice question.

TOPIC: {topic_id}
LEVEL: {tier}
{guidance}

Return only the question text.
"""

PLAN_PROMPT = """Write a short motivating study plan summary for a student.

DAYS UNTIL EXAM: {days}
HOURS PER TOPIC:
{allocation}
REVIEW DATES: {review_dates}
"""

SUMMARY_PROMPT = """Summarize these sources for a student researching "{query}".

LEVEL: {tier}
{guidance}

SOURCES:
{sources}
"""

STORYBOARD_PROMPT = """Write a storyboard for a short animation explaining a concept.

CONCEPT: {concept}
LEVEL: {tier}
{guidance}

List 3 to 6 numbered scenes, one line each.
"""

GENERIC_SUMMARY = "A summary is not available right now; the sources are listed below."
GENERIC_STORYBOARD = "1. Introduce the concept.\n2. Show one worked example.\n3. Recap."

# Served when the explanation cannot be generated
GENERIC_EXPLANATIONS = {
    ComplexityTier.BASIC: (
        "A full explanation is not available right now. Start by writing down what "
        "each term in the question means, then try one small example by hand."
    ),
    ComplexityTier.INTERMEDIATE: (
        "A full explanation is not available right now. Identify the rule the "
        "question relies on and check each step of your working against it."
    ),
    ComplexityTier.ADVANCED: (
        "A full explanation is not available right now. Consider the general case, "
        "its edge cases and which assumptions the result depends on."
    ),
}


def get_prompt(template: str, tier: ComplexityTier | None = None, **values) -> str:
    """Fill a prompt template, adding the tier guidance when a tier applies."""
    if tier is not None:
        values.setdefault("tier", tier.value)
        values.setdefault("guidance", TIER_GUIDANCE[tier])
    return template.format(**values)


# =============================================================================
# Diagnostic verdict
# =============================================================================


class DiagnosticVerdict(BaseModel):
    estimate: float = Field(ge=0.0, le=1.0)
    rationale: str = ""
    correct: bool | None = None


def parse_verdict(text: str) -> DiagnosticVerdict:
    """Pull the JSON verdict out of a generated response."""
    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        raise CapabilityFailure(
            "generate_text", "diagnosis contained no JSON", kind=CapabilityFailure.MALFORMED
        )
    try:
        return DiagnosticVerdict.model_validate(json.loads(match.group(0)))
    except (ValueError, ValidationError) as e:
        raise CapabilityFailure(
            "generate_text", f"invalid diagnosis: {e}", kind=CapabilityFailure.MALFORMED
        ) from e
