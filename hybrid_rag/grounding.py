"""Answer grounding validation: keyword pre-filter plus LLM judgment."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence

from pydantic import BaseModel, Field, ValidationError

from hybrid_rag.config import VALIDATION_TEMPERATURE
from hybrid_rag.llm_client import LLMClient
from hybrid_rag.models import (
    Chunk,
    Document,
    QuickValidation,
    Recommendation,
    ScoredUnit,
    Status,
    ValidationResult,
)
from hybrid_rag.prompts import VALIDATION_SYSTEM_PROMPT, build_validation_prompt

log = logging.getLogger(__name__)

# Phrases that often signal outside knowledge rather than the supplied sources.
SUSPICIOUS_KEYWORDS = (
    "generally",
    "typically",
    "usually",
    "commonly",
    "often",
    "most experts",
    "studies show",
    "research indicates",
    "it is known that",
    "scientists believe",
    "according to science",
)
KEYWORD_PENALTY = 0.3

SAFE_REFUSAL = (
    "I cannot provide a reliable answer to this question based on the available documents. "
    "Please rephrase your question or check if the information is available in the source materials."
)
MISSING_ATTRIBUTION = "Response lacks source attribution"

_ATTRIBUTION = re.compile(r"source:|from:|according to|as stated in|document", re.IGNORECASE)


class _Judgment(BaseModel):
    is_grounded: bool = Field(..., alias="isGrounded")
    confidence: float = Field(..., ge=0.0, le=1.0)
    concerns: list[str] = Field(default_factory=list)
    recommendation: Recommendation


def failed_validation() -> ValidationResult:
    return ValidationResult(
        is_grounded=False,
        confidence=0.0,
        concerns=["validation failed"],
        recommendation="flag",
    )


def quick_validate(answer: str) -> QuickValidation:
    lowered = answer.lower()
    found = [keyword for keyword in SUSPICIOUS_KEYWORDS if keyword in lowered]
    return QuickValidation(
        suspicious_keywords=found,
        confidence=max(0.0, 1.0 - len(found) * KEYWORD_PENALTY),
    )


def has_source_attribution(answer: str) -> bool:
    return bool(_ATTRIBUTION.search(answer))


def _source_text(sources: Sequence[Document | Chunk | ScoredUnit]) -> str:
    return "\n\n".join(source.text for source in sources)


def validate_response(
    question: str,
    answer: str,
    sources: Sequence[Document | Chunk | ScoredUnit],
    llm: LLMClient,
) -> ValidationResult:
    """Ask the model whether ``answer`` only uses ``sources``. Failures flag the answer."""
    prompt = build_validation_prompt(question, answer, _source_text(sources))
    try:
        payload = llm.generate_json(
            prompt=prompt,
            system=VALIDATION_SYSTEM_PROMPT,
            temperature=VALIDATION_TEMPERATURE,
        )
        judgment = _Judgment.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        log.warning("Grounding judgment was not valid JSON of the expected shape: %s", exc)
        return failed_validation()
    except Exception as exc:
        log.warning("Grounding judgment call failed: %s", exc)
        return failed_validation()

    return ValidationResult(
        is_grounded=judgment.is_grounded,
        confidence=judgment.confidence,
        concerns=list(judgment.concerns),
        recommendation=judgment.recommendation,
    )


def validate_with_attribution(
    question: str,
    answer: str,
    sources: Sequence[Document | Chunk | ScoredUnit],
    llm: LLMClient,
) -> ValidationResult:
    base = validate_response(question, answer, sources, llm)
    attributed = has_source_attribution(answer)

    concerns = list(base.concerns)
    recommendation = base.recommendation
    if base.is_grounded and not attributed and recommendation == "accept":
        recommendation = "flag"
        concerns.append(MISSING_ATTRIBUTION)

    return base.model_copy(
        update={
            "concerns": concerns,
            "recommendation": recommendation,
            "has_source_attribution": attributed,
        }
    )


def apply_policy(
    validation: ValidationResult,
    *,
    strict_mode: bool = False,
    require_attribution: bool = True,
) -> Status:
    if validation.recommendation == "reject":
        return "rejected"
    if validation.recommendation == "flag":
        return "rejected" if strict_mode else "flagged"
    if require_attribution and not validation.has_source_attribution:
        return "rejected" if strict_mode else "flagged"
    return "accepted"
