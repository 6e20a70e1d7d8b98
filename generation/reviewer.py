"""
Agent 3 — Reviewer

LLM review of each crafted question against its citation:
- Is the marked answer correct per the reference?
- Are the distractors plausible but wrong?
- Does the claimed difficulty match?

A review that cannot be parsed is non-blocking: the draft is kept with a
neutral score. Completion failures (exhausted keys) still propagate.
"""

import json
import logging
from typing import Any, List, Optional

from generation.completion_client import CompletionClient
from generation.errors import MalformedResponseError
from generation.response_parser import parse_json_object
from generation.schemas import QuestionDraft, ReviewResult

log = logging.getLogger("generation.synthesis")

NEUTRAL_SCORE = 5
REFERENCE_LIMIT = 2000


REVIEW_PROMPT = """You are a senior question paper reviewer with 20+ years of experience.

TASK: Review this AI-generated exam question for quality, correctness, and difficulty.

QUESTION:
{question_text}

TYPE: {question_type}
OPTIONS: {options}
CORRECT ANSWER: {correct_answer}
EXPLANATION: {explanation}
CLAIMED DIFFICULTY: {difficulty}/5

CITATION:
Concept: "{concept}"
Reference: "{excerpt}"

ORIGINAL REFERENCE TEXT:
\"\"\"
{reference_text}
\"\"\"

REVIEW CRITERIA:
1. Is the correct answer actually correct per the reference text?
2. Are the distractors (wrong options) plausible but clearly wrong?
3. Is the question unambiguous?
4. Does the difficulty rating match the actual difficulty?
5. Is the question free from factual errors or hallucinations?

OUTPUT: Respond ONLY with JSON. No markdown.
{{
    "score": 8,
    "feedback": "Brief review feedback",
    "isCorrect": true,
    "suggestedDifficulty": 3,
    "issues": []
}}"""


def _as_difficulty(value: Any) -> Optional[int]:
    # only whole numbers 1-5 are accepted as a revised difficulty
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and 1 <= value <= 5:
        return value
    return None


def parse_review(data: dict, raw: str) -> ReviewResult:
    try:
        score = float(data["score"])
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedResponseError("review", f"missing or invalid score: {e}", raw=raw) from e

    issues = data.get("issues") or []
    if not isinstance(issues, list):
        issues = [issues]
    is_correct = data.get("isCorrect", data.get("is_correct"))

    return ReviewResult(
        score=min(10.0, max(0.0, score)),
        feedback=str(data.get("feedback") or ""),
        is_correct=is_correct if isinstance(is_correct, bool) else None,
        suggested_difficulty=_as_difficulty(data.get("suggestedDifficulty", data.get("suggested_difficulty"))),
        issues=[str(i) for i in issues],
    )


def build_review_prompt(draft: QuestionDraft, reference_text: str) -> str:
    return REVIEW_PROMPT.format(
        question_text=json.dumps(draft.text.root, ensure_ascii=False),
        question_type=draft.type,
        options=json.dumps([o.model_dump(mode="json") for o in draft.options], ensure_ascii=False),
        correct_answer=json.dumps(draft.correct_answer, ensure_ascii=False),
        explanation=json.dumps(draft.explanation.root, ensure_ascii=False),
        difficulty=draft.difficulty,
        concept=draft.citation.concept,
        excerpt=draft.citation.excerpt,
        reference_text=reference_text[:REFERENCE_LIMIT],
    )


async def review_question(
    client: CompletionClient,
    draft: QuestionDraft,
    reference_text: str,
) -> QuestionDraft:
    """
    Agent 3: attach a ReviewResult to the draft.

    The reviewer's suggested difficulty replaces the crafter's.
    Returns a new QuestionDraft; the input is not modified.
    """
    raw = await client.complete(
        build_review_prompt(draft, reference_text),
        temperature=0.2,
        max_tokens=512,
        json_mode=True,
    )

    try:
        review = parse_review(parse_json_object(raw, "review"), raw)
    except MalformedResponseError as e:
        log.warning(f"[SYNTH:REVIEW] {e}; keeping draft with neutral score {NEUTRAL_SCORE}")
        review = ReviewResult(score=NEUTRAL_SCORE, feedback="Review parsing failed", parsed=False)

    update = {"review": review}
    if review.suggested_difficulty is not None and review.suggested_difficulty != draft.difficulty:
        log.info(
            f"[SYNTH:REVIEW] difficulty {draft.difficulty} → {review.suggested_difficulty} "
            f"for '{draft.citation.concept[:60]}'"
        )
        update["difficulty"] = review.suggested_difficulty
    return draft.model_copy(update=update)


def average_score(drafts: List[QuestionDraft]) -> Optional[float]:
    scores = [d.review.score for d in drafts if d.review is not None]
    return round(sum(scores) / len(scores), 2) if scores else None
