"""
Agent 2 — Question Crafter

Generates one exam question per concept using OpenAI GPT.
Supports five question types:
  - "mcq_single"   → exactly 4 options, one correct
  - "mcq_multiple" → exactly 4 options, one or more correct
  - "true_false"   → canonical True / False options
  - "short_answer" → no options, short phrase answer
  - "fill_blank"   → "______" in the stem, missing word/phrase as answer

Correct answers are stored as option CONTENT, never as a label: a label the
model returns ("B") is mapped to the text of that option.
Output: QuestionDraft with its citation attached. Unparseable output raises.
"""

import json
import logging
import re
from typing import Any, List, Optional

from generation.completion_client import CompletionClient
from generation.errors import MalformedResponseError
from generation.response_parser import parse_json_object
from generation.schemas import (
    Citation, Concept, LocalizedText, QuestionDraft, QuestionOption, SynthesisSettings,
    DEFAULT_LANGUAGE,
)

log = logging.getLogger("generation.synthesis")


# ─── Style profiles ───────────────────────────────────────────────────────────

STYLE_INSTRUCTIONS = {
    "jee_advanced": """
- Use JEE Advanced style: numerical traps, multi-step reasoning
- Distractors should be results of common calculation errors
- Questions should require deep conceptual understanding, not just memorization
- Use assertion-reasoning format where appropriate""",
    "upsc_prelims": """
- Use UPSC Prelims style: multi-statement truth questions
- Format: "Which of the following statements is/are correct?"
- Provide options like "1 and 2 only", "2 and 3 only", "1, 2 and 3", "None"
- Test analytical thinking over rote learning""",
    "standard_board": """
- Use standard textbook exam style: clear, direct questions
- Test understanding of core concepts
- Options should be distinct but related to the topic
- Suitable for class 10-12 level board exams""",
    "gate": """
- Use GATE exam style: technical depth, numerical answers
- Questions should test engineering concepts rigorously
- Include data interpretation and application-based questions
- Distractors should be technically plausible""",
    "general": """
- Use a general examination style
- Clear, unambiguous question text
- Distinct options covering different aspects of the topic
- Moderate difficulty suitable for entrance exams""",
}


def style_instructions(style: Optional[str]) -> str:
    """Instructions for a named style; unknown names get the general profile."""
    return STYLE_INSTRUCTIONS.get((style or "general").lower(), STYLE_INSTRUCTIONS["general"])


TYPE_INSTRUCTIONS = {
    "mcq_single": "Generate a multiple-choice question with exactly 4 options (A, B, C, D). Exactly ONE option is correct.",
    "mcq_multiple": "Generate a multiple-choice question with exactly 4 options (A, B, C, D). TWO or more options may be correct.",
    "true_false": 'Generate a True/False statement. Options must be exactly [{"id":"A","text":{"en":"True"}},{"id":"B","text":{"en":"False"}}].',
    "short_answer": "Generate a short-answer question. No options needed. The correctAnswer should be a single word or short phrase.",
    "fill_blank": 'Generate a fill-in-the-blank question. Replace the key term with "______". The correctAnswer is the missing word/phrase.',
}

LANGUAGE_NAMES = {
    "en": "English",
    "pa": "Punjabi (use Gurmukhi script)",
    "hi": "Hindi (use Devanagari script)",
}

TRUE_FALSE_LABELS = {
    "en": ("True", "False"),
    "pa": ("ਸਹੀ", "ਗਲਤ"),
    "hi": ("सही", "गलत"),
}

OPTION_LABELS = ("A", "B", "C", "D")


# ─── Prompt ───────────────────────────────────────────────────────────────────

CRAFT_PROMPT = """You are an expert question paper setter for competitive exams.

CONCEPT TO TEST:
"{concept}"

SUPPORTING REFERENCE:
"{excerpt}"

QUESTION TYPE: {question_type}
{type_instructions}

DIFFICULTY: {difficulty}/5 (1=very easy, 5=extremely hard)

STYLE GUIDELINES:
{style_instructions}

LANGUAGE: Provide every text field in {language_list}. Use these keys: {language_keys}.

CRITICAL RULES:
1. The question MUST be answerable from the supporting reference text alone.
2. DO NOT hallucinate facts. Every claim must come from the reference.
3. Distractors (wrong options) must be plausible but clearly wrong per the reference.
4. The correct answer must be unambiguous.
5. "correctAnswer" lists the full English TEXT of the correct option(s), never the letter.
6. Do NOT mention "the passage", "the text" or "the reference"; the question must stand alone.

OUTPUT: Respond ONLY with a valid JSON object. No markdown.
{example}"""


def _language_keys(languages: List[str]) -> List[str]:
    keys = [lang for lang in languages if lang]
    if DEFAULT_LANGUAGE not in keys:
        keys.insert(0, DEFAULT_LANGUAGE)
    return keys


def _example_output(question_type: str, languages: List[str], difficulty: int) -> str:
    def loc(sample: str) -> dict:
        return {lang: sample if lang == DEFAULT_LANGUAGE else f"<{lang} translation>" for lang in languages}

    example = {"text": loc("Question text here"), "type": question_type}
    if question_type in ("mcq_single", "mcq_multiple"):
        example["options"] = [{"id": label, "text": loc(f"Option {label}")} for label in OPTION_LABELS]
        example["correctAnswer"] = ["Option B"] if question_type == "mcq_single" else ["Option B", "Option D"]
    elif question_type == "true_false":
        example["options"] = [{"id": "A", "text": loc("True")}, {"id": "B", "text": loc("False")}]
        example["correctAnswer"] = ["True"]
    else:
        example["correctAnswer"] = ["short answer"]
    example["explanation"] = loc("Why the answer is correct based on the reference text")
    example["difficulty"] = difficulty
    return json.dumps(example, ensure_ascii=False, indent=4)


def build_craft_prompt(concept: Concept, settings: SynthesisSettings, excerpt: Optional[str] = None) -> str:
    """excerpt: the cited source text the question must rest on (defaults to the concept's quote)."""
    languages = _language_keys(settings.languages)
    return CRAFT_PROMPT.format(
        concept=concept.claim,
        excerpt=excerpt or concept.excerpt,
        question_type=settings.question_type,
        type_instructions=TYPE_INSTRUCTIONS[settings.question_type],
        difficulty=settings.difficulty,
        style_instructions=style_instructions(settings.style).strip(),
        language_list=", ".join(LANGUAGE_NAMES.get(lang, lang) for lang in languages),
        language_keys=", ".join(f'"{lang}"' for lang in languages),
        example=_example_output(settings.question_type, languages, settings.difficulty),
    )


# ─── Output builders ──────────────────────────────────────────────────────────

def _localized(value: Any) -> LocalizedText:
    if isinstance(value, dict):
        return LocalizedText({str(k): str(v).strip() for k, v in value.items() if v is not None and str(v).strip()})
    if value is None:
        return LocalizedText()
    text = str(value).strip()
    return LocalizedText.of(text) if text else LocalizedText()


def _canon(text: str) -> str:
    return " ".join(str(text).split()).lower().rstrip(".")


_LABEL_RE = re.compile(r"^(?:option\s*)?\(?([a-d])\)?[.)]?$", re.IGNORECASE)


def _resolve_answer(answer: str, options: List[QuestionOption], raw: str) -> str:
    """Map one model answer (content or label) to the English content of an option."""
    wanted = _canon(answer)
    for option in options:
        if _canon(option.text.get(DEFAULT_LANGUAGE)) == wanted:
            return option.text.get(DEFAULT_LANGUAGE)
    label = _LABEL_RE.match(str(answer).strip())
    if label:
        for option in options:
            if option.id.upper() == label.group(1).upper():
                return option.text.get(DEFAULT_LANGUAGE)
    raise MalformedResponseError("craft", f"correct answer '{answer}' matches no option", raw=raw)


def _true_false_options(languages: List[str]) -> List[QuestionOption]:
    options = []
    for position, label in enumerate(("A", "B")):
        text = {
            lang: TRUE_FALSE_LABELS[lang][position]
            for lang in languages
            if lang in TRUE_FALSE_LABELS
        }
        options.append(QuestionOption(id=label, text=LocalizedText(text)))
    return options


def _build_options(data: dict, question_type: str, languages: List[str], raw: str) -> List[QuestionOption]:
    if question_type == "true_false":
        return _true_false_options(languages)
    if question_type not in ("mcq_single", "mcq_multiple"):
        return []

    options = []
    for opt in data.get("options") or []:
        text = _localized(opt.get("text") if isinstance(opt, dict) else opt)
        if text.get(DEFAULT_LANGUAGE):
            options.append(text)
    if len(options) != 4:
        raise MalformedResponseError("craft", f"{question_type} needs exactly 4 options, got {len(options)}", raw=raw)
    return [QuestionOption(id=label, text=text) for label, text in zip(OPTION_LABELS, options)]


def _clamp_difficulty(value: Any, default: int) -> int:
    try:
        return min(5, max(1, int(value)))
    except (TypeError, ValueError):
        return default


def build_draft(
    data: dict,
    raw: str,
    concept: Concept,
    settings: SynthesisSettings,
    citation: Citation,
) -> QuestionDraft:
    """Parse crafter JSON into a QuestionDraft. Raises MalformedResponseError."""
    question_type = settings.question_type
    languages = _language_keys(settings.languages)

    text = _localized(data.get("text") or data.get("question_text"))
    if not text.get(DEFAULT_LANGUAGE):
        raise MalformedResponseError("craft", "question text is empty", raw=raw)

    options = _build_options(data, question_type, languages, raw)

    answers = data.get("correctAnswer", data.get("correct_answer"))
    if answers is None or answers == "" or answers == []:
        raise MalformedResponseError("craft", "missing correctAnswer", raw=raw)
    if not isinstance(answers, list):
        answers = [answers]
    answers = [a for a in answers if str(a).strip()]

    if options:
        if question_type == "true_false":
            answers = ["True" if str(a).strip().lower() in ("true", "a", "t", "yes") else str(a) for a in answers]
            answers = ["False" if str(a).strip().lower() in ("false", "b", "f", "no") else str(a) for a in answers]
        correct: List[str] = []
        for answer in answers:
            content = _resolve_answer(str(answer), options, raw)
            if content not in correct:
                correct.append(content)
    else:
        correct = [str(a).strip() for a in answers]

    if not correct:
        raise MalformedResponseError("craft", "no usable correct answer", raw=raw)
    if question_type in ("mcq_single", "true_false") and len(correct) != 1:
        raise MalformedResponseError("craft", f"{question_type} needs exactly one correct answer", raw=raw)

    if re.search(r"\b(the|this) (passage|reference text)\b", text.get(DEFAULT_LANGUAGE), re.IGNORECASE):
        log.warning(f"[SYNTH:CRAFT] question for '{concept.claim[:60]}' refers to the passage")

    return QuestionDraft(
        text=text,
        type=question_type,
        options=options,
        correct_answer=correct,
        explanation=_localized(data.get("explanation")),
        difficulty=_clamp_difficulty(data.get("difficulty"), settings.difficulty),
        marks=settings.marks,
        negative_marks=settings.negative_marks,
        citation=citation,
    )


# ─── Agent ────────────────────────────────────────────────────────────────────

async def craft_question(
    client: CompletionClient,
    concept: Concept,
    settings: SynthesisSettings,
    citation: Citation,
) -> QuestionDraft:
    """Agent 2: one question for one concept, written from the citation's excerpt."""
    prompt = build_craft_prompt(concept, settings, excerpt=citation.excerpt)
    raw = await client.complete(prompt, temperature=0.45, max_tokens=1500, json_mode=True)
    data = parse_json_object(raw, "craft")
    return build_draft(data, raw, concept, settings, citation)
