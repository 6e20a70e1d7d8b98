"""
Agent 1 — Concept Extractor

One completion call per grounding blob: returns up to N distinct, testable
concepts, each with the verbatim sentence from the reference that supports it.

Excerpts are then anchored to the real source text: a quoted excerpt is only
kept if it occurs in the source (ignoring case and whitespace), otherwise the
closest real sentence is used instead. A citation can therefore never carry
text the model made up.
"""

import re
import logging
from typing import List, Optional, Sequence, Tuple

from generation.completion_client import CompletionClient
from generation.errors import MalformedResponseError
from generation.response_parser import parse_json_object
from generation.schemas import Concept

log = logging.getLogger("generation.synthesis")


EXTRACT_PROMPT = """You are an expert syllabus analyst for competitive exams.

TASK: Extract exactly {count} distinct, testable concepts from the following reference text about "{topic}".

REFERENCE TEXT:
\"\"\"
{reference_text}
\"\"\"

RULES:
1. Each concept must be a specific, testable fact or principle, NOT a broad topic name.
2. Extract concepts that would make good exam questions.
3. Ensure concepts are distinct (no overlapping ideas).
4. Quote the exact sentence or phrase from the text that supports each concept. Copy it character for character.

OUTPUT: Respond ONLY with a valid JSON object. No markdown code blocks.
{{
    "concepts": [
        {{
            "concept": "The specific testable concept",
            "supporting_text": "Exact quote from the reference text"
        }}
    ]
}}"""


# ─── Excerpt anchoring ─────────────────────────────────────────────────────────

_QUOTES = " \t\n\"'“”‘’«»"
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
_WORD = re.compile(r"\w+", re.UNICODE)


def _normalize_with_map(text: str) -> Tuple[str, List[int]]:
    """Lowercased text with whitespace runs collapsed, plus each char's index in `text`."""
    chars: List[str] = []
    positions: List[int] = []
    prev_space = True
    for i, ch in enumerate(text):
        if ch.isspace():
            if prev_space:
                continue
            chars.append(" ")
            prev_space = True
        else:
            chars.append(ch.lower())
            prev_space = False
        positions.append(i)
    if chars and chars[-1] == " ":
        chars.pop()
        positions.pop()
    return "".join(chars), positions


def _normalize(text: str) -> str:
    return " ".join(text.split()).lower()


def find_verbatim(excerpt: str, source: str) -> Optional[str]:
    """The slice of `source` matching `excerpt` (case/whitespace-insensitive), or None."""
    needle = _normalize(excerpt.strip(_QUOTES).rstrip("…").rstrip("."))
    if not needle:
        return None
    haystack, positions = _normalize_with_map(source)
    pos = haystack.find(needle)
    if pos == -1:
        return None
    start = positions[pos]
    end = positions[pos + len(needle) - 1] + 1
    return source[start:end]


def _closest_sentence(excerpt: str, source: str) -> Tuple[float, str]:
    wanted = set(_WORD.findall(excerpt.lower()))
    best_score, best = -1.0, ""
    for sentence in _SENTENCE_SPLIT.split(source):
        sentence = sentence.strip()
        if not sentence:
            continue
        tokens = set(_WORD.findall(sentence.lower()))
        score = len(wanted & tokens) / max(1, len(wanted))
        if score > best_score:
            best_score, best = score, sentence
    return best_score, best


def anchor_excerpt(excerpt: str, sources: Sequence[str]) -> Tuple[str, Optional[int], bool]:
    """
    Map a model-quoted excerpt onto real source text.

    Returns (text, source_index, verbatim):
      - verbatim=True:  text is the exact matching slice of sources[source_index]
      - verbatim=False: the excerpt was not found; text is the source sentence with
        the highest word overlap
      - source_index=None only when every source is empty
    """
    for index, source in enumerate(sources):
        found = find_verbatim(excerpt, source)
        if found:
            return found, index, True

    best_index, best_score, best_sentence = None, -1.0, ""
    for index, source in enumerate(sources):
        score, sentence = _closest_sentence(excerpt, source)
        if sentence and score > best_score:
            best_index, best_score, best_sentence = index, score, sentence
    return best_sentence, best_index, False


# ─── Agent ────────────────────────────────────────────────────────────────────

def _parse_concepts(data: dict, raw: str) -> List[Concept]:
    items = data.get("concepts")
    if not isinstance(items, list):
        raise MalformedResponseError("extract", "response has no 'concepts' list", raw=raw)

    concepts = []
    for item in items:
        if not isinstance(item, dict):
            continue
        claim = str(item.get("concept") or item.get("claim") or "").strip()
        excerpt = str(item.get("supporting_text") or item.get("excerpt") or "").strip()
        if claim and excerpt:
            concepts.append(Concept(claim=claim, excerpt=excerpt))
        else:
            log.warning(f"[SYNTH:EXTRACT] dropped incomplete concept: {item}")
    return concepts


async def extract_concepts(
    client: CompletionClient,
    reference_text: str,
    count: int,
    topic: str = "General Knowledge",
) -> List[Concept]:
    """
    Agent 1: extract up to `count` concepts from reference_text.

    Completion failures and unparseable output raise; returning fewer than
    `count` concepts is left to the caller to judge.
    """
    prompt = EXTRACT_PROMPT.format(count=count, topic=topic, reference_text=reference_text)
    raw = await client.complete(prompt, temperature=0.3, max_tokens=2048, json_mode=True)
    data = parse_json_object(raw, "extract")
    concepts = _parse_concepts(data, raw)[:count]
    log.info(f"[SYNTH:EXTRACT] {len(concepts)}/{count} concepts extracted for '{topic}'")
    return concepts
