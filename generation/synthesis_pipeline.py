"""
Synthesis Pipeline — Extract → Craft → Review

  1. Concept Extractor  — one call over the grounding blob → N concepts
  2. Question Crafter   — one call per concept, in waves of `batch_size`
  3. Reviewer           — one call per draft, same waves

Waves run concurrently inside and sequentially across, with a short pause
between waves. Results keep concept order whatever order calls finish in.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from generation.completion_client import CompletionClient
from generation.concept_extractor import anchor_excerpt, extract_concepts
from generation.config import PipelineConfig
from generation.errors import SynthesisShortfallError
from generation.question_crafter import craft_question
from generation.reviewer import average_score, review_question
from generation.schemas import (
    Citation, Concept, GroundingText, PipelineStats, QuestionDraft, SynthesisResult, SynthesisSettings,
)

log = logging.getLogger("generation.synthesis")

T = TypeVar("T")
R = TypeVar("R")

CHUNK_SEPARATOR = "\n\n---\n\n"


async def run_in_waves(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int = 3,
    pause: float = 0.5,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> List[R]:
    """
    Run worker over items, at most batch_size at a time.
    Output order equals input order. No pause after the last wave.
    The first exception in a wave propagates.
    """
    results: List[R] = []
    batch_size = max(1, batch_size)
    for start in range(0, len(items), batch_size):
        wave = items[start:start + batch_size]
        results.extend(await asyncio.gather(*(worker(item) for item in wave)))
        if start + batch_size < len(items):
            await sleep(pause)
    return results


def build_grounding_blob(sources: Sequence[GroundingText]) -> str:
    """Distinct source texts, in retrieval order, joined into one blob."""
    seen = []
    for source in sources:
        if source.text not in seen:
            seen.append(source.text)
    return CHUNK_SEPARATOR.join(seen)


class SynthesisPipeline:
    """Three-agent question synthesis over retrieved or caller-supplied text."""

    def __init__(
        self,
        client: CompletionClient,
        config: Optional[PipelineConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.config = config or client.config
        self._sleep = sleep

    def _cite(self, concept: Concept, sources: Sequence[GroundingText]) -> Citation:
        grounded_sources = [s for s in sources if s.grounded]
        if not grounded_sources:
            # nothing real to point at: keep the model's quote, flag it
            title = sources[0].source_title if sources else None
            return Citation(excerpt=concept.excerpt, concept=concept.claim, source_title=title, grounded=False)

        text, index, verbatim = anchor_excerpt(concept.excerpt, [s.text for s in grounded_sources])
        if index is None:
            return Citation(excerpt=concept.excerpt, concept=concept.claim, grounded=False)
        if not verbatim:
            log.warning(
                f"[SYNTH:CITE] excerpt not found verbatim in source; "
                f"using closest sentence for '{concept.claim[:60]}'"
            )

        cited = grounded_sources[index]
        chunk_ids = [
            s.chunk_id for s in grounded_sources
            if s.chunk_id is not None and text in s.text
        ]
        return Citation(
            excerpt=text,
            concept=concept.claim,
            source_title=cited.source_title,
            chunk_ids=sorted(set(chunk_ids)),
            grounded=True,
        )

    async def synthesize(
        self,
        sources: Sequence[GroundingText],
        settings: SynthesisSettings,
    ) -> SynthesisResult:
        """
        Produce exactly settings.count reviewed drafts grounded in `sources`.

        Raises:
            SynthesisShortfallError: fewer concepts than requested
            MalformedResponseError:  extract or craft output unparseable
            CredentialsExhaustedError: from any completion call
        """
        started = time.monotonic()
        blob = build_grounding_blob(sources)
        count = settings.count

        # ── Agent 1: Extract ──────────────────────────────────────────────
        log.info(f"[SYNTH:EXTRACT] {count} × {settings.question_type} on '{settings.topic}'")
        concepts = await extract_concepts(self.client, blob, count, topic=settings.topic)
        if len(concepts) < count:
            raise SynthesisShortfallError(needed=count, produced=len(concepts), stage="extract")

        citations = [self._cite(c, sources) for c in concepts]

        # ── Agent 2: Craft ────────────────────────────────────────────────
        async def craft(index: int) -> QuestionDraft:
            return await craft_question(self.client, concepts[index], settings, citations[index])

        drafts = await run_in_waves(
            list(range(len(concepts))), craft,
            batch_size=self.config.batch_size, pause=self.config.batch_pause, sleep=self._sleep,
        )
        log.info(f"[SYNTH:CRAFT] {len(drafts)} drafts crafted")

        # ── Agent 3: Review ───────────────────────────────────────────────
        sources_by_chunk = {s.chunk_id: s.text for s in sources if s.chunk_id is not None}

        async def review(draft: QuestionDraft) -> QuestionDraft:
            cited = [sources_by_chunk[cid] for cid in draft.citation.chunk_ids if cid in sources_by_chunk]
            reference = CHUNK_SEPARATOR.join(cited) if cited else blob
            return await review_question(self.client, draft, reference)

        reviewed = await run_in_waves(
            drafts, review,
            batch_size=self.config.batch_size, pause=self.config.batch_pause, sleep=self._sleep,
        )

        stats = PipelineStats(
            concepts_extracted=len(concepts),
            questions_generated=len(reviewed),
            average_review_score=average_score(reviewed),
            elapsed_seconds=round(time.monotonic() - started, 3),
        )
        log.info(
            f"[SYNTH:REVIEW] review complete, avg score "
            f"{stats.average_review_score if stats.average_review_score is not None else 'n/a'}/10"
        )
        return SynthesisResult(questions=reviewed, stats=stats)
