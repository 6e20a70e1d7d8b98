import asyncio
import json

import pytest

from generation.errors import SynthesisShortfallError
from generation.schemas import GroundingText, SynthesisSettings
from generation.synthesis_pipeline import SynthesisPipeline, build_grounding_blob, run_in_waves
from tests.fixtures.sample_data import PHOTOSYNTHESIS_TEXT

PARAGRAPHS = [p for p in PHOTOSYNTHESIS_TEXT.split("\n\n") if len(p) > 50]


def grounded_sources():
    return [
        GroundingText(text=text, source_title="Biology Notes", chunk_id=i + 1, score=0.9)
        for i, text in enumerate(PARAGRAPHS)
    ]


# ─── Waves ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_waves_keep_input_order_and_pause_between(fake_sleep, sleeps):
    in_flight = []
    peak = []

    async def worker(item):
        in_flight.append(item)
        peak.append(len(in_flight))
        # later items finish first inside a wave
        await asyncio.sleep(0.001 * (10 - item))
        in_flight.remove(item)
        return item * 10

    results = await run_in_waves(list(range(7)), worker, batch_size=3, pause=0.5, sleep=fake_sleep)

    assert results == [0, 10, 20, 30, 40, 50, 60]
    assert max(peak) <= 3
    assert sleeps == [0.5, 0.5]


@pytest.mark.asyncio
async def test_single_wave_has_no_pause(fake_sleep, sleeps):
    async def worker(item):
        return item

    assert await run_in_waves([1, 2], worker, batch_size=3, pause=0.5, sleep=fake_sleep) == [1, 2]
    assert sleeps == []


@pytest.mark.asyncio
async def test_wave_error_propagates(fake_sleep):
    async def worker(item):
        if item == 4:
            raise ValueError("boom")
        return item

    with pytest.raises(ValueError):
        await run_in_waves(list(range(6)), worker, batch_size=3, pause=0, sleep=fake_sleep)


def test_blob_skips_duplicate_texts():
    sources = [
        GroundingText(text="first chunk", source_title="a", chunk_id=1),
        GroundingText(text="second chunk", source_title="a", chunk_id=2),
        GroundingText(text="first chunk", source_title="a", chunk_id=1),
    ]
    assert build_grounding_blob(sources) == "first chunk\n\n---\n\nsecond chunk"


# ─── Pipeline ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_synthesize_produces_exact_count_with_grounded_citations(client, config, responder, fake_sleep):
    pipeline = SynthesisPipeline(client, config, sleep=fake_sleep)
    settings = SynthesisSettings(question_type="mcq_single", count=4, difficulty=2, topic="photosynthesis")

    result = await pipeline.synthesize(grounded_sources(), settings)

    assert len(result.questions) == 4
    assert len(responder.prompts["extract"]) == 1
    assert len(responder.prompts["craft"]) == 4
    assert len(responder.prompts["review"]) == 4
    for draft in result.questions:
        citation = draft.citation
        assert citation.grounded is True
        assert citation.excerpt
        assert any(citation.excerpt in text for text in PARAGRAPHS)
        assert citation.chunk_ids
        assert citation.source_title == "Biology Notes"
        assert draft.correct_answer == ["Beta"]
        assert draft.difficulty == 4
    assert result.stats.concepts_extracted == 4
    assert result.stats.questions_generated == 4
    assert result.stats.average_review_score == 8


@pytest.mark.asyncio
async def test_drafts_keep_concept_order(client, config, fake_sleep):
    pipeline = SynthesisPipeline(client, config, sleep=fake_sleep)
    result = await pipeline.synthesize(grounded_sources(), SynthesisSettings(count=5))

    concepts = [d.citation.concept for d in result.questions]
    assert len(concepts) == 5
    assert all(c.startswith(f"Concept {i + 1}:") for i, c in enumerate(concepts))


@pytest.mark.asyncio
async def test_review_sees_cited_chunk_text(client, config, responder, fake_sleep):
    pipeline = SynthesisPipeline(client, config, sleep=fake_sleep)
    result = await pipeline.synthesize(grounded_sources(), SynthesisSettings(count=1))

    cited_chunk = PARAGRAPHS[result.questions[0].citation.chunk_ids[0] - 1]
    review_prompt = responder.prompts["review"][0]
    assert cited_chunk in review_prompt
    assert "---" not in review_prompt.split("ORIGINAL REFERENCE TEXT:")[1]


@pytest.mark.asyncio
async def test_crafter_sees_anchored_source_sentence_not_paraphrase(client, config, responder, fake_sleep):
    paraphrase = "the Calvin cycle fixes carbon dioxide in the stroma"
    responder.handlers["extract"] = lambda prompt: json.dumps({
        "concepts": [{"concept": "Carbon fixation happens in the stroma", "supporting_text": paraphrase}]
    })
    pipeline = SynthesisPipeline(client, config, sleep=fake_sleep)

    result = await pipeline.synthesize(grounded_sources(), SynthesisSettings(count=1))

    citation = result.questions[0].citation
    assert citation.excerpt.startswith("The Calvin cycle runs in the stroma")
    craft_prompt = responder.prompts["craft"][0]
    assert citation.excerpt in craft_prompt
    assert paraphrase not in craft_prompt


@pytest.mark.asyncio
async def test_fewer_concepts_than_requested_is_a_shortfall(client, config, responder, fake_sleep):
    pipeline = SynthesisPipeline(client, config, sleep=fake_sleep)

    # five usable sentences in the reference
    with pytest.raises(SynthesisShortfallError) as exc_info:
        await pipeline.synthesize(grounded_sources(), SynthesisSettings(count=6))

    assert exc_info.value.needed == 6
    assert exc_info.value.produced == 5
    assert responder.prompts["craft"] == []


@pytest.mark.asyncio
async def test_ungrounded_sources_give_flagged_citations(client, config, fake_sleep):
    pipeline = SynthesisPipeline(client, config, sleep=fake_sleep)
    sources = [GroundingText(text=PHOTOSYNTHESIS_TEXT, source_title="General Knowledge", grounded=False)]

    result = await pipeline.synthesize(sources, SynthesisSettings(question_type="true_false", count=2))

    assert len(result.questions) == 2
    for draft in result.questions:
        assert draft.citation.grounded is False
        assert draft.citation.chunk_ids == []
        assert draft.citation.excerpt


@pytest.mark.asyncio
async def test_waves_pause_between_batches(client, config, fake_sleep, sleeps):
    pipeline = SynthesisPipeline(client, config, sleep=fake_sleep)
    await pipeline.synthesize(grounded_sources(), SynthesisSettings(count=4))

    # one pause between the two craft waves, one between the two review waves
    assert len(sleeps) == 2
