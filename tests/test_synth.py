"""Tests for citation validation, confidence policy and LLM fallback."""

import json

import pytest

from citewise.errors import ContentFiltered, LlmTimeout, ModelUnavailable, NoProviderConfigured, RateLimited
from citewise.synth import ConfidencePolicy, SynthesisEngine, SynthesizerConfig
from citewise.types import Citation, Confidence
from citewise.validate import QuoteMode, QuotePolicy, validate_citations

from conftest import FakeLLMClient, build_test_registry, make_source

CONTENT = "On July 19, 2024 a faulty Falcon sensor configuration update caused Windows hosts to crash."


class TestValidateCitations:
    def test_unknown_source_dropped(self):
        source = make_source("https://a.com", content=CONTENT)
        kept, report = validate_citations(
            [Citation(claim="ok", source_id=source.id), Citation(claim="bad", source_id="src_doesnotexist")],
            [source],
        )
        assert [c.claim for c in kept] == ["ok"]
        assert report.dropped == 1
        assert report.issues[0].source_id == "src_doesnotexist"
        assert report.coverage == 0.5

    def test_exact_quote_policy(self):
        source = make_source("https://a.com", content=CONTENT)
        good = Citation(claim="c", source_id=source.id, quote="faulty Falcon sensor configuration update")
        wrong_case = Citation(claim="c", source_id=source.id, quote="FAULTY falcon sensor")
        kept, report = validate_citations([good, wrong_case], [source])
        assert kept == [good]
        assert report.issues[0].citation_index == 1

    def test_normalized_quote_policy(self):
        source = make_source("https://a.com", content=CONTENT)
        quote = "FAULTY   falcon\nsensor"
        assert QuotePolicy(mode=QuoteMode.NORMALIZED).matches(quote, source.content)
        assert not QuotePolicy(mode=QuoteMode.EXACT).matches(quote, source.content)

    def test_fuzzy_quote_policy(self):
        policy = QuotePolicy(mode=QuoteMode.FUZZY, fuzzy_threshold=0.9)
        assert policy.matches("a faulty Falcon sensor configuration updates caused", CONTENT)
        assert not policy.matches("the moon landing was staged in a studio", CONTENT)


class TestConfidencePolicy:
    def test_zero_citations_is_insufficient(self):
        confidence, notes = ConfidencePolicy().apply(Confidence.HIGH, [], [])
        assert confidence == Confidence.INSUFFICIENT
        assert notes

    def test_single_domain_caps_at_medium(self):
        a1 = make_source("https://a.com/1")
        a2 = make_source("https://a.com/2")
        citations = [Citation(claim="x", source_id=a1.id), Citation(claim="y", source_id=a2.id)]
        confidence, _ = ConfidencePolicy().apply(Confidence.HIGH, citations, [a1, a2])
        assert confidence == Confidence.MEDIUM

    def test_never_raises_self_report(self):
        a = make_source("https://reuters.com/1")
        b = make_source("https://apnews.com/2")
        citations = [Citation(claim="x", source_id=a.id), Citation(claim="y", source_id=b.id)]
        confidence, notes = ConfidencePolicy().apply(Confidence.LOW, citations, [a, b])
        assert confidence == Confidence.LOW
        assert notes == []

    def test_low_authority_caps_at_low(self):
        a = make_source("https://blog-one.example/1")
        b = make_source("https://blog-two.example/2")
        citations = [Citation(claim="x", source_id=a.id), Citation(claim="y", source_id=b.id)]
        policy = ConfidencePolicy(min_authority=0.7)
        confidence, _ = policy.apply(Confidence.HIGH, citations, [a, b])
        assert confidence == Confidence.LOW


def _sources():
    return [
        make_source("https://reuters.com/a", content=CONTENT),
        make_source("https://arstechnica.com/b", content=CONTENT),
    ]


class TestSynthesisEngine:
    @pytest.mark.asyncio
    async def test_zero_sources_skip_llm(self):
        client = FakeLLMClient()
        engine = SynthesisEngine(build_test_registry(llms=[client]))
        answer = await engine.synthesize("q", [])
        assert answer.confidence == Confidence.INSUFFICIENT
        assert answer.limitations
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_primary_success(self):
        primary = FakeLLMClient(model="primary")
        backup = FakeLLMClient(model="backup")
        engine = SynthesisEngine(build_test_registry(llms=[primary, backup]))
        answer = await engine.synthesize("q", _sources())
        assert answer.confidence == Confidence.HIGH
        assert len(answer.citations) == 2
        assert not answer.synthesis_metadata.fallback_used
        assert backup.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [RateLimited("429"), ModelUnavailable("503"), LlmTimeout("slow")])
    async def test_retryable_error_uses_one_fallback(self, error):
        primary = FakeLLMClient(model="primary", error=error)
        backup = FakeLLMClient(model="backup")
        engine = SynthesisEngine(build_test_registry(llms=[primary, backup]))
        answer = await engine.synthesize("q", _sources())
        assert answer.synthesis_metadata.fallback_used
        assert answer.synthesis_metadata.model == "backup"
        assert len(primary.calls) == 1
        assert len(backup.calls) == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error_has_no_fallback(self):
        primary = FakeLLMClient(model="primary", error=ContentFiltered("blocked"))
        backup = FakeLLMClient(model="backup")
        engine = SynthesisEngine(build_test_registry(llms=[primary, backup]))
        with pytest.raises(ContentFiltered):
            await engine.synthesize("q", _sources())
        assert backup.calls == []

    @pytest.mark.asyncio
    async def test_only_one_fallback_attempt(self):
        primary = FakeLLMClient(model="primary", error=RateLimited("429"))
        backup = FakeLLMClient(model="backup", error=RateLimited("429 again"))
        third = FakeLLMClient(model="third")
        engine = SynthesisEngine(build_test_registry(llms=[primary, backup, third]))
        with pytest.raises(RateLimited):
            await engine.synthesize("q", _sources())
        assert third.calls == []

    @pytest.mark.asyncio
    async def test_missing_llm_provider(self):
        engine = SynthesisEngine(build_test_registry())
        with pytest.raises(NoProviderConfigured):
            await engine.synthesize("q", _sources())

    @pytest.mark.asyncio
    async def test_invalid_citations_force_insufficient(self):
        def hallucinate(messages):
            return json.dumps(
                {
                    "summary": "Made up",
                    "confidence": "high",
                    "citations": [{"claim": "x", "source_id": "src_notarealone"}],
                }
            )

        engine = SynthesisEngine(build_test_registry(llms=[FakeLLMClient(responder=hallucinate)]))
        answer = await engine.synthesize("q", _sources())
        assert answer.citations == []
        assert answer.confidence == Confidence.INSUFFICIENT

    def test_context_budget_drops_lowest_ranked(self):
        sources = [make_source(f"https://s{i}.com", content="token " * 1000) for i in range(5)]
        engine = SynthesisEngine(
            build_test_registry(llms=[FakeLLMClient()]),
            SynthesizerConfig(context_budget_tokens=4000, max_source_chars=6000),
        )
        kept = engine.fit_to_budget("q", sources)
        assert len(kept) == 2
        assert kept == sources[: len(kept)]
