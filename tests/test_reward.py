"""Tests for the reward analyzer."""

import pytest

from _helpers import FakeLLM

from training_camp.errors import ScoreValidationError
from training_camp.evolution.models import ScoreAnalysis, Sentiment, Trend
from training_camp.evolution.reward import (
    QUALITY_ASPECT,
    RewardAnalyzer,
    analyze_reward_patterns,
    calculate_trend,
    extract_aspects_from_keywords,
    sentiment_from_score,
    summarize_analysis,
)


@pytest.mark.parametrize("score", range(1, 11))
def test_sentiment_thresholds(score: int):
    expected = Sentiment.POSITIVE if score >= 7 else Sentiment.NEGATIVE if score <= 3 else Sentiment.NEUTRAL
    assert sentiment_from_score(score) is expected


@pytest.mark.parametrize(
    ("score", "previous", "trend", "delta"),
    [
        (8, 5, Trend.IMPROVING, 3),
        (7, 5, Trend.IMPROVING, 2),
        (6, 5, Trend.STABLE, 1),
        (4, 5, Trend.STABLE, -1),
        (3, 5, Trend.DECLINING, -2),
        (5, None, Trend.STABLE, 0),
    ],
)
def test_trend_thresholds(score, previous, trend, delta):
    assert calculate_trend(score, previous) == (trend, delta)


@pytest.mark.asyncio
async def test_positive_score_with_improvement():
    analysis = await RewardAnalyzer().analyze(8, None, 5)
    assert analysis.sentiment is Sentiment.POSITIVE
    assert analysis.trend is Trend.IMPROVING
    assert analysis.delta_from_previous == 3
    assert analysis.aspects == []


@pytest.mark.asyncio
async def test_too_long_and_inaccurate():
    analysis = await RewardAnalyzer().analyze(2, "too long and inaccurate")
    by_name = {a.aspect: a for a in analysis.aspects}
    assert by_name["length"].sentiment is Sentiment.NEGATIVE
    assert by_name["accuracy"].sentiment is Sentiment.NEGATIVE
    assert by_name["length"].confidence == 0.6


@pytest.mark.asyncio
@pytest.mark.parametrize("score", [0, 11, -3, 5.5, True, "7"])
async def test_invalid_scores_rejected(score):
    with pytest.raises(ScoreValidationError):
        await RewardAnalyzer().analyze(score)


def test_score_validation_error_is_value_error():
    assert issubclass(ScoreValidationError, ValueError)


@pytest.mark.asyncio
async def test_synthetic_quality_aspect_for_extreme_scores():
    low = await RewardAnalyzer().analyze(1)
    high = await RewardAnalyzer().analyze(10, "   ")
    mid = await RewardAnalyzer().analyze(5)

    assert [(a.aspect, a.sentiment, a.confidence) for a in low.aspects] == [
        (QUALITY_ASPECT, Sentiment.NEGATIVE, 0.5)
    ]
    assert [(a.aspect, a.sentiment) for a in high.aspects] == [(QUALITY_ASPECT, Sentiment.POSITIVE)]
    assert mid.aspects == []


@pytest.mark.asyncio
async def test_no_synthetic_aspect_when_comment_names_one():
    analysis = await RewardAnalyzer().analyze(1, "way too verbose")
    assert [a.aspect for a in analysis.aspects] == ["length"]


class TestKeywordExtraction:
    def test_positive_context(self):
        aspects = extract_aspects_from_keywords("The tone was great and friendly")
        assert [(a.aspect, a.sentiment) for a in aspects] == [("tone", Sentiment.POSITIVE)]

    def test_neutral_without_indicators(self):
        aspects = extract_aspects_from_keywords("It was a list")
        assert aspects[0].aspect == "format"
        assert aspects[0].sentiment is Sentiment.NEUTRAL

    def test_negation_without_negative_indicator_is_negative(self):
        aspects = extract_aspects_from_keywords("It was not accurate at all")
        assert aspects[0].aspect == "accuracy"
        assert aspects[0].sentiment is Sentiment.NEGATIVE

    def test_negated_length_stays_negative(self):
        aspects = extract_aspects_from_keywords("This was not too long")
        assert [(a.aspect, a.sentiment) for a in aspects] == [("length", Sentiment.NEGATIVE)]

    def test_negated_negative_indicator_reads_positive(self):
        aspects = extract_aspects_from_keywords("The format was not bad")
        assert [(a.aspect, a.sentiment) for a in aspects] == [("format", Sentiment.POSITIVE)]

    def test_word_boundaries(self):
        aspects = extract_aspects_from_keywords("inaccurate")
        assert [a.aspect for a in aspects] == ["accuracy"]
        assert aspects[0].sentiment is Sentiment.NEGATIVE

    def test_quote_is_windowed(self):
        comment = "x" * 50 + " verbose " + "y" * 50
        quote = extract_aspects_from_keywords(comment)[0].quote
        assert quote is not None
        assert quote.startswith("...") and quote.endswith("...")
        assert "verbose" in quote
        assert len(quote) < len(comment)

    def test_one_entry_per_aspect(self):
        aspects = extract_aspects_from_keywords("long, lengthy and wordy")
        assert [a.aspect for a in aspects] == ["length"]


class TestGenerativeExtraction:
    @pytest.mark.asyncio
    async def test_uses_llm_aspects_and_filters_vocabulary(self):
        llm = FakeLLM(
            '[{"aspect": "Length", "sentiment": "negative", "confidence": 1.4, "quote": "too long"},'
            ' {"aspect": "speed", "sentiment": "negative"},'
            ' {"aspect": "length", "sentiment": "positive"}]'
        )
        analysis = await RewardAnalyzer(llm).analyze(3, "way too long")

        assert len(analysis.aspects) == 1
        aspect = analysis.aspects[0]
        assert (aspect.aspect, aspect.sentiment, aspect.confidence) == ("length", Sentiment.NEGATIVE, 1.0)
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_falls_back_on_exception(self):
        llm = FakeLLM(RuntimeError("provider down"))
        analysis = await RewardAnalyzer(llm).analyze(2, "too long and inaccurate")
        assert {a.aspect for a in analysis.aspects} == {"length", "accuracy"}

    @pytest.mark.asyncio
    async def test_falls_back_on_malformed_output(self):
        llm = FakeLLM("I think the user disliked the length.")
        analysis = await RewardAnalyzer(llm).analyze(2, "too long")
        assert [a.aspect for a in analysis.aspects] == ["length"]

    @pytest.mark.asyncio
    async def test_falls_back_on_empty_array(self):
        llm = FakeLLM("[]")
        analysis = await RewardAnalyzer(llm).analyze(2, "too long")
        assert [a.aspect for a in analysis.aspects] == ["length"]

    @pytest.mark.asyncio
    async def test_unconfigured_llm_is_never_called(self):
        llm = FakeLLM(configured=False)
        await RewardAnalyzer(llm).analyze(2, "too long")
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_no_llm_call_without_comment(self):
        llm = FakeLLM()
        await RewardAnalyzer(llm).analyze(6)
        assert llm.calls == []


def test_summarize_analysis():
    analysis = ScoreAnalysis(
        score=4,
        sentiment=Sentiment.NEUTRAL,
        trend=Trend.DECLINING,
        delta_from_previous=-3,
    )
    assert summarize_analysis(analysis) == "Needs improvement (4/10). down 3 points."


@pytest.mark.asyncio
async def test_reward_patterns():
    analyzer = RewardAnalyzer()
    analyses = [
        await analyzer.analyze(3, "too long", 6),
        await analyzer.analyze(4, "still too long"),
        await analyzer.analyze(2, "wrong facts", 4),
    ]
    patterns = analyze_reward_patterns(analyses)
    assert patterns.common_aspects == ["length"]
    assert patterns.overall_trend is Trend.DECLINING
    assert patterns.avg_score == pytest.approx(3.0)


def test_reward_patterns_empty():
    patterns = analyze_reward_patterns([])
    assert patterns.common_aspects == []
    assert patterns.avg_score == 0.0
