"""Reward analyzer - turns a score and comment into a structured ScoreAnalysis."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

import structlog

from training_camp.config import LLMRole
from training_camp.errors import GenerativeOutputError, validate_score
from training_camp.evolution.models import FeedbackAspect, ScoreAnalysis, Sentiment, Trend
from training_camp.llm.parsing import clamp, extract_json_array
from training_camp.llm.router import GenerativeService, llm_available

logger = structlog.get_logger(__name__)

ASPECT_VOCABULARY = (
    "length",
    "tone",
    "format",
    "accuracy",
    "completeness",
    "relevance",
    "creativity",
)

# Synthetic aspect used when nothing specific was said about an extreme score
QUALITY_ASPECT = "quality"


def _words(*words: str) -> list[re.Pattern[str]]:
    return [re.compile(rf"\b{re.escape(w)}\b", re.IGNORECASE) for w in words]


# Keyword patterns per aspect, checked in order; the first hit wins.
ASPECT_KEYWORDS: dict[str, list[re.Pattern[str]]] = {
    "length": _words(
        "long", "short", "brief", "verbose", "concise", "wordy", "lengthy",
        "detailed", "too much", "not enough", "more detail", "less detail",
    ),
    "tone": _words(
        "formal", "informal", "casual", "professional", "friendly",
        "cold", "warm", "harsh", "polite", "rude", "tone",
    ),
    "accuracy": _words(
        "wrong", "correct", "accurate", "inaccurate", "mistake", "mistakes",
        "error", "errors", "incorrect", "precise", "imprecise",
    ),
    "format": _words(
        "bullets", "bullet", "list", "paragraph", "structured", "organized",
        "messy", "readable", "format", "formatting",
    ),
    "completeness": _words(
        "incomplete", "complete", "missing", "thorough", "partial",
        "comprehensive", "lacking", "lacks",
    ),
    "relevance": _words(
        "relevant", "irrelevant", "off-topic", "on-point", "tangent",
        "focused", "scattered", "unrelated",
    ),
    "creativity": _words(
        "creative", "boring", "original", "generic", "unique",
        "innovative", "bland", "dull",
    ),
}

POSITIVE_INDICATORS = _words(
    "good", "great", "excellent", "perfect", "love", "like", "better", "best",
    "well", "nice", "helpful", "useful", "thanks", "awesome", "amazing",
    "improved", "correct", "right", "clear",
)

NEGATIVE_INDICATORS = _words(
    "bad", "terrible", "awful", "hate", "wrong", "worse", "worst", "poor",
    "useless", "unhelpful", "incorrect", "inaccurate", "mistake", "mistakes",
    "error", "errors", "fail", "failed", "broken", "confused", "confusing",
    "unclear", "missing", "incomplete", "irrelevant", "verbose", "wordy",
    "lacking", "lacks", "boring", "bland", "generic", "messy", "rude", "harsh",
)

_NEGATION_RE = re.compile(r"\b(?:not|no|never)\b|n't\b", re.IGNORECASE)

_QUOTE_RADIUS = 30
_CONTEXT_RADIUS = 20
_KEYWORD_CONFIDENCE = 0.6
_SYNTHETIC_CONFIDENCE = 0.5

_ASPECT_PROMPT = """Analyze this user feedback for an AI agent output and extract specific aspects being commented on.

Score: {score}/10
Comment: "{comment}"

Extract each distinct aspect mentioned, using only these names: {vocabulary}.
For each aspect, determine:
1. The aspect name (lowercase, one word)
2. Whether the sentiment is positive, negative, or neutral
3. A relevant quote from the comment (if applicable)
4. Confidence level (0-1)

Return as JSON array:
[{{"aspect": "length", "sentiment": "negative", "quote": "too long", "confidence": 0.9}}]

If no specific aspects are mentioned, return an empty array [].
Return ONLY the JSON array, no other text."""


def sentiment_from_score(score: int) -> Sentiment:
    if score >= 7:
        return Sentiment.POSITIVE
    if score >= 4:
        return Sentiment.NEUTRAL
    return Sentiment.NEGATIVE


def calculate_trend(score: int, previous_score: int | None) -> tuple[Trend, int]:
    """Return (trend, delta). Delta is 0 without a previous score."""
    if previous_score is None:
        return Trend.STABLE, 0
    delta = score - previous_score
    if delta >= 2:
        return Trend.IMPROVING, delta
    if delta <= -2:
        return Trend.DECLINING, delta
    return Trend.STABLE, delta


def _context_sentiment(context: str) -> Sentiment:
    # Best effort only: a negation flips to positive only when a negative
    # indicator is also nearby, so "not too long" still reads as negative.
    has_negation = _NEGATION_RE.search(context) is not None
    has_positive = any(p.search(context) for p in POSITIVE_INDICATORS)
    has_negative = any(n.search(context) for n in NEGATIVE_INDICATORS)

    if has_negation:
        return Sentiment.POSITIVE if has_negative else Sentiment.NEGATIVE
    if has_negative:
        return Sentiment.NEGATIVE
    if has_positive:
        return Sentiment.POSITIVE
    return Sentiment.NEUTRAL


def extract_aspects_from_keywords(comment: str) -> list[FeedbackAspect]:
    """Keyword-table aspect extraction. One entry per aspect at most."""
    aspects: list[FeedbackAspect] = []

    for aspect, patterns in ASPECT_KEYWORDS.items():
        for pattern in patterns:
            match = pattern.search(comment)
            if match is None:
                continue

            start, end = match.span()
            quote = comment[max(0, start - _QUOTE_RADIUS):end + _QUOTE_RADIUS].strip()
            context = comment[max(0, start - _CONTEXT_RADIUS):end + _CONTEXT_RADIUS]

            aspects.append(
                FeedbackAspect(
                    aspect=aspect,
                    sentiment=_context_sentiment(context),
                    confidence=_KEYWORD_CONFIDENCE,
                    quote=f"...{quote}..." if len(quote) > 3 else None,
                )
            )
            break

    return aspects


def _dedupe(aspects: list[FeedbackAspect]) -> list[FeedbackAspect]:
    seen: set[str] = set()
    unique: list[FeedbackAspect] = []
    for aspect in aspects:
        if aspect.aspect not in seen:
            seen.add(aspect.aspect)
            unique.append(aspect)
    return unique


class RewardAnalyzer:
    """Parses user scores and comments into a ScoreAnalysis.

    Uses the generative service for aspect extraction when one is configured
    and falls back to the keyword table whenever it is absent, fails, or
    returns nothing usable.
    """

    def __init__(self, llm: GenerativeService | None = None) -> None:
        self._llm = llm

    async def analyze(
        self,
        score: int,
        comment: str | None = None,
        previous_score: int | None = None,
    ) -> ScoreAnalysis:
        validate_score(score)
        trend, delta = calculate_trend(score, previous_score)

        analysis = ScoreAnalysis(
            score=score,
            comment=comment or None,
            sentiment=sentiment_from_score(score),
            trend=trend,
            delta_from_previous=delta,
        )

        if comment and comment.strip():
            aspects: list[FeedbackAspect] = []
            if llm_available(self._llm):
                aspects = await self._extract_with_llm(comment, score)
            if not aspects:
                aspects = extract_aspects_from_keywords(comment)
            analysis.aspects = _dedupe(aspects)

        if not analysis.aspects:
            if score <= 2:
                analysis.aspects.append(
                    FeedbackAspect(QUALITY_ASPECT, Sentiment.NEGATIVE, _SYNTHETIC_CONFIDENCE)
                )
            elif score >= 9:
                analysis.aspects.append(
                    FeedbackAspect(QUALITY_ASPECT, Sentiment.POSITIVE, _SYNTHETIC_CONFIDENCE)
                )

        logger.debug(
            "reward_analyzed",
            score=score,
            sentiment=analysis.sentiment.value,
            trend=trend.value,
            aspects=[a.aspect for a in analysis.aspects],
        )
        return analysis

    async def _extract_with_llm(self, comment: str, score: int) -> list[FeedbackAspect]:
        prompt = _ASPECT_PROMPT.format(
            score=score,
            comment=comment,
            vocabulary=", ".join(ASPECT_VOCABULARY),
        )
        try:
            response = await self._llm.chat(  # type: ignore[union-attr]
                [{"role": "user", "content": prompt}],
                role=LLMRole.ANALYZING,
                max_tokens=512,
                temperature=0.3,
            )
            items = extract_json_array(response)
        except GenerativeOutputError as exc:
            logger.warning("llm_aspect_output_unusable", error=str(exc))
            return []
        except Exception as exc:
            logger.warning("llm_aspect_extraction_failed", error=str(exc))
            return []

        aspects: list[FeedbackAspect] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            name = str(item.get("aspect", "")).strip().lower()
            if name not in ASPECT_VOCABULARY:
                continue
            try:
                sentiment = Sentiment(str(item.get("sentiment", "neutral")).lower())
            except ValueError:
                sentiment = Sentiment.NEUTRAL
            quote = item.get("quote")
            aspects.append(
                FeedbackAspect(
                    aspect=name,
                    sentiment=sentiment,
                    confidence=clamp(item.get("confidence"), 0.0, 1.0, 0.5),
                    quote=str(quote) if quote else None,
                )
            )
        return aspects


# ---------------------------------------------------------------------------
# Read-only projections over analyses
# ---------------------------------------------------------------------------


@dataclass
class RewardPatterns:
    common_aspects: list[str] = field(default_factory=list)
    overall_trend: Trend = Trend.STABLE
    avg_score: float = 0.0


def analyze_reward_patterns(analyses: list[ScoreAnalysis]) -> RewardPatterns:
    """Find aspects mentioned in at least half the analyses and the dominant trend."""
    if not analyses:
        return RewardPatterns()

    counts: dict[str, int] = {}
    for analysis in analyses:
        for aspect in analysis.aspects:
            counts[aspect.aspect] = counts.get(aspect.aspect, 0) + 1

    threshold = len(analyses) / 2
    common = [name for name, count in counts.items() if count >= threshold]

    improving = sum(1 for a in analyses if a.trend is Trend.IMPROVING)
    declining = sum(1 for a in analyses if a.trend is Trend.DECLINING)
    overall = Trend.STABLE
    if improving > declining and improving > len(analyses) / 3:
        overall = Trend.IMPROVING
    elif declining > improving and declining > len(analyses) / 3:
        overall = Trend.DECLINING

    avg = sum(a.score for a in analyses) / len(analyses)
    return RewardPatterns(common_aspects=common, overall_trend=overall, avg_score=avg)


def summarize_analysis(analysis: ScoreAnalysis) -> str:
    parts: list[str] = []

    if analysis.score >= 8:
        parts.append(f"Strong performance ({analysis.score}/10)")
    elif analysis.score >= 5:
        parts.append(f"Moderate performance ({analysis.score}/10)")
    else:
        parts.append(f"Needs improvement ({analysis.score}/10)")

    if analysis.delta_from_previous != 0:
        direction = "up" if analysis.delta_from_previous > 0 else "down"
        parts.append(f"{direction} {abs(analysis.delta_from_previous)} points")

    positive = [a.aspect for a in analysis.aspects if a.sentiment is Sentiment.POSITIVE]
    negative = [a.aspect for a in analysis.aspects if a.sentiment is Sentiment.NEGATIVE]
    if positive:
        parts.append(f"Positive: {', '.join(positive)}")
    if negative:
        parts.append(f"Issues: {', '.join(negative)}")

    return ". ".join(parts) + "."
