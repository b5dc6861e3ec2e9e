"""Deterministic text analysis used by the turn pipeline and ingestion."""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from langdetect import DetectorFactory, LangDetectException, detect

from .hebrew import is_hebrew, normalize_hebrew, tokenize

logger = logging.getLogger(__name__)

DetectorFactory.seed = 0

POSITIVE_THRESHOLD = 0.2
NEGATIVE_THRESHOLD = -0.2

_POSITIVE = {
    # Hebrew
    "טוב", "טובה", "מצוין", "מצוינת", "מעולה", "נהדר", "נהדרת", "נפלא",
    "תודה", "שמח", "שמחה", "אוהב", "אוהבת", "אהבתי", "מרוצה", "יופי",
    "מושלם", "ממליץ", "מקצועי", "אדיב",
    # English
    "good", "great", "excellent", "awesome", "love", "thanks", "thank",
    "happy", "helpful", "perfect", "wonderful", "nice",
}
_NEGATIVE = {
    # Hebrew
    "רע", "רעה", "גרוע", "גרועה", "נורא", "נוראי", "כועס", "כועסת", "עצוב",
    "עצובה", "בעיה", "תקלה", "מאוכזב", "מאוכזבת", "שונא", "שונאת",
    "מתסכל", "איטי", "תקוע", "זוועה",
    # English
    "bad", "terrible", "awful", "angry", "hate", "upset", "broken",
    "problem", "sad", "slow", "disappointed", "useless",
}
_NEGATIONS = {"לא", "אין", "אינני", "אינו", "not", "no", "never", "don't", "doesn't"}
_INTENSIFIERS = {"מאוד", "ממש", "very", "really", "so"}
_HEBREW_PREFIXES = "והבלמשכ"

# VADER-style normalisation constant; one strong word lands around 0.25.
_NORMALIZATION_ALPHA = 15.0

_STRIP_CHARS = ".,!?;:\"'()[]{}-"

_DATE_PATTERN = re.compile(r"\b\d{1,2}[/.]\d{1,2}[/.](?:\d{4}|\d{2})\b")
_NUMBER_PATTERN = re.compile(r"\d+(?:[.,]\d+)?")
_EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_TITLED_HEBREW_NAME = re.compile(
    r"(?<![א-ת])(?:מר|גברת|גב'|ד\"ר|דר'|פרופ'|עו\"ד)\s[א-ת]+(?:\s[א-ת]+)?"
)
_LATIN_NAME = re.compile(r"\b[A-Z][a-z]+(?:\s[A-Z][a-z]+)+\b")
_HEBREW_WORD_PAIR = re.compile(r"[א-ת]+ [א-ת]+")

ENTITY_PATTERNS: tuple[tuple[str, re.Pattern[str], float], ...] = (
    ("DATE", _DATE_PATTERN, 0.9),
    ("NUMBER", _NUMBER_PATTERN, 0.8),
    ("EMAIL", _EMAIL_PATTERN, 0.95),
    ("PERSON", _TITLED_HEBREW_NAME, 0.8),
    ("PERSON", _LATIN_NAME, 0.6),
    ("PERSON", _HEBREW_WORD_PAIR, 0.3),
)


def sentiment_label(score: float) -> str:
    """Map a score to ``positive``/``negative``/``neutral``; ±0.2 is neutral."""

    if score > POSITIVE_THRESHOLD:
        return "positive"
    if score < NEGATIVE_THRESHOLD:
        return "negative"
    return "neutral"


@dataclass(frozen=True)
class Entity:
    type: str
    value: str
    start: int
    end: int
    confidence: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "value": self.value,
            "start": self.start,
            "end": self.end,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class Sentiment:
    score: float = 0.0
    label: str = "neutral"
    confidence: float = 0.0

    @classmethod
    def neutral(cls) -> "Sentiment":
        return cls()

    def as_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "label": self.label, "confidence": self.confidence}


@dataclass(frozen=True)
class TextAnalysis:
    """Immutable result of analysing one piece of text.

    Entity offsets index into ``normalized_text``. For non-Hebrew input the
    normalized text is the original text.
    """

    text: str
    normalized_text: str
    tokens: tuple[str, ...]
    language: str
    is_hebrew: bool
    entities: tuple[Entity, ...] = ()
    sentiment: Sentiment = field(default_factory=Sentiment.neutral)

    def summary(self) -> Dict[str, Any]:
        """Return a JSON-friendly view stored alongside persisted messages."""

        return {
            "language": self.language,
            "is_hebrew": self.is_hebrew,
            "normalized_text": self.normalized_text,
            "entities": [entity.as_dict() for entity in self.entities],
            "sentiment": self.sentiment.as_dict(),
        }


class LanguageAnalysisProvider(Protocol):
    """Pluggable tokenizer, entity recognizer and sentiment scorer."""

    def tokenize(self, text: str) -> List[str]: ...

    def extract_entities(self, text: str) -> List[Entity]: ...

    def analyze_sentiment(self, tokens: Sequence[str]) -> Sentiment: ...


class RuleBasedAnalysisProvider:
    """Pattern and lexicon based analysis for Hebrew and English text."""

    def __init__(
        self,
        patterns: Sequence[tuple[str, re.Pattern[str], float]] = ENTITY_PATTERNS,
        positive: Optional[set[str]] = None,
        negative: Optional[set[str]] = None,
    ) -> None:
        self._patterns = tuple(patterns)
        self._positive = positive if positive is not None else _POSITIVE
        self._negative = negative if negative is not None else _NEGATIVE

    def tokenize(self, text: str) -> List[str]:
        return tokenize(text)

    def extract_entities(self, text: str) -> List[Entity]:
        # Each pattern runs on its own, so overlapping spans are all kept.
        entities: List[Entity] = []
        for entity_type, pattern, confidence in self._patterns:
            for match in pattern.finditer(text):
                entities.append(
                    Entity(
                        type=entity_type,
                        value=match.group(0),
                        start=match.start(),
                        end=match.end(),
                        confidence=confidence,
                    )
                )
        return entities

    def _polarity(self, word: str) -> int:
        candidates = [word]
        if len(word) > 2 and word[0] in _HEBREW_PREFIXES:
            candidates.append(word[1:])
        for candidate in candidates:
            if candidate in self._positive:
                return 1
            if candidate in self._negative:
                return -1
        return 0

    def analyze_sentiment(self, tokens: Sequence[str]) -> Sentiment:
        total = 0.0
        hits = 0
        negate_window = 0
        boost = 1.0
        for raw in tokens:
            word = raw.strip(_STRIP_CHARS).lower()
            if not word:
                continue
            if word in _NEGATIONS:
                negate_window = 2
                continue
            if word in _INTENSIFIERS:
                boost = 1.5
                continue
            polarity = self._polarity(word)
            if polarity:
                value = polarity * boost
                if negate_window:
                    value = -value
                total += value
                hits += 1
                negate_window = 0
                boost = 1.0
            elif negate_window:
                negate_window -= 1
        if not hits:
            return Sentiment(score=0.0, label="neutral", confidence=0.5)
        score = total / math.sqrt(total * total + _NORMALIZATION_ALPHA)
        score = max(-1.0, min(1.0, round(score, 4)))
        confidence = min(0.95, 0.5 + 0.1 * hits)
        return Sentiment(score=score, label=sentiment_label(score), confidence=confidence)


class TextAnalyzer:
    """Normalize and analyse user text; never raises."""

    def __init__(self, provider: LanguageAnalysisProvider | None = None) -> None:
        self._provider = provider or RuleBasedAnalysisProvider()

    def analyze(self, raw_text: str | None) -> TextAnalysis:
        text = raw_text or ""
        if not is_hebrew(text):
            return TextAnalysis(
                text=text,
                normalized_text=text,
                tokens=tuple(tokenize(text)),
                language=self._language(text),
                is_hebrew=False,
            )

        normalized = normalize_hebrew(text)
        try:
            tokens = self._provider.tokenize(normalized)
            entities = self._provider.extract_entities(normalized)
            sentiment = self._provider.analyze_sentiment(tokens)
        except Exception:
            logger.exception("Language analysis failed; using neutral analysis")
            return TextAnalysis(
                text=text,
                normalized_text=normalized,
                tokens=tuple(tokenize(normalized)),
                language="he",
                is_hebrew=True,
            )
        return TextAnalysis(
            text=text,
            normalized_text=normalized,
            tokens=tuple(tokens),
            language="he",
            is_hebrew=True,
            entities=tuple(entities),
            sentiment=sentiment,
        )

    def _language(self, text: str) -> str:
        if not text.strip():
            return "en"
        try:
            return detect(text)
        except LangDetectException:
            return "en"


__all__ = [
    "Entity",
    "LanguageAnalysisProvider",
    "RuleBasedAnalysisProvider",
    "Sentiment",
    "TextAnalysis",
    "TextAnalyzer",
    "sentiment_label",
]
