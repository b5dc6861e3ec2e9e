"""Hebrew-aware normalization and text analysis."""

from .analyzer import (
    Entity,
    LanguageAnalysisProvider,
    RuleBasedAnalysisProvider,
    Sentiment,
    TextAnalysis,
    TextAnalyzer,
    sentiment_label,
)
from .hebrew import fix_final_letters, is_hebrew, normalize_hebrew, wrap_ltr_runs

__all__ = [
    "Entity",
    "LanguageAnalysisProvider",
    "RuleBasedAnalysisProvider",
    "Sentiment",
    "TextAnalysis",
    "TextAnalyzer",
    "fix_final_letters",
    "is_hebrew",
    "normalize_hebrew",
    "sentiment_label",
    "wrap_ltr_runs",
]
