"""Post-processing of raw model replies."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, List

from ..conversations.models import TurnResult
from ..nlp import normalize_hebrew, wrap_ltr_runs

logger = logging.getLogger(__name__)

ACTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"האם תרצה ש(.+?)\?"),
    re.compile(r"האם תרצי ש(.+?)\?"),
    re.compile(r"האם אוכל לעזור ב(.+?)\?"),
    re.compile(r"Would you like me to (.+?)\?", re.IGNORECASE),
    re.compile(r"Can I help you with (.+?)\?", re.IGNORECASE),
    re.compile(r"Shall I (.+?)\?", re.IGNORECASE),
)


def extract_suggested_actions(text: str) -> List[str]:
    """Collect offered follow-up actions in order of appearance, deduplicated."""

    found: list[tuple[int, str]] = []
    for pattern in ACTION_PATTERNS:
        for match in pattern.finditer(text or ""):
            action = match.group(1).strip()
            if action:
                found.append((match.start(), action))
    found.sort(key=lambda item: item[0])
    actions: List[str] = []
    for _, action in found:
        if action not in actions:
            actions.append(action)
    return actions


def _format_hebrew(text: str) -> str:
    lines: list[str] = []
    for line in wrap_ltr_runs(text).splitlines():
        normalized = normalize_hebrew(line)
        if not normalized and (not lines or not lines[-1]):
            continue
        lines.append(normalized)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


class ResponsePostProcessor:
    """Turn raw completions into :class:`TurnResult` objects."""

    def __init__(self, default_confidence: float = 0.95) -> None:
        if not 0 < default_confidence <= 1:
            raise ValueError("default_confidence must be within (0, 1]")
        self._confidence = default_confidence

    def process(
        self,
        raw: str,
        is_hebrew: bool,
        *,
        model: str | None = None,
        language: str | None = None,
    ) -> TurnResult:
        try:
            actions = extract_suggested_actions(raw)
        except Exception:  # pragma: no cover - patterns are static
            logger.exception("Suggested action extraction failed")
            actions = []

        content = (raw or "").strip()
        if is_hebrew:
            content = _format_hebrew(content)

        metadata: dict[str, Any] = {
            "language": "he" if is_hebrew else (language or "en"),
            "processed_at": datetime.now(timezone.utc).isoformat(),
            "rtl_formatted": is_hebrew,
        }
        if model:
            metadata["model"] = model
        return TurnResult(
            content=content,
            confidence=self._confidence,
            suggested_actions=actions,
            metadata=metadata,
        )


__all__ = ["ACTION_PATTERNS", "ResponsePostProcessor", "extract_suggested_actions"]
