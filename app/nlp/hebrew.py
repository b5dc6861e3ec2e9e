"""Hebrew text helpers: detection, normalization and directionality marks."""

from __future__ import annotations

import re

HEBREW_RANGE = re.compile(r"[\u0590-\u05FF]")
_HEBREW_LETTER = re.compile(r"[\u05d0-\u05ea]")
_WHITESPACE = re.compile(r"\s+")
_LTR_RUN = re.compile(r"[A-Za-z]+|\d+")

# Left-to-right override / pop directional formatting.
LRO = "\u202d"
PDF = "\u202c"

_PUNCTUATION = {
    "״": '"',  # gershayim
    "׳": "'",  # geresh
    "־": "-",  # maqaf
}

FINAL_FORMS = {
    "כ": "ך",
    "מ": "ם",
    "נ": "ן",
    "פ": "ף",
    "צ": "ץ",
}


def is_hebrew(text: str | None) -> bool:
    """Return ``True`` when ``text`` contains any Hebrew block character."""

    return bool(text) and HEBREW_RANGE.search(text) is not None


def _is_hebrew_letter(char: str) -> bool:
    return _HEBREW_LETTER.fullmatch(char) is not None


def _fix_word(word: str) -> str:
    end = len(word)
    while end and not _is_hebrew_letter(word[end - 1]):
        end -= 1
    core, tail = word[:end], word[end:]
    if len(core) < 2 or not _is_hebrew_letter(core[-2]):
        return word
    final = FINAL_FORMS.get(core[-1])
    if final is None:
        return word
    return core[:-1] + final + tail


def fix_final_letters(text: str) -> str:
    """Rewrite medial letters that end a word into their final forms.

    Words are delimited by whitespace. Trailing punctuation is ignored when
    locating the last letter, and acronyms whose last letter follows a
    geresh or quote (``ח"כ``) are left alone.
    """

    return "".join(
        _fix_word(part) if part and not part.isspace() else part
        for part in re.split(r"(\s+)", text)
    )


def normalize_hebrew(text: str) -> str:
    """Collapse whitespace, unify Hebrew punctuation and fix final letters."""

    collapsed = _WHITESPACE.sub(" ", text).strip()
    for source, target in _PUNCTUATION.items():
        collapsed = collapsed.replace(source, target)
    return fix_final_letters(collapsed)


def wrap_ltr_runs(text: str) -> str:
    """Wrap Latin-letter runs and digit runs in LRO/PDF marks."""

    return _LTR_RUN.sub(lambda match: f"{LRO}{match.group(0)}{PDF}", text)


def tokenize(text: str) -> list[str]:
    return [token for token in _WHITESPACE.split(text) if token]


__all__ = [
    "FINAL_FORMS",
    "LRO",
    "PDF",
    "fix_final_letters",
    "is_hebrew",
    "normalize_hebrew",
    "tokenize",
    "wrap_ltr_runs",
]
