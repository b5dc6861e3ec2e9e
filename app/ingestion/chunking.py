"""Utilities for transforming raw text into embedding-ready chunks."""

from __future__ import annotations

import re
from typing import List

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_END = re.compile(r"(?<=[.!?׃])\s+")


def split_sentences(text: str) -> List[str]:
    """Split on paragraph breaks and sentence-final punctuation."""

    sentences: List[str] = []
    for paragraph in _PARAGRAPH_BREAK.split(text.replace("\r", "")):
        for sentence in _SENTENCE_END.split(paragraph.strip()):
            sentence = " ".join(sentence.split())
            if sentence:
                sentences.append(sentence)
    return sentences


def chunk_text(text: str, *, max_chars: int = 1000, overlap: int = 100) -> List[str]:
    """Pack whole sentences into chunks of at most ``max_chars`` characters.

    A sentence longer than ``max_chars`` is cut into windows that share
    ``overlap`` characters with the previous window.
    """

    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if not 0 <= overlap < max_chars:
        raise ValueError("overlap must be within [0, max_chars)")
    if not text or not text.strip():
        return []

    chunks: List[str] = []
    buf = ""
    for sentence in split_sentences(text):
        if len(buf) + len(sentence) + 1 <= max_chars:
            buf = f"{buf} {sentence}" if buf else sentence
            continue
        if buf:
            chunks.append(buf)
        buf = sentence
        while len(buf) > max_chars:
            chunks.append(buf[:max_chars].strip())
            buf = buf[max_chars - overlap :].strip()
    if buf:
        chunks.append(buf)
    return chunks


__all__ = ["chunk_text", "split_sentences"]
