"""Detect words from languages the user does not read."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import stopwordsiso

LOGGER = logging.getLogger(__name__)

# Short stopwords collide across too many languages to be useful signals.
MIN_WORD_LENGTH = 3


class StopwordError(ValueError):
    """Raised for languages the stopword tables do not cover."""


@dataclass(frozen=True)
class StopwordHit:
    """First foreign stopword found in a piece of text."""

    word: str
    language: str


class _Node:
    __slots__ = ("children", "languages")

    def __init__(self) -> None:
        self.children: dict[str, _Node] = {}
        self.languages: list[str] = []


class StopwordSearcher:
    """Character trie of stopwords, each terminal tagged with its languages."""

    def __init__(self) -> None:
        self._root = _Node()
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def add(self, word: str, language: str) -> None:
        node = self._root
        for char in word:
            node = node.children.setdefault(char, _Node())
        if not node.languages:
            self._size += 1
        if language not in node.languages:
            node.languages.append(language)

    def search(self, word: str) -> str | None:
        """Return the comma-joined languages for ``word`` if it is a stopword."""

        node = self._root
        for char in word:
            child = node.children.get(char)
            if child is None:
                return None
            node = child
        return ",".join(node.languages) or None

    def detect(self, text: str | None) -> StopwordHit | None:
        """Scan whitespace-separated tokens and return the first hit."""

        if not text:
            return None
        for word in text.lower().split():
            language = self.search(word)
            if language:
                return StopwordHit(word=word, language=language)
        return None


def build_searcher(
    languages: Iterable[str],
    common_words: Iterable[str] = (),
    *,
    tables: Mapping[str, Iterable[str]] | None = None,
) -> StopwordSearcher:
    """Index stopwords of every language except ``languages``.

    Words that are stopwords in one of the user's languages, or listed in
    ``common_words``, are never indexed.
    """

    source = tables if tables is not None else _iso_tables()
    exempt_languages = [lang.lower() for lang in languages]

    exempt_words: set[str] = set()
    for lang in exempt_languages:
        words = source.get(lang)
        if words is None:
            raise StopwordError(f"Unsupported language: {lang}")
        exempt_words.update(word.lower() for word in words)
    exempt_words.update(
        word.lower() for word in common_words if len(word) >= MIN_WORD_LENGTH
    )

    searcher = StopwordSearcher()
    for lang, words in source.items():
        if lang in exempt_languages:
            continue
        for word in words:
            normalized = word.lower()
            if len(normalized) < MIN_WORD_LENGTH or normalized in exempt_words:
                continue
            searcher.add(normalized, lang)
    LOGGER.debug(
        "Indexed %s foreign stopword(s); exempt languages: %s",
        len(searcher),
        ", ".join(exempt_languages) or "none",
    )
    return searcher


def _iso_tables() -> dict[str, set[str]]:
    return {lang: set(stopwordsiso.stopwords(lang)) for lang in sorted(stopwordsiso.langs())}


__all__ = [
    "MIN_WORD_LENGTH",
    "StopwordError",
    "StopwordHit",
    "StopwordSearcher",
    "build_searcher",
]
