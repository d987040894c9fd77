from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from codex_keeper.store.models import DocumentRecord

MAX_CONTENT_MATCHES = 3
SNIPPET_RADIUS = 60


@dataclass(frozen=True, slots=True)
class ScoringWeights:
    """Points awarded per signal. Relative order matters more than the exact values."""

    content_phrase: float = 100
    content_keywords: float = 50
    name_phrase: float = 150
    name_word: float = 75
    name_substring: float = 50
    description_phrase: float = 100
    description_word: float = 40
    description_substring: float = 25
    category_keyword: float = 30
    tag_exact: float = 200
    tag_phrase: float = 150
    tag_keywords: float = 100


@dataclass(slots=True)
class ScoredDocument:
    record: DocumentRecord
    score: float
    matches: List[str] = field(default_factory=list)


def keywords_of(query: str) -> List[str]:
    seen: dict[str, None] = {}
    for word in query.lower().split():
        if len(word) > 1:
            seen.setdefault(word, None)
    return list(seen)


def _contains_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


def _dehyphenate(text: str) -> str:
    return text.replace("-", " ")


def _snippet(content: str, start: int, length: int) -> str:
    begin = max(0, start - SNIPPET_RADIUS)
    end = min(len(content), start + length + SNIPPET_RADIUS)
    text = " ".join(content[begin:end].split())
    prefix = "..." if begin > 0 else ""
    suffix = "..." if end < len(content) else ""
    return f"{prefix}{text}{suffix}"


class RelevanceScorer:
    """Rank documents by combining content matches with name, description, category and tag matches."""

    def __init__(self, weights: ScoringWeights = ScoringWeights()) -> None:
        self._weights = weights

    def score(self, record: DocumentRecord, query: str, content: Optional[str] = None) -> Optional[ScoredDocument]:
        phrase = " ".join(query.lower().split())
        keywords = keywords_of(query)
        if not phrase or not keywords:
            return None

        total = 0.0
        matches: List[str] = []

        if content:
            points, highlights = self._content_score(content, phrase, keywords)
            total += points
            matches.extend(highlights)

        for points, highlight in self._metadata_signals(record, phrase, keywords):
            total += points
            matches.append(highlight)

        if total <= 0:
            return None
        return ScoredDocument(record=record, score=total, matches=matches)

    def rank(
        self,
        documents: Iterable[Tuple[DocumentRecord, Optional[str]]],
        query: str,
    ) -> List[ScoredDocument]:
        scored = [s for s in (self.score(record, query, content) for record, content in documents) if s is not None]
        # sort is stable, so equal scores keep input order
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored

    def _content_score(self, content: str, phrase: str, keywords: Sequence[str]) -> Tuple[float, List[str]]:
        w = self._weights
        lowered = content.lower()
        points = 0.0
        highlights: List[str] = []

        position = lowered.find(phrase)
        if position >= 0:
            points += w.content_phrase
            highlights.append(f"Content: {_snippet(content, position, len(phrase))}")

        matched = 0
        for keyword in keywords:
            position = lowered.find(keyword)
            if position < 0:
                continue
            matched += 1
            if len(highlights) < MAX_CONTENT_MATCHES:
                highlight = f"Content: {_snippet(content, position, len(keyword))}"
                if highlight not in highlights:
                    highlights.append(highlight)
        if matched:
            points += w.content_keywords * matched / len(keywords)
        return points, highlights[:MAX_CONTENT_MATCHES]

    def _metadata_signals(
        self,
        record: DocumentRecord,
        phrase: str,
        keywords: Sequence[str],
    ) -> Iterable[Tuple[float, str]]:
        w = self._weights
        name = record.name.lower()
        description = record.description.lower()
        category = record.category.lower()

        if phrase in name:
            yield w.name_phrase, f"Name matches: {record.name}"
        for keyword in keywords:
            if _contains_word(name, keyword):
                yield w.name_word, f"Name contains word: {keyword}"
            elif keyword in name:
                yield w.name_substring, f"Name contains: {keyword}"

        if description:
            if phrase in description:
                yield w.description_phrase, f"Description matches: {record.description}"
            for keyword in keywords:
                if _contains_word(description, keyword):
                    yield w.description_word, f"Description contains word: {keyword}"
                elif keyword in description:
                    yield w.description_substring, f"Description contains: {keyword}"

        if category:
            for keyword in keywords:
                if keyword in category:
                    yield w.category_keyword, f"Category: {record.category}"

        tags = sorted(record.tags)
        if tags:
            normalized_phrase = _dehyphenate(phrase)
            for tag in tags:
                normalized_tag = _dehyphenate(tag.lower())
                if normalized_tag == normalized_phrase:
                    yield w.tag_exact, f"Tag: {tag}"
                elif normalized_phrase in normalized_tag:
                    yield w.tag_phrase, f"Tag contains: {tag}"

            tag_words = set()
            for tag in tags:
                tag_words.add(tag.lower())
                tag_words.update(_dehyphenate(tag.lower()).split())
            query_words = set(keywords)
            found = [k for k in query_words if k in tag_words]
            if found:
                yield w.tag_keywords * len(found) / len(query_words), f"Tags match: {', '.join(sorted(found))}"
