from __future__ import annotations

import re
from typing import Iterable, List, Sequence

from codex_keeper.store.models import InvertedIndex, LineMatch, TermPostings

_WORD = re.compile(r"\w+")

CONTEXT_RADIUS = 2


def split_lines(content: str) -> List[str]:
    return content.split("\n")


def build_inverted_index(content: str) -> InvertedIndex:
    """Map every lower-cased token to the lines and in-line offsets where it occurs."""
    index: InvertedIndex = {}
    for line_number, line in enumerate(split_lines(content.lower())):
        for match in _WORD.finditer(line):
            postings = index.get(match.group(0))
            if postings is None:
                postings = TermPostings()
                index[match.group(0)] = postings
            postings.positions.append(match.start())
            postings.lines.append(line_number)
    return index


def query_tokens(query: str) -> List[str]:
    seen: dict[str, None] = {}
    for token in _WORD.findall(query.lower()):
        if len(token) > 1:
            seen.setdefault(token, None)
    return list(seen)


def lines_from_index(index: InvertedIndex, tokens: Iterable[str]) -> List[int]:
    matched: set[int] = set()
    for token in tokens:
        postings = index.get(token)
        if postings is not None:
            matched.update(postings.lines)
    return sorted(matched)


def lines_from_scan(content: str, tokens: Sequence[str]) -> List[int]:
    wanted = set(tokens)
    matched: List[int] = []
    for line_number, line in enumerate(split_lines(content.lower())):
        if wanted.intersection(_WORD.findall(line)):
            matched.append(line_number)
    return matched


def build_line_matches(content: str, line_numbers: Iterable[int]) -> List[LineMatch]:
    lines = split_lines(content)
    results: List[LineMatch] = []
    for n in line_numbers:
        if n < 0 or n >= len(lines):
            continue
        start = max(0, n - CONTEXT_RADIUS)
        end = min(len(lines), n + CONTEXT_RADIUS + 1)
        results.append(LineMatch(line=n + 1, content=lines[n], context="\n".join(lines[start:end])))
    return results
