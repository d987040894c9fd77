from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Generic, List, Literal, Optional, Sequence, TypeVar

from codex_keeper.store.models import DocumentRecord

T = TypeVar("T")

RefreshStatus = Literal["updated", "not_modified", "skipped", "failed"]


@dataclass(slots=True)
class DocumentSummary:
    name: str
    url: Optional[str]
    description: str
    category: str
    tags: List[str]
    title: Optional[str]
    current_version: Optional[str]
    versions: int
    last_successful_update: Optional[str]
    last_attempted_update: Optional[str]
    update_error: Optional[str]

    @classmethod
    def from_record(cls, record: DocumentRecord) -> DocumentSummary:
        current = record.current
        return cls(
            name=record.name,
            url=record.source_url,
            description=record.description,
            category=record.category,
            tags=sorted(record.tags),
            title=record.title,
            current_version=current.version if current else None,
            versions=len(record.versions),
            last_successful_update=record.last_successful_update,
            last_attempted_update=record.last_attempted_update,
            update_error=record.update_error,
        )


@dataclass(slots=True)
class SearchHit:
    name: str
    url: Optional[str]
    category: str
    description: str
    tags: List[str]
    relevance_score: float
    match_highlights: List[str]


@dataclass
class Page(Generic[T]):
    items: List[T]
    page: int
    page_size: int
    total_items: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total_items / self.page_size))

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    @classmethod
    def slice(cls, items: Sequence[T], *, page: int, page_size: int) -> Page[T]:
        start = (page - 1) * page_size
        return cls(items=list(items[start : start + page_size]), page=page, page_size=page_size, total_items=len(items))


@dataclass(slots=True)
class AddOrUpdateResult:
    document: DocumentSummary
    cache_updated: bool
    error: Optional[str] = None


@dataclass(slots=True)
class RefreshOutcome:
    name: str
    status: RefreshStatus
    error: Optional[str] = None


@dataclass(slots=True)
class RefreshReport:
    outcomes: List[RefreshOutcome] = field(default_factory=list)

    def by_status(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {"updated": [], "not_modified": [], "skipped": [], "failed": []}
        for outcome in self.outcomes:
            grouped[outcome.status].append(outcome.name)
        return grouped
