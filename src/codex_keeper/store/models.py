from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

SchemaVersion = 1


@dataclass(slots=True)
class VersionEntry:
    version: str
    content: str
    timestamp: str


@dataclass(slots=True)
class ResourceInfo:
    """Validators remembered from the last fetch, used for conditional refresh."""

    etag: Optional[str] = None
    last_modified: Optional[str] = None
    content_hash: Optional[str] = None


@dataclass(slots=True)
class TermPostings:
    positions: List[int] = field(default_factory=list)
    lines: List[int] = field(default_factory=list)


InvertedIndex = Dict[str, TermPostings]


@dataclass(slots=True)
class DocumentDetails:
    """Caller-owned descriptive fields of a document."""

    source_url: Optional[str] = None
    description: str = ""
    category: str = ""
    tags: Set[str] = field(default_factory=set)
    alternative_url: Optional[str] = None


@dataclass(slots=True)
class DocumentRecord:
    name: str
    source_url: Optional[str] = None
    description: str = ""
    category: str = ""
    tags: Set[str] = field(default_factory=set)
    alternative_url: Optional[str] = None
    title: Optional[str] = None
    content_type: str = "text/plain"
    resource: Optional[ResourceInfo] = None
    versions: List[VersionEntry] = field(default_factory=list)
    last_successful_update: Optional[str] = None
    last_attempted_update: Optional[str] = None
    update_error: Optional[str] = None
    # None until built; an empty dict means the current content has no tokens.
    search_index: Optional[InvertedIndex] = None

    @property
    def current(self) -> Optional[VersionEntry]:
        return self.versions[0] if self.versions else None

    def apply_details(self, details: DocumentDetails) -> None:
        self.source_url = details.source_url
        self.description = details.description
        self.category = details.category
        self.tags = set(details.tags)
        self.alternative_url = details.alternative_url


@dataclass(slots=True)
class LineMatch:
    line: int
    content: str
    context: str


@dataclass(slots=True)
class CleanupReport:
    removed_files: int = 0
    freed_bytes: int = 0
    expired_memory_entries: int = 0
    rebuilt_indexes: int = 0
