from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional

ContentType = Literal["text/markdown", "text/html", "application/json", "text/plain"]

MARKDOWN: ContentType = "text/markdown"
HTML: ContentType = "text/html"
JSON: ContentType = "application/json"
PLAIN: ContentType = "text/plain"

FILE_EXTENSIONS: Dict[str, str] = {
    MARKDOWN: "md",
    HTML: "html",
    JSON: "json",
    PLAIN: "txt",
}


@dataclass(slots=True)
class Heading:
    level: int
    text: str


@dataclass(slots=True)
class HtmlMetadata:
    title: Optional[str] = None
    description: Optional[str] = None
    headings: List[Heading] = field(default_factory=list)
    original_size: int = 0
    processed_size: int = 0
    main_content_selector: Optional[str] = None


@dataclass(slots=True)
class FetchResult:
    url: str
    content: str
    content_type: ContentType
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    not_modified: bool = False
    title: Optional[str] = None
    description: Optional[str] = None
    source: str = "http"
    html: Optional[HtmlMetadata] = None
