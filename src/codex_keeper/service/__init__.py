from codex_keeper.service.documentation_service import DocumentationService
from codex_keeper.service.models import AddOrUpdateResult, DocumentSummary, Page, RefreshReport, SearchHit
from codex_keeper.service.requests import (
    AddOrUpdateRequest,
    FindLinesRequest,
    GetVersionRequest,
    ListDocumentsRequest,
    RefreshCacheRequest,
    RemoveRequest,
    SearchRequest,
    build_request,
)

__all__ = [
    "AddOrUpdateRequest",
    "AddOrUpdateResult",
    "DocumentSummary",
    "DocumentationService",
    "FindLinesRequest",
    "GetVersionRequest",
    "ListDocumentsRequest",
    "Page",
    "RefreshCacheRequest",
    "RefreshReport",
    "RemoveRequest",
    "SearchHit",
    "SearchRequest",
    "build_request",
]
