from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from functools import partial
from typing import Dict, Iterable, List, Optional

from codex_keeper.batch import BatchProcessor
from codex_keeper.config.models import AppConfig
from codex_keeper.errors import (
    KeeperError,
    NotFoundError,
    ProviderRateLimitError,
    RateLimitExceededError,
    ValidationError,
)
from codex_keeper.fetcher import ContentFetcher, FetchResult
from codex_keeper.search import RelevanceScorer
from codex_keeper.search.scorer import keywords_of
from codex_keeper.service.models import (
    AddOrUpdateResult,
    DocumentSummary,
    Page,
    RefreshOutcome,
    RefreshReport,
    SearchHit,
)
from codex_keeper.service.requests import (
    AddOrUpdateRequest,
    FindLinesRequest,
    GetVersionRequest,
    ListDocumentsRequest,
    RefreshCacheRequest,
    RemoveRequest,
    SearchRequest,
)
from codex_keeper.store import ContentStore
from codex_keeper.store.models import DocumentDetails, DocumentRecord, LineMatch, ResourceInfo
from codex_keeper.store.utils import parse_rfc3339, utc_now
from codex_keeper.throttle import RateLimiter

logger = logging.getLogger(__name__)


def conditional_headers(resource: Optional[ResourceInfo]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    if resource is None:
        return headers
    if resource.etag:
        headers["If-None-Match"] = resource.etag
    if resource.last_modified:
        headers["If-Modified-Since"] = resource.last_modified
    return headers


def build_placeholder(request: AddOrUpdateRequest, error: str) -> str:
    lines = [
        f"# {request.name}",
        "",
        "> Placeholder: the source content could not be fetched yet.",
        "",
    ]
    if request.description:
        lines.extend([request.description, ""])
    lines.append(f"- URL: {request.url}")
    if request.category:
        lines.append(f"- Category: {request.category}")
    if request.tags:
        lines.append(f"- Tags: {', '.join(request.tags)}")
    lines.extend(["", f"Last error: {error}"])
    return "\n".join(lines)


def _filter_records(records: Iterable[DocumentRecord], *, category: Optional[str], tag: Optional[str]) -> List[DocumentRecord]:
    wanted_category = category.lower() if category else None
    wanted_tag = tag.lower() if tag else None
    selected: List[DocumentRecord] = []
    for record in records:
        if wanted_category and record.category.lower() != wanted_category:
            continue
        if wanted_tag and wanted_tag not in {t.lower() for t in record.tags}:
            continue
        selected.append(record)
    return selected


class DocumentationService:
    """
    Inbound operations over the documentation cache.

    Every call is attributed to a client id and admitted through the rate limiter before
    any work is done.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        store: ContentStore,
        fetcher: ContentFetcher,
        rate_limiter: RateLimiter,
        scorer: Optional[RelevanceScorer] = None,
        background: bool = True,
    ) -> None:
        self._config = config
        self._store = store
        self._fetcher = fetcher
        self._rate_limiter = rate_limiter
        self._scorer = scorer or RelevanceScorer()
        self._background = background

    @classmethod
    def from_config(cls, config: AppConfig, *, background: bool = True) -> DocumentationService:
        return cls(
            config=config,
            store=ContentStore(settings=config.storage),
            fetcher=ContentFetcher(config.fetcher),
            rate_limiter=RateLimiter.from_settings(config.rate_limit),
            background=background,
        )

    @property
    def store(self) -> ContentStore:
        return self._store

    async def __aenter__(self) -> DocumentationService:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def start(self) -> None:
        await self._fetcher.start()
        if self._background:
            self._store.start()
            self._rate_limiter.start(
                interval_seconds=self._config.rate_limit.cleanup_interval_seconds,
                max_age_seconds=self._config.rate_limit.bucket_max_idle_seconds,
            )
        logger.info("Documentation service started. documents=%s", len(self._store.records()))

    async def stop(self) -> None:
        await self._rate_limiter.stop()
        await self._store.stop()
        await self._fetcher.stop()
        logger.info("Documentation service stopped.")

    # Inbound operations

    async def list_documents(
        self,
        client_id: str,
        request: ListDocumentsRequest = ListDocumentsRequest(),
    ) -> Page[DocumentSummary]:
        self._admit(client_id)
        records = _filter_records(self._store.records(), category=request.category, tag=request.tag)
        summaries = [DocumentSummary.from_record(r) for r in records]
        return Page.slice(summaries, page=request.page, page_size=self._page_size(request.page_size))

    async def add_or_update(self, client_id: str, request: AddOrUpdateRequest) -> AddOrUpdateResult:
        self._admit(client_id)
        details = DocumentDetails(
            source_url=request.url,
            description=request.description,
            category=request.category,
            tags=set(request.tags),
            alternative_url=request.alternative_url,
        )

        try:
            result = await self._fetch(request.url, request.alternative_url)
        except KeeperError as e:
            error = str(e)
            logger.warning("Document fetch failed. name=%s url=%s error=%s", request.name, request.url, error)
            existing = self._store.get(request.name)
            if existing is None or existing.current is None:
                record = await self._store.save(
                    request.name,
                    build_placeholder(request, error),
                    version=request.version,
                    details=details,
                    update_error=error,
                )
            else:
                record = await self._store.record_failure(request.name, error, details=details)
            return AddOrUpdateResult(document=DocumentSummary.from_record(record), cache_updated=False, error=error)

        record = await self._store.save(request.name, result, version=request.version, details=details)
        return AddOrUpdateResult(document=DocumentSummary.from_record(record), cache_updated=True)

    async def remove(self, client_id: str, request: RemoveRequest) -> None:
        self._admit(client_id)
        await self._store.remove(request.name)

    async def search(self, client_id: str, request: SearchRequest) -> Page[SearchHit]:
        self._admit(client_id)
        if not keywords_of(request.query):
            raise ValidationError("Search query needs at least one word longer than one character")

        records = _filter_records(self._store.records(), category=request.category, tag=request.tag)
        documents = [(record, await self._store.read_current_content(record.name)) for record in records]
        ranked = self._scorer.rank(documents, request.query)
        hits = [
            SearchHit(
                name=s.record.name,
                url=s.record.source_url,
                category=s.record.category,
                description=s.record.description,
                tags=sorted(s.record.tags),
                relevance_score=s.score,
                match_highlights=s.matches,
            )
            for s in ranked
        ]
        logger.debug("Search finished. query=%s candidates=%s hits=%s", request.query, len(records), len(hits))
        return Page.slice(hits, page=request.page, page_size=self._page_size(request.page_size))

    async def refresh_cache(
        self,
        client_id: str,
        request: RefreshCacheRequest = RefreshCacheRequest(),
    ) -> RefreshReport:
        self._admit(client_id)
        if request.name is not None:
            outcome = await self._refresh_document(request.name, force=request.force, strict=True)
            return RefreshReport(outcomes=[outcome])
        return await self._refresh_all(force=request.force)

    async def find_lines(self, client_id: str, request: FindLinesRequest) -> List[LineMatch]:
        self._admit(client_id)
        return await self._store.search_lines(request.name, request.query)

    async def get_version(self, client_id: str, request: GetVersionRequest) -> str:
        self._admit(client_id)
        return self._store.get_version(request.name, request.version)

    # Internals

    def _admit(self, client_id: str) -> None:
        result = self._rate_limiter.check_limit(client_id)
        if not result.allowed:
            retry_after = result.retry_after or self._rate_limiter.seconds_per_token
            logger.info("Request rejected by rate limiter. client_id=%s retry_after=%s", client_id, retry_after)
            raise RateLimitExceededError(client_id, retry_after)

    def _page_size(self, requested: Optional[int]) -> int:
        size = requested or self._config.service.default_page_size
        return min(size, self._config.service.max_page_size)

    def _recently_updated(self, record: DocumentRecord) -> bool:
        if not record.last_successful_update:
            return False
        try:
            last = parse_rfc3339(record.last_successful_update)
        except ValueError:
            return False
        window = timedelta(hours=self._config.service.min_update_interval_hours)
        return utc_now() - last < window

    async def _fetch(
        self,
        url: str,
        alternative_url: Optional[str],
        headers: Optional[Dict[str, str]] = None,
    ) -> FetchResult:
        try:
            return await self._fetcher.fetch(url, headers)
        except ProviderRateLimitError:
            if not alternative_url:
                raise
            logger.warning(
                "Provider rate limit reached, using alternative URL. url=%s alternative_url=%s",
                url,
                alternative_url,
            )
            # Validators belong to the primary URL, so the alternative is fetched unconditionally.
            return await self._fetcher.fetch(alternative_url)

    async def _refresh_document(self, name: str, *, force: bool, strict: bool) -> RefreshOutcome:
        record = self._store.require(name)
        if not record.source_url:
            return RefreshOutcome(name=name, status="skipped", error="no source URL")
        if not force and self._recently_updated(record):
            if strict:
                raise ValidationError(
                    f"Document {name} was updated less than "
                    f"{self._config.service.min_update_interval_hours:g} hours ago; use force to refresh"
                )
            return RefreshOutcome(name=name, status="skipped", error="recently updated")

        headers = {} if force else conditional_headers(record.resource)
        try:
            result = await self._fetch(record.source_url, record.alternative_url, headers)
        except KeeperError as e:
            logger.warning("Document refresh failed. name=%s url=%s error=%s", name, record.source_url, e)
            try:
                await self._store.record_failure(name, str(e))
            except NotFoundError:
                logger.info("Document removed during refresh. name=%s", name)
            if strict:
                raise
            return RefreshOutcome(name=name, status="failed", error=str(e))

        # The document may have been removed while the fetch was in flight; it stays removed.
        try:
            await self._store.save(name, result, force=force, create=False)
        except KeeperError as e:
            logger.warning("Refreshed content not saved. name=%s error=%s", name, e)
            if strict:
                raise
            return RefreshOutcome(name=name, status="failed", error=str(e))
        return RefreshOutcome(name=name, status="not_modified" if result.not_modified else "updated")

    async def _refresh_all(self, *, force: bool) -> RefreshReport:
        names = [r.name for r in self._store.records()]
        batch: BatchProcessor[RefreshOutcome] = BatchProcessor.from_settings(self._config.service.refresh_batch)
        futures = [batch.submit(partial(self._refresh_document, name, force=force, strict=False)) for name in names]
        await batch.flush()
        results = await asyncio.gather(*futures, return_exceptions=True)

        report = RefreshReport()
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                report.outcomes.append(RefreshOutcome(name=name, status="failed", error=str(result)))
            else:
                report.outcomes.append(result)
        logger.info("Refresh finished. documents=%s results=%s", len(names), report.by_status())
        return report
