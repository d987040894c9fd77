from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import quote

import aiohttp

from codex_keeper.config.models import FetcherSettings
from codex_keeper.errors import (
    FetchTimeoutError,
    KeeperError,
    NetworkError,
    ProviderRateLimitError,
    StorageError,
    ValidationError,
)
from codex_keeper.fetcher.html import HtmlNormalizer
from codex_keeper.fetcher.models import HTML, MARKDOWN, PLAIN, ContentType, FetchResult, HtmlMetadata
from codex_keeper.fetcher.urls import (
    content_type_from_extension,
    detect_content_type,
    file_url_path,
    gist_id,
    github_repo_url,
    is_gist_url,
    is_github_blob_url,
    is_npm_package_url,
    parse_github_blob,
    parse_npm_package,
    sanitize_local_path,
    sanitize_url,
)

logger = logging.getLogger(__name__)

CONDITIONAL_HEADERS = ("If-None-Match", "If-Modified-Since")

# Client errors worth another attempt; every other 4xx is final.
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


@dataclass(slots=True)
class _Response:
    status: int
    text: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    content_type: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        return self.status == 304


def _is_retryable(error: KeeperError) -> bool:
    if isinstance(error, (ValidationError, ProviderRateLimitError)):
        return False
    if isinstance(error, NetworkError) and error.status is not None:
        return error.status >= 500 or error.status in _RETRYABLE_CLIENT_STATUSES
    return True


def _exhausted(url: str, attempts: int, last_error: KeeperError) -> KeeperError:
    message = f"Failed to fetch content after {attempts} attempts: {url}"
    if isinstance(last_error, NetworkError):
        return type(last_error)(message, status=last_error.status, cause=last_error)
    return type(last_error)(message, cause=last_error)


def _parse_json(text: str, *, url: str) -> Dict[str, Any]:
    try:
        payload = json.loads(text)
    except ValueError as e:
        raise NetworkError(f"Invalid JSON response from {url}", cause=e) from e
    if not isinstance(payload, dict):
        raise NetworkError(f"Unexpected JSON response from {url}")
    return payload


class ContentFetcher:
    """
    Retrieve documentation content from local files, GitHub, Gists, npm packages and plain HTTP.

    Use as an async context manager, or call ``start``/``stop`` explicitly to share one
    HTTP session across many fetches.
    """

    def __init__(self, settings: FetcherSettings, *, session: Optional[aiohttp.ClientSession] = None) -> None:
        self._settings = settings
        self._session = session
        self._owns_session = session is None
        self._html = HtmlNormalizer(settings.html)

    async def __aenter__(self) -> ContentFetcher:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def start(self) -> None:
        if self._session is not None:
            return
        timeout = aiohttp.ClientTimeout(total=self._settings.timeout_seconds)
        self._session = aiohttp.ClientSession(timeout=timeout, headers={"User-Agent": self._settings.user_agent})
        self._owns_session = True

    async def stop(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def fetch(self, url: str, conditional_headers: Optional[Mapping[str, str]] = None) -> FetchResult:
        if self._session is None:
            async with self:
                return await self.fetch(url, conditional_headers)

        clean_url = sanitize_url(url)
        headers = {k: v for k, v in (conditional_headers or {}).items() if k in CONDITIONAL_HEADERS and v}
        attempts = self._settings.max_retries
        last_error: Optional[KeeperError] = None

        for attempt in range(1, attempts + 1):
            logger.debug("fetch.start url=%s attempt=%s", clean_url, attempt)
            try:
                result = await self._dispatch(clean_url, headers)
            except KeeperError as e:
                if not _is_retryable(e):
                    raise
                last_error = e
            else:
                logger.debug(
                    "fetch.success url=%s source=%s not_modified=%s size=%s",
                    clean_url,
                    result.source,
                    result.not_modified,
                    len(result.content),
                )
                return result

            if attempt < attempts:
                delay = self._settings.retry_delay_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "Fetch attempt failed, retrying. url=%s attempt=%s delay_seconds=%s error=%s",
                    clean_url,
                    attempt,
                    delay,
                    last_error,
                )
                await asyncio.sleep(delay)

        assert last_error is not None
        logger.error("Fetch failed after retries. url=%s attempts=%s error=%s", clean_url, attempts, last_error)
        raise _exhausted(clean_url, attempts, last_error) from last_error

    async def _dispatch(self, url: str, headers: Dict[str, str]) -> FetchResult:
        if url.startswith("file://"):
            return await self._fetch_file(url)
        if is_gist_url(url):
            return await self._fetch_gist(url, headers)
        if is_github_blob_url(url):
            return await self._fetch_github(url, headers)
        if is_npm_package_url(url):
            return await self._fetch_npm(url, headers)
        return await self._fetch_http(url, headers)

    async def _fetch_file(self, url: str) -> FetchResult:
        path = sanitize_local_path(file_url_path(url), Path(self._settings.local_root))
        try:
            size = path.stat().st_size
            if size > self._settings.max_content_bytes:
                raise ValidationError(
                    f"Content too large: {size} bytes exceeds {self._settings.max_content_bytes} bytes"
                )
            data = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageError(f"File not found: {path}", cause=e) from e
        except OSError as e:
            raise StorageError(f"Failed to read file: {path}", cause=e) from e

        content_type = content_type_from_extension(path.name) or PLAIN
        content, content_type, html_meta = await self._normalize(data.decode("utf-8", errors="replace"), content_type, url)
        return self._result(url, content, content_type, html_meta, source="file")

    async def _fetch_gist(self, url: str, headers: Dict[str, str]) -> FetchResult:
        api_url = f"{self._settings.github_api_url.rstrip('/')}/gists/{quote(gist_id(url))}"
        response = await self._get(api_url, headers={**headers, **self._github_headers("application/vnd.github.v3+json")})
        if response.not_modified:
            return self._not_modified(url, response, source="github-gist")

        payload = _parse_json(response.text, url=api_url)
        files = payload.get("files") or {}
        if not isinstance(files, dict) or not files:
            raise ValidationError(f"Gist has no files: {url}")
        first = next(iter(files.values()))
        filename = str(first.get("filename") or "")
        content = first.get("content") or ""
        if first.get("truncated") and first.get("raw_url"):
            content = (await self._get(str(first["raw_url"]), headers={"Accept": "*/*"})).text

        content_type = content_type_from_extension(filename) or PLAIN
        content, content_type, html_meta = await self._normalize(content, content_type, url)
        result = self._result(url, content, content_type, html_meta, source="github-gist", response=response)
        result.title = filename or result.title
        result.description = payload.get("description") or result.description
        return result

    async def _fetch_github(self, url: str, headers: Dict[str, str]) -> FetchResult:
        blob = parse_github_blob(url)
        api_url = (
            f"{self._settings.github_api_url.rstrip('/')}/repos/{quote(blob.owner)}/{quote(blob.repo)}"
            f"/contents/{quote(blob.path)}"
        )
        params = {"ref": blob.branch} if blob.branch else None
        response = await self._get(
            api_url,
            headers={**headers, **self._github_headers("application/vnd.github.v3.raw")},
            params=params,
        )
        if response.not_modified:
            return self._not_modified(url, response, source="github")

        content_type = content_type_from_extension(blob.path) or PLAIN
        content, content_type, html_meta = await self._normalize(response.text, content_type, url)
        result = self._result(url, content, content_type, html_meta, source="github", response=response)
        result.title = result.title or blob.path.rsplit("/", 1)[-1]
        return result

    async def _fetch_npm(self, url: str, headers: Dict[str, str]) -> FetchResult:
        ref = parse_npm_package(url)
        registry_url = f"{self._settings.npm_registry_url.rstrip('/')}/{quote(ref.package, safe='@')}"
        response = await self._get(registry_url, headers={"Accept": "application/json"})
        payload = _parse_json(response.text, url=registry_url)

        repository = payload.get("repository")
        directory: Optional[str] = None
        if isinstance(repository, dict):
            repository_url = repository.get("url")
            directory = repository.get("directory")
        else:
            repository_url = repository
        if not isinstance(repository_url, str) or not repository_url.strip():
            raise ValidationError(f"npm package has no repository URL: {ref.package}")

        path = f"{directory.strip('/')}/{ref.path}" if directory else ref.path
        blob_url = f"{github_repo_url(repository_url)}/blob/HEAD/{path}"
        logger.debug("npm package resolved. package=%s blob_url=%s", ref.package, blob_url)

        result = await self._fetch_github(blob_url, headers)
        result.url = url
        result.source = "npm"
        if not result.description and isinstance(payload.get("description"), str):
            result.description = payload["description"]
        return result

    async def _fetch_http(self, url: str, headers: Dict[str, str]) -> FetchResult:
        response = await self._get(url, headers={**headers, "Accept": "*/*"})
        if response.not_modified:
            return self._not_modified(url, response, source="http")
        content_type = detect_content_type(url, response.content_type)
        content, content_type, html_meta = await self._normalize(response.text, content_type, url)
        return self._result(url, content, content_type, html_meta, source="http", response=response)

    async def _get(
        self,
        url: str,
        *,
        headers: Mapping[str, str],
        params: Optional[Mapping[str, str]] = None,
    ) -> _Response:
        assert self._session is not None
        max_bytes = self._settings.max_content_bytes
        try:
            async with self._session.get(url, headers=dict(headers), params=params) as response:
                meta = _Response(
                    status=response.status,
                    text="",
                    etag=response.headers.get("ETag"),
                    last_modified=response.headers.get("Last-Modified"),
                    content_type=response.headers.get("Content-Type"),
                )
                if response.status == 304:
                    return meta
                if response.status == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
                    raise ProviderRateLimitError(
                        f"Provider rate limit exceeded: {url}",
                        reset_at=response.headers.get("X-RateLimit-Reset"),
                    )
                if response.status >= 400:
                    raise NetworkError(f"HTTP {response.status} {response.reason}: {url}", status=response.status)

                if response.content_length is not None and response.content_length > max_bytes:
                    raise ValidationError(
                        f"Content too large: {response.content_length} bytes exceeds {max_bytes} bytes"
                    )
                body = bytearray()
                async for chunk in response.content.iter_chunked(64 * 1024):
                    body.extend(chunk)
                    if len(body) > max_bytes:
                        raise ValidationError(f"Content too large: exceeds {max_bytes} bytes")
                meta.text = bytes(body).decode(response.charset or "utf-8", errors="replace")
                return meta
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(f"Request timed out: {url}", cause=e) from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Request failed: {url}", cause=e) from e

    async def _normalize(
        self, content: str, content_type: ContentType, url: str
    ) -> Tuple[str, ContentType, Optional[HtmlMetadata]]:
        if content_type != HTML:
            return content, content_type, None
        text, metadata = await asyncio.to_thread(self._html.normalize, content, url=url)
        return text, MARKDOWN, metadata

    def _github_headers(self, accept: str) -> Dict[str, str]:
        headers = {"Accept": accept}
        if self._settings.github_token:
            headers["Authorization"] = f"token {self._settings.github_token}"
        return headers

    @staticmethod
    def _result(
        url: str,
        content: str,
        content_type: ContentType,
        html_meta: Optional[HtmlMetadata],
        *,
        source: str,
        response: Optional[_Response] = None,
    ) -> FetchResult:
        return FetchResult(
            url=url,
            content=content,
            content_type=content_type,
            etag=response.etag if response else None,
            last_modified=response.last_modified if response else None,
            title=html_meta.title if html_meta else None,
            description=html_meta.description if html_meta else None,
            source=source,
            html=html_meta,
        )

    @staticmethod
    def _not_modified(url: str, response: _Response, *, source: str) -> FetchResult:
        return FetchResult(
            url=url,
            content="",
            content_type=detect_content_type(url),
            etag=response.etag,
            last_modified=response.last_modified,
            not_modified=True,
            source=source,
        )
