from codex_keeper.fetcher.content_fetcher import ContentFetcher
from codex_keeper.fetcher.html import HtmlNormalizer
from codex_keeper.fetcher.models import FetchResult, HtmlMetadata

__all__ = ["ContentFetcher", "FetchResult", "HtmlMetadata", "HtmlNormalizer"]
