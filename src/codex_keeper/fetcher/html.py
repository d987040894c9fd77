from __future__ import annotations

import logging
from typing import Optional, Tuple

import html2text
from bs4 import BeautifulSoup, Comment, Tag

from codex_keeper.config.models import HtmlSettings
from codex_keeper.errors import ValidationError
from codex_keeper.fetcher.models import Heading, HtmlMetadata

logger = logging.getLogger(__name__)


def _converter() -> html2text.HTML2Text:
    h2t = html2text.HTML2Text()
    h2t.ignore_images = True
    h2t.body_width = 0
    h2t.unicode_snob = True
    return h2t


class HtmlNormalizer:
    """
    Reduce an HTML page to the Markdown text of its main content.

    Stripped tags, the main-content selector priority and the size thresholds all come
    from ``HtmlSettings``.
    """

    def __init__(self, settings: HtmlSettings) -> None:
        self._settings = settings

    def check_size(self, size: int, *, url: str) -> None:
        if size > self._settings.max_bytes:
            raise ValidationError(
                f"HTML content too large: {size} bytes exceeds {self._settings.max_bytes} bytes"
            )
        if size > self._settings.large_bytes:
            logger.error("Very large HTML content. url=%s size=%s", url, size)
        elif size > self._settings.warn_bytes:
            logger.warning("Large HTML content. url=%s size=%s", url, size)

    def normalize(self, html: str, *, url: str = "") -> Tuple[str, HtmlMetadata]:
        original_size = len(html.encode("utf-8"))
        self.check_size(original_size, url=url)

        soup = BeautifulSoup(html, "html.parser")
        title = soup.title.get_text(strip=True) if soup.title else None
        description = self._meta_description(soup)

        for element in soup(list(self._settings.stripped_tags)):
            element.decompose()
        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()

        headings = [
            Heading(level=int(tag.name[1]), text=tag.get_text(" ", strip=True))
            for tag in soup.find_all(["h1", "h2", "h3"])
            if tag.get_text(strip=True)
        ]

        selector, main = self._select_main(soup)
        markdown = _converter().handle(str(main)).strip()

        metadata = HtmlMetadata(
            title=title or None,
            description=description,
            headings=headings,
            original_size=original_size,
            processed_size=len(markdown.encode("utf-8")),
            main_content_selector=selector,
        )
        logger.debug(
            "HTML normalized. url=%s selector=%s original_size=%s processed_size=%s",
            url,
            selector,
            metadata.original_size,
            metadata.processed_size,
        )
        return markdown, metadata

    def _select_main(self, soup: BeautifulSoup) -> Tuple[Optional[str], Tag]:
        for selector in self._settings.main_content_selectors:
            found = soup.select_one(selector)
            if found is not None:
                return selector, found
        if soup.body is not None:
            return "body", soup.body
        return None, soup

    @staticmethod
    def _meta_description(soup: BeautifulSoup) -> Optional[str]:
        tag = soup.find("meta", attrs={"name": "description"})
        if tag is None:
            return None
        content = tag.get("content")
        if isinstance(content, str) and content.strip():
            return content.strip()
        return None
