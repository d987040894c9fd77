from __future__ import annotations

import hashlib
import re
import unicodedata
from typing import Iterable

from codex_keeper.errors import ValidationError
from codex_keeper.store.utils import normalize_newlines

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_SCHEME_PREFIX = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.-]*)://")
_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9_-]+")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")
_ANY_TAG = re.compile(r"<[^>]*>")
_TAG_NAME = re.compile(r"^</?\s*([a-zA-Z][a-zA-Z0-9]*)")
_INVALID_CODEPOINTS = re.compile("[\ufffd\ufffe\uffff]")


def normalize_encoding(text: str) -> str:
    return _INVALID_CODEPOINTS.sub("", unicodedata.normalize("NFC", text))


def sanitize_file_name(name: str) -> str:
    """
    Map a document name to a file stem that is safe on every platform.

    The stem is lower-case, keeps only ``[a-z0-9_-]``, turns a ``scheme://`` prefix into
    ``scheme_`` and ends with a short hash of the original name so that names differing
    only in punctuation or case never share files.
    """
    normalized = _CONTROL_CHARS.sub("", unicodedata.normalize("NFC", name))
    match = _SCHEME_PREFIX.match(normalized)
    if match:
        normalized = f"{match.group(1)}_{normalized[match.end():]}"
    slug = _UNSAFE_NAME_CHARS.sub("_", normalized.lower())
    slug = _REPEATED_UNDERSCORES.sub("_", slug).strip("_-")
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:8]
    return f"{slug[:80] or 'unnamed'}-{digest}"


def _strip_tags(text: str, allowed: Iterable[str]) -> str:
    allowed_names = {tag.lower() for tag in allowed}

    def replace(match: re.Match[str]) -> str:
        tag = _TAG_NAME.match(match.group(0))
        if tag and tag.group(1).lower() in allowed_names:
            return match.group(0)
        return ""

    return _ANY_TAG.sub(replace, text)


def sanitize_content(
    text: str,
    *,
    max_chars: int,
    allow_html: bool,
    allowed_tags: Iterable[str] = (),
) -> str:
    if len(text) > max_chars:
        raise ValidationError(f"Content exceeds maximum length of {max_chars} characters")
    cleaned = normalize_newlines(normalize_encoding(text))
    if allow_html:
        return _strip_tags(cleaned, allowed_tags)
    return _strip_tags(cleaned, ())
