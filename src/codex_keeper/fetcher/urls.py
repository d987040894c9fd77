from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import quote, unquote, urlsplit, urlunsplit

from codex_keeper.errors import ValidationError
from codex_keeper.fetcher.models import HTML, JSON, MARKDOWN, PLAIN, ContentType

ALLOWED_SCHEMES = frozenset({"http", "https", "file"})

_EXTENSION_TYPES = {
    "md": MARKDOWN,
    "markdown": MARKDOWN,
    "html": HTML,
    "htm": HTML,
    "json": JSON,
}
_HEADER_TYPES = {
    "text/html": HTML,
    "application/xhtml+xml": HTML,
    "text/markdown": MARKDOWN,
    "text/x-markdown": MARKDOWN,
    "application/json": JSON,
}
_PATH_SAFE = "/:@!$&'()*+,;=-._~"
_NPM_PACKAGE = re.compile(r"npmjs\.com/package/((?:@[^/?#]+/)?[^/?#]+)(?:/([^?#]+))?")
_GITHUB_SSH = re.compile(r"^git@github\.com:(.+)$")
_GITHUB_SHORTHAND = re.compile(r"^(?:github:)?([\w.-]+/[\w.-]+)$")


@dataclass(frozen=True, slots=True)
class GithubBlob:
    owner: str
    repo: str
    branch: Optional[str]
    path: str


@dataclass(frozen=True, slots=True)
class NpmPackageRef:
    package: str
    path: str


def sanitize_url(url: str) -> str:
    """Reject schemes other than http, https and file; drop the fragment; re-encode the path once."""
    raw = url.strip()
    if not raw:
        raise ValidationError("URL must not be empty")
    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise ValidationError(f"Unsupported URL scheme: {parts.scheme or '<none>'}")
    if scheme != "file" and not parts.netloc:
        raise ValidationError(f"URL has no host: {url}")
    path = quote(unquote(parts.path), safe=_PATH_SAFE)
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))


def sanitize_local_path(path: str, root: Path) -> Path:
    resolved_root = root.resolve()
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = resolved_root / candidate
    resolved = candidate.resolve()
    if resolved != resolved_root and resolved_root not in resolved.parents:
        raise ValidationError(f"Path escapes the allowed root: {path}")
    return resolved


def file_url_path(url: str) -> str:
    parts = urlsplit(url)
    return unquote(parts.netloc + parts.path) if parts.netloc not in ("", "localhost") else unquote(parts.path)


def _extension(path: str) -> str:
    name = PurePosixPath(path).name
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def content_type_from_extension(path: str) -> Optional[ContentType]:
    return _EXTENSION_TYPES.get(_extension(path))


def detect_content_type(url: str, header: Optional[str] = None) -> ContentType:
    """
    Infer the content type from the URL's file extension, then from its shape, then from
    the response Content-Type header.
    """
    path = urlsplit(url).path
    by_extension = content_type_from_extension(path)
    if by_extension is not None:
        return by_extension
    if "/docs/" in url or "/documentation/" in url:
        return HTML
    if header:
        media_type = header.split(";", 1)[0].strip().lower()
        return _HEADER_TYPES.get(media_type, PLAIN)
    return PLAIN


def host_of(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


def is_gist_url(url: str) -> bool:
    return "gist.github.com" in host_of(url)


def is_github_blob_url(url: str) -> bool:
    return "github.com" in host_of(url) and "/blob/" in urlsplit(url).path


def is_npm_package_url(url: str) -> bool:
    return "npmjs.com" in host_of(url) and _NPM_PACKAGE.search(url) is not None


def gist_id(url: str) -> str:
    segments = [s for s in urlsplit(url).path.split("/") if s]
    if not segments:
        raise ValidationError(f"Invalid Gist URL: {url}")
    return segments[-1]


def parse_github_blob(url: str) -> GithubBlob:
    segments = [unquote(s) for s in urlsplit(url).path.split("/") if s]
    # owner / repo / "blob" / branch / path...
    if len(segments) < 5 or segments[2] != "blob":
        raise ValidationError(f"Invalid GitHub blob URL: {url}")
    branch = segments[3]
    return GithubBlob(
        owner=segments[0],
        repo=segments[1],
        branch=None if branch == "HEAD" else branch,
        path="/".join(segments[4:]),
    )


def parse_npm_package(url: str) -> NpmPackageRef:
    match = _NPM_PACKAGE.search(url)
    if match is None:
        raise ValidationError(f"Invalid npm package URL: {url}")
    return NpmPackageRef(package=unquote(match.group(1)), path=match.group(2) or "README.md")


def github_repo_url(repository: str) -> str:
    """Normalize an npm ``repository`` value to ``https://github.com/<owner>/<repo>``."""
    value = repository.strip()
    ssh = _GITHUB_SSH.match(value)
    if ssh:
        value = f"https://github.com/{ssh.group(1)}"
    shorthand = _GITHUB_SHORTHAND.match(value)
    if shorthand:
        value = f"https://github.com/{shorthand.group(1)}"
    value = value.replace("git+", "", 1)
    if value.startswith("git://"):
        value = "https://" + value[len("git://") :]
    if value.startswith("ssh://git@"):
        value = "https://" + value[len("ssh://git@") :]
    if value.endswith(".git"):
        value = value[: -len(".git")]
    value = value.rstrip("/")
    if host_of(value) != "github.com":
        raise ValidationError(f"Package repository is not hosted on GitHub: {repository}")
    return value
