from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from codex_keeper.store.models import (
    DocumentRecord,
    InvertedIndex,
    ResourceInfo,
    SchemaVersion,
    TermPostings,
    VersionEntry,
)

logger = logging.getLogger(__name__)


def _tmp_path(path: Path) -> Path:
    return path.with_suffix(path.suffix + ".tmp")


def atomic_write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = _tmp_path(path)
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = _tmp_path(path)
    tmp_path.write_text(text, encoding="utf-8")
    tmp_path.replace(path)


class StagedWrite:
    """
    Write several files so that either all of them are replaced or none are.

    Every file is first written next to its target as ``<name>.tmp``; ``commit`` renames
    them into place and ``discard`` removes whatever was staged.
    """

    def __init__(self) -> None:
        self._staged: List[Tuple[Path, Path]] = []
        self._obsolete: List[Path] = []

    def text(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = _tmp_path(path)
        self._staged.append((tmp_path, path))
        tmp_path.write_text(text, encoding="utf-8")

    def json(self, path: Path, payload: object) -> None:
        self.text(path, json.dumps(payload, indent=2, sort_keys=True))

    def unlink_on_commit(self, path: Path) -> None:
        self._obsolete.append(path)

    def commit(self) -> None:
        for tmp_path, path in self._staged:
            tmp_path.replace(path)
        self._staged = []
        for path in self._obsolete:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove obsolete file. path=%s error=%s", path, e)
        self._obsolete = []

    def discard(self) -> None:
        for tmp_path, _ in self._staged:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove staged file. path=%s error=%s", tmp_path, e)
        self._staged = []
        self._obsolete = []


def _encode_resource(resource: Optional[ResourceInfo]) -> Optional[dict]:
    if resource is None:
        return None
    return {
        "etag": resource.etag,
        "last_modified": resource.last_modified,
        "content_hash": resource.content_hash,
    }


def _decode_resource(payload: Optional[dict]) -> Optional[ResourceInfo]:
    if not payload:
        return None
    return ResourceInfo(
        etag=payload.get("etag"),
        last_modified=payload.get("last_modified"),
        content_hash=payload.get("content_hash"),
    )


def encode_record(record: DocumentRecord) -> dict:
    return {
        "schema_version": SchemaVersion,
        "name": record.name,
        "source_url": record.source_url,
        "description": record.description,
        "category": record.category,
        "tags": sorted(record.tags),
        "alternative_url": record.alternative_url,
        "title": record.title,
        "content_type": record.content_type,
        "resource": _encode_resource(record.resource),
        "versions": [
            {"version": v.version, "content": v.content, "timestamp": v.timestamp} for v in record.versions
        ],
        "last_successful_update": record.last_successful_update,
        "last_attempted_update": record.last_attempted_update,
        "update_error": record.update_error,
    }


def decode_record(payload: dict) -> DocumentRecord:
    schema_version = int(payload.get("schema_version", SchemaVersion))
    if schema_version != SchemaVersion:
        raise ValueError(f"Unsupported record schema version: {schema_version}")
    return DocumentRecord(
        name=payload["name"],
        source_url=payload.get("source_url"),
        description=payload.get("description", ""),
        category=payload.get("category", ""),
        tags=set(payload.get("tags", [])),
        alternative_url=payload.get("alternative_url"),
        title=payload.get("title"),
        content_type=payload.get("content_type", "text/plain"),
        resource=_decode_resource(payload.get("resource")),
        versions=[
            VersionEntry(version=v["version"], content=v["content"], timestamp=v["timestamp"])
            for v in payload.get("versions", [])
        ],
        last_successful_update=payload.get("last_successful_update"),
        last_attempted_update=payload.get("last_attempted_update"),
        update_error=payload.get("update_error"),
    )


def encode_summary(record: DocumentRecord) -> dict:
    current = record.current
    return {
        "name": record.name,
        "source_url": record.source_url,
        "description": record.description,
        "category": record.category,
        "tags": sorted(record.tags),
        "current_version": current.version if current else None,
        "last_successful_update": record.last_successful_update,
        "update_error": record.update_error,
    }


def encode_index(index: InvertedIndex, *, version: Optional[str]) -> dict:
    return {
        "schema_version": SchemaVersion,
        "version": version,
        "terms": {term: {"positions": p.positions, "lines": p.lines} for term, p in index.items()},
    }


def decode_index(payload: dict) -> Tuple[Optional[str], InvertedIndex]:
    terms: Dict[str, TermPostings] = {}
    for term, postings in payload.get("terms", {}).items():
        terms[term] = TermPostings(
            positions=[int(p) for p in postings.get("positions", [])],
            lines=[int(n) for n in postings.get("lines", [])],
        )
    return payload.get("version"), terms


def read_json(path: Path) -> dict:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a JSON object in {path}")
    return payload
