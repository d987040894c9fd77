from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import shutil
import time
import weakref
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from codex_keeper.config.models import StorageSettings
from codex_keeper.errors import NotFoundError, StorageError, ValidationError
from codex_keeper.fetcher.models import FILE_EXTENSIONS, PLAIN, FetchResult
from codex_keeper.store.index import (
    build_inverted_index,
    build_line_matches,
    lines_from_index,
    lines_from_scan,
    query_tokens,
)
from codex_keeper.store.io import (
    StagedWrite,
    atomic_write_json,
    decode_index,
    decode_record,
    encode_index,
    encode_record,
    encode_summary,
    read_json,
)
from codex_keeper.store.memory_cache import MemoryCache
from codex_keeper.store.models import (
    CleanupReport,
    DocumentDetails,
    DocumentRecord,
    InvertedIndex,
    LineMatch,
    ResourceInfo,
    VersionEntry,
)
from codex_keeper.store.sanitize import sanitize_content, sanitize_file_name
from codex_keeper.store.utils import byte_size, format_rfc3339, hash_text, utc_now

logger = logging.getLogger(__name__)

Payload = Union[str, FetchResult]

_BACKUP_PREFIX = "backup-"
_SCRATCH_SUFFIXES = (".tmp", ".deleting")


class ContentStore:
    """
    Versioned document storage under a single base directory.

    Layout::

        sources.json                     summaries of every record
        cache/<stem>.<ext>               current content
        metadata/<stem>.json             full record including version history
        metadata/<stem>.index.json       inverted index of the current version
        backups/backup-<timestamp>/      snapshots of cache/ and metadata/

    Operations on the same document name are serialized by a per-name lock. Operations on
    different names run concurrently.
    """

    def __init__(self, *, settings: StorageSettings) -> None:
        self._settings = settings
        self._base_dir = Path(settings.base_dir)
        self._cache_dir = self._base_dir / "cache"
        self._metadata_dir = self._base_dir / "metadata"
        self._backups_dir = self._base_dir / "backups"
        self._sources_path = self._base_dir / "sources.json"

        self._records: Dict[str, DocumentRecord] = {}
        # A lock lives only while a caller holds or awaits it.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._sources_lock = asyncio.Lock()
        self._memory: MemoryCache[str] = MemoryCache(
            max_size=settings.memory_cache_max_bytes,
            max_age_seconds=settings.memory_cache_max_age_seconds,
        )

        self._maintenance_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            self._metadata_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create storage directories under {self._base_dir}", cause=e) from e
        self._load()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def memory_cache(self) -> MemoryCache[str]:
        return self._memory

    # Read access

    def records(self) -> List[DocumentRecord]:
        return sorted(self._records.values(), key=lambda r: r.name)

    def get(self, name: str) -> Optional[DocumentRecord]:
        return self._records.get(name)

    def require(self, name: str) -> DocumentRecord:
        record = self._records.get(name)
        if record is None:
            raise NotFoundError(f"Document not found: {name}")
        return record

    def get_version(self, name: str, version: str) -> str:
        record = self.require(name)
        for entry in record.versions:
            if entry.version == version:
                return entry.content
        raise NotFoundError(f"Version not found: {name}@{version}")

    async def read_current_content(self, name: str) -> Optional[str]:
        record = self._records.get(name)
        if record is None or record.current is None:
            return None
        cached = self._memory.get(name)
        if cached is not None:
            return cached
        content = await asyncio.to_thread(self._read_content_file, record)
        # A save may have replaced the record while the file was being read.
        if self._records.get(name) is record:
            self._memory.set(name, content, byte_size(content))
        return content

    async def search_lines(self, name: str, query: str) -> List[LineMatch]:
        record = self.require(name)
        tokens = query_tokens(query)
        if not tokens or record.current is None:
            return []
        if record.search_index is not None:
            return build_line_matches(record.current.content, lines_from_index(record.search_index, tokens))

        content = await asyncio.to_thread(self._read_content_file, record)
        return build_line_matches(content, lines_from_scan(content, tokens))

    # Mutations

    async def save(
        self,
        name: str,
        payload: Payload,
        *,
        version: Optional[str] = None,
        force: bool = False,
        details: Optional[DocumentDetails] = None,
        update_error: Optional[str] = None,
        create: bool = True,
    ) -> DocumentRecord:
        """
        Store new content for ``name`` and return the updated record.

        With ``create=False`` the document must already exist when the per-name lock is
        taken, otherwise ``NotFoundError`` is raised; a save that lost a race against
        ``remove`` never brings the document back.
        A ``FetchResult`` flagged ``not_modified`` only touches ``last_attempted_update``.
        Without ``force`` or an explicit ``version``, content identical to the current
        version refreshes timestamps and validators without pushing a new version.
        ``update_error`` marks the content as a placeholder: the error is kept on the
        record and ``last_successful_update`` is left unchanged.
        """
        if not name or not name.strip():
            raise ValidationError("Document name must not be empty")

        async with self._lock_for(name):
            existing = self._records.get(name)
            now = format_rfc3339(utc_now())

            if existing is None and (not create or (isinstance(payload, FetchResult) and payload.not_modified)):
                raise NotFoundError(f"Document not found: {name}")

            if isinstance(payload, FetchResult) and payload.not_modified:
                existing.last_attempted_update = now
                await self._persist_metadata_best_effort(existing)
                logger.debug("Document not modified. name=%s", name)
                return existing

            try:
                record, pushed = self._build_update(
                    name,
                    existing,
                    payload,
                    version=version,
                    force=force,
                    details=details,
                    update_error=update_error,
                    now=now,
                )
            except ValidationError as e:
                await self._mark_failed(existing, str(e), now)
                raise

            try:
                await asyncio.to_thread(self._write_record, record, existing)
            except OSError as e:
                message = f"Failed to save document: {name}"
                logger.error("Document save failed. name=%s error=%s", name, e)
                await self._mark_failed(existing, f"{message}: {e}", now)
                raise StorageError(message, cause=e) from e

            self._records[name] = record
            self._memory.delete(name)

        await self._write_sources()
        logger.info(
            "Document saved. name=%s version=%s new_version=%s versions=%s",
            name,
            record.current.version if record.current else None,
            pushed,
            len(record.versions),
        )
        return record

    async def record_failure(
        self,
        name: str,
        error: str,
        *,
        details: Optional[DocumentDetails] = None,
    ) -> DocumentRecord:
        async with self._lock_for(name):
            record = self.require(name)
            if details is not None:
                record.apply_details(details)
            await self._mark_failed(record, error, format_rfc3339(utc_now()))
        await self._write_sources()
        return record

    async def remove(self, name: str) -> None:
        async with self._lock_for(name):
            record = self.require(name)
            try:
                await asyncio.to_thread(self._delete_files, record)
            except OSError as e:
                raise StorageError(f"Failed to remove document: {name}", cause=e) from e
            del self._records[name]
            self._memory.delete(name)
        await self._write_sources()
        logger.info("Document removed. name=%s", name)

    # Maintenance

    async def cleanup(self) -> CleanupReport:
        report = await asyncio.to_thread(self._sweep_cache_dir)
        report.expired_memory_entries = self._memory.cleanup()
        report.rebuilt_indexes = await self._rebuild_missing_indexes()
        logger.info(
            "Storage cleanup finished. removed_files=%s freed_bytes=%s expired_memory_entries=%s rebuilt_indexes=%s",
            report.removed_files,
            report.freed_bytes,
            report.expired_memory_entries,
            report.rebuilt_indexes,
        )
        return report

    def start(self) -> None:
        if self._maintenance_task and not self._maintenance_task.done():
            return
        self._stop_event.clear()
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    async def stop(self) -> None:
        if not self._maintenance_task:
            return
        self._stop_event.set()
        await self._maintenance_task
        self._maintenance_task = None

    async def _maintenance_loop(self) -> None:
        interval = self._settings.cleanup_interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            else:
                break
            try:
                await self.cleanup()
            except Exception:
                logger.exception("Storage cleanup tick failed.")

    # Backups

    def list_backups(self) -> List[str]:
        if not self._backups_dir.exists():
            return []
        return sorted(
            p.name[len(_BACKUP_PREFIX) :]
            for p in self._backups_dir.iterdir()
            if p.is_dir() and p.name.startswith(_BACKUP_PREFIX)
        )

    async def create_backup(self) -> str:
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        target = self._backups_dir / f"{_BACKUP_PREFIX}{stamp}"
        try:
            async with self._sources_lock:
                await asyncio.to_thread(self._copy_snapshot, target)
            await asyncio.to_thread(self._prune_backups)
        except OSError as e:
            raise StorageError("Failed to create backup", cause=e) from e
        logger.info("Backup created. backup=%s", target)
        return stamp

    async def restore_backup(self, timestamp: Optional[str] = None) -> str:
        backups = self.list_backups()
        if timestamp is None:
            chosen = backups[-1] if backups else None
        else:
            chosen = next((b for b in reversed(backups) if timestamp in b), None)
        if chosen is None:
            raise NotFoundError("Backup not found" if timestamp is None else f"Backup not found: {timestamp}")

        source = self._backups_dir / f"{_BACKUP_PREFIX}{chosen}"
        async with self._sources_lock:
            try:
                await asyncio.to_thread(self._restore_snapshot, source)
            except OSError as e:
                raise StorageError(f"Failed to restore backup: {chosen}", cause=e) from e
            self._records = {}
            self._memory.clear()
            self._load()
        await self._write_sources()
        logger.info("Backup restored. backup=%s documents=%s", chosen, len(self._records))
        return chosen

    # Internals

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def _content_path(self, record: DocumentRecord) -> Path:
        ext = FILE_EXTENSIONS.get(record.content_type, "txt")
        return self._cache_dir / f"{sanitize_file_name(record.name)}.{ext}"

    def _metadata_path(self, name: str) -> Path:
        return self._metadata_dir / f"{sanitize_file_name(name)}.json"

    def _index_path(self, name: str) -> Path:
        return self._metadata_dir / f"{sanitize_file_name(name)}.index.json"

    def _build_update(
        self,
        name: str,
        existing: Optional[DocumentRecord],
        payload: Payload,
        *,
        version: Optional[str],
        force: bool,
        details: Optional[DocumentDetails],
        update_error: Optional[str],
        now: str,
    ) -> Tuple[DocumentRecord, bool]:
        if isinstance(payload, FetchResult):
            raw, content_type = payload.content, payload.content_type
        else:
            raw, content_type = payload, existing.content_type if existing else PLAIN

        text = sanitize_content(
            raw,
            max_chars=self._settings.max_content_chars,
            allow_html=self._settings.allow_html,
            allowed_tags=self._settings.allowed_html_tags,
        )
        content_hash = hash_text(text)

        if existing is None:
            record = DocumentRecord(name=name)
        else:
            record = dataclasses.replace(existing, versions=list(existing.versions), tags=set(existing.tags))
        if details is not None:
            record.apply_details(details)

        current = record.current
        duplicate = (
            not force and version is None and current is not None and hash_text(current.content) == content_hash
        )
        if not duplicate:
            record.versions.insert(0, VersionEntry(version=version or now, content=text, timestamp=now))
            del record.versions[self._settings.keep_versions :]
            record.content_type = content_type
            record.search_index = build_inverted_index(text)
        elif record.search_index is None:
            record.search_index = build_inverted_index(current.content)

        if isinstance(payload, FetchResult):
            record.resource = ResourceInfo(
                etag=payload.etag,
                last_modified=payload.last_modified,
                content_hash=content_hash,
            )
            if payload.title:
                record.title = payload.title
            if payload.description and not record.description:
                record.description = payload.description

        record.last_attempted_update = now
        if update_error is None:
            record.update_error = None
            record.last_successful_update = now
        else:
            record.update_error = update_error
        return record, not duplicate

    async def _mark_failed(self, record: Optional[DocumentRecord], error: str, now: str) -> None:
        if record is None:
            return
        record.last_attempted_update = now
        record.update_error = error
        await self._persist_metadata_best_effort(record)

    async def _persist_metadata_best_effort(self, record: DocumentRecord) -> None:
        try:
            await asyncio.to_thread(atomic_write_json, self._metadata_path(record.name), encode_record(record))
        except OSError as e:
            logger.warning("Failed to persist document metadata. name=%s error=%s", record.name, e)

    def _write_record(self, record: DocumentRecord, previous: Optional[DocumentRecord]) -> None:
        staged = StagedWrite()
        try:
            current = record.current
            if current is not None:
                content_path = self._content_path(record)
                staged.text(content_path, current.content)
                if previous is not None and self._content_path(previous) != content_path:
                    staged.unlink_on_commit(self._content_path(previous))
            if record.search_index is not None:
                staged.json(
                    self._index_path(record.name),
                    encode_index(record.search_index, version=current.version if current else None),
                )
            staged.json(self._metadata_path(record.name), encode_record(record))
            staged.commit()
        except Exception:
            staged.discard()
            raise

    def _delete_files(self, record: DocumentRecord) -> None:
        stem = sanitize_file_name(record.name)
        targets = [
            p for p in self._cache_dir.glob(f"{stem}.*") if not p.name.endswith(_SCRATCH_SUFFIXES)
        ]
        targets.extend(p for p in (self._metadata_path(record.name), self._index_path(record.name)) if p.exists())

        # Rename everything aside first so a failure can be rolled back with nothing lost.
        moved: List[Tuple[Path, Path]] = []
        try:
            for path in targets:
                aside = path.with_name(path.name + ".deleting")
                path.replace(aside)
                moved.append((aside, path))
        except OSError:
            for aside, path in reversed(moved):
                try:
                    aside.replace(path)
                except OSError as restore_error:
                    logger.error("Failed to roll back removal. path=%s error=%s", path, restore_error)
            raise

        for aside, _ in moved:
            try:
                aside.unlink()
            except OSError as e:
                logger.warning("Failed to delete removed document file. path=%s error=%s", aside, e)

    def _read_content_file(self, record: DocumentRecord) -> str:
        """Current content of ``record``; the cache file is used only when it matches the record."""
        assert record.current is not None
        expected = record.current.content
        path = self._content_path(record)
        try:
            text = path.read_text(encoding="utf-8")
            stat = path.stat()
            # Keep mtime, bump atime so the sweep sees this file as recently used.
            os.utime(path, (time.time(), stat.st_mtime))
        except FileNotFoundError:
            return expected
        except OSError as e:
            logger.warning("Failed to read cached content. name=%s path=%s error=%s", record.name, path, e)
            return expected
        if hash_text(text) != hash_text(expected):
            logger.warning("Cached content does not match the record, using the record. name=%s path=%s", record.name, path)
            return expected
        return text

    def _sweep_cache_dir(self) -> CleanupReport:
        report = CleanupReport()
        entries: List[Tuple[Path, os.stat_result]] = []
        for path in self._cache_dir.iterdir():
            if not path.is_file() or path.name.endswith(_SCRATCH_SUFFIXES):
                continue
            try:
                entries.append((path, path.stat()))
            except FileNotFoundError:
                continue

        now = time.time()
        max_age = self._settings.cache_max_age_seconds
        max_bytes = self._settings.cache_max_bytes
        accumulated = 0
        # Most recently accessed first, so everything past the size limit is the LRU tail.
        for path, stat in sorted(entries, key=lambda item: item[1].st_atime, reverse=True):
            expired = now - stat.st_mtime > max_age
            if not expired:
                accumulated += stat.st_size
                if accumulated <= max_bytes:
                    continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Failed to delete cached file. path=%s error=%s", path, e)
                continue
            report.removed_files += 1
            report.freed_bytes += stat.st_size
            logger.debug("Cached file removed. path=%s expired=%s", path, expired)
        return report

    async def _rebuild_missing_indexes(self) -> int:
        rebuilt = 0
        for name in [r.name for r in self._records.values() if r.search_index is None and r.current is not None]:
            async with self._lock_for(name):
                record = self._records.get(name)
                if record is None or record.current is None or record.search_index is not None:
                    continue
                index = build_inverted_index(record.current.content)
                try:
                    await asyncio.to_thread(
                        atomic_write_json,
                        self._index_path(name),
                        encode_index(index, version=record.current.version),
                    )
                except OSError as e:
                    logger.warning("Failed to rebuild search index, will retry. name=%s error=%s", name, e)
                    continue
                record.search_index = index
                rebuilt += 1
        return rebuilt

    async def _write_sources(self) -> None:
        async with self._sources_lock:
            payload = [encode_summary(r) for r in self.records()]
            try:
                await asyncio.to_thread(atomic_write_json, self._sources_path, payload)
            except OSError:
                logger.exception("Failed to write sources summary. path=%s", self._sources_path)

    def _load(self) -> None:
        for path in sorted(self._metadata_dir.glob("*.json")):
            if path.name.endswith(".index.json"):
                continue
            try:
                record = decode_record(read_json(path))
            except Exception:
                logger.exception("Failed to read document metadata, skipping. path=%s", path)
                continue
            record.search_index = self._read_index(record)
            self._records[record.name] = record
        logger.debug("Content store loaded. base_dir=%s documents=%s", self._base_dir, len(self._records))

    def _read_index(self, record: DocumentRecord) -> Optional[InvertedIndex]:
        path = self._index_path(record.name)
        current = record.current
        if current is None or not path.exists():
            return None
        try:
            version, index = decode_index(read_json(path))
        except Exception as e:
            logger.warning("Failed to read search index, will rebuild. name=%s error=%s", record.name, e)
            return None
        if version != current.version:
            logger.warning(
                "Search index is stale, will rebuild. name=%s index_version=%s current_version=%s",
                record.name,
                version,
                current.version,
            )
            return None
        return index

    def _copy_snapshot(self, target: Path) -> None:
        ignore = shutil.ignore_patterns("*.tmp", "*.deleting")
        target.mkdir(parents=True, exist_ok=False)
        for sub in (self._cache_dir, self._metadata_dir):
            if sub.exists():
                shutil.copytree(sub, target / sub.name, ignore=ignore)

    def _prune_backups(self) -> None:
        backups = self.list_backups()
        excess = len(backups) - self._settings.max_backups
        for stamp in backups[: max(0, excess)]:
            shutil.rmtree(self._backups_dir / f"{_BACKUP_PREFIX}{stamp}")
            logger.info("Old backup pruned. backup=%s", stamp)

    def _restore_snapshot(self, source: Path) -> None:
        for live in (self._cache_dir, self._metadata_dir):
            staging = live.with_name(live.name + ".restore")
            if staging.exists():
                shutil.rmtree(staging)
            snapshot = source / live.name
            if snapshot.exists():
                shutil.copytree(snapshot, staging)
            else:
                staging.mkdir(parents=True)
            if live.exists():
                shutil.rmtree(live)
            staging.replace(live)
