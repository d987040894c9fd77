import asyncio
import gc
import json
import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from codex_keeper.config.models import StorageSettings
from codex_keeper.errors import NotFoundError, StorageError, ValidationError
from codex_keeper.fetcher.models import MARKDOWN, FetchResult
from codex_keeper.store import ContentStore, DocumentDetails
from codex_keeper.store.io import StagedWrite


class ContentStoreTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.base_dir = Path(self._tmp.name)

    def make_store(self, **overrides) -> ContentStore:
        settings = StorageSettings(base_dir=str(self.base_dir), **overrides)
        return ContentStore(settings=settings)


class SaveAndSearchTests(ContentStoreTestCase):
    async def test_search_lines_finds_saved_content(self) -> None:
        store = self.make_store()
        await store.save("Test Doc", "Hello world test")

        matches = await store.search_lines("Test Doc", "test")

        self.assertEqual(len(matches), 1)
        self.assertEqual(matches[0].line, 1)
        self.assertEqual(matches[0].content, "Hello world test")

    async def test_search_lines_returns_sorted_unique_lines_with_context(self) -> None:
        store = self.make_store()
        content = "\n".join(["intro", "alpha beta", "filler", "beta again alpha", "one", "two", "three alpha"])
        await store.save("doc", content)

        matches = await store.search_lines("doc", "alpha BETA")

        self.assertEqual([m.line for m in matches], [2, 4, 7])
        self.assertEqual(matches[0].context, "intro\nalpha beta\nfiller\nbeta again alpha")
        self.assertEqual(matches[2].context, "one\ntwo\nthree alpha")

    async def test_short_or_empty_query_yields_no_matches(self) -> None:
        store = self.make_store()
        await store.save("doc", "a b c\nsome text")

        self.assertEqual(await store.search_lines("doc", ""), [])
        self.assertEqual(await store.search_lines("doc", "a b"), [])

    async def test_search_lines_unknown_document_raises(self) -> None:
        store = self.make_store()
        with self.assertRaises(NotFoundError):
            await store.search_lines("missing", "anything")

    async def test_index_only_reflects_current_version(self) -> None:
        store = self.make_store()
        await store.save("doc", "first version mentions gamma\nalpha")
        await store.save("doc", "delta\nalpha")

        self.assertEqual(await store.search_lines("doc", "gamma"), [])
        matches = await store.search_lines("doc", "alpha")
        self.assertEqual([m.line for m in matches], [2])

    async def test_markup_is_stripped_when_html_disabled(self) -> None:
        store = self.make_store()
        record = await store.save("doc", "<p>Hello <b>there</b></p>\r\nnext")

        self.assertEqual(record.current.content, "Hello there\nnext")

    async def test_allowed_tags_are_kept_when_html_enabled(self) -> None:
        store = self.make_store(allow_html=True)
        record = await store.save("doc", "<p>Hello</p><script>x()</script><div>there</div>")

        self.assertEqual(record.current.content, "<p>Hello</p>x()there")

    async def test_empty_name_is_rejected(self) -> None:
        store = self.make_store()
        with self.assertRaises(ValidationError):
            await store.save("  ", "content")


class VersioningTests(ContentStoreTestCase):
    async def test_versions_are_capped_and_oldest_evicted(self) -> None:
        store = self.make_store(keep_versions=3)
        for i in range(1, 5):
            record = await store.save("doc", f"content {i}", version=f"v{i}")
            self.assertLessEqual(len(record.versions), 3)
            self.assertEqual(record.versions[0].content, f"content {i}")

        with self.assertRaises(NotFoundError):
            store.get_version("doc", "v1")
        for i in range(2, 5):
            self.assertEqual(store.get_version("doc", f"v{i}"), f"content {i}")
        self.assertEqual(store.require("doc").current.version, "v4")

    async def test_identical_content_does_not_push_a_version(self) -> None:
        store = self.make_store()
        await store.save("doc", "same text")
        record = await store.save("doc", "same text")
        self.assertEqual(len(record.versions), 1)

        record = await store.save("doc", "same text", force=True)
        self.assertEqual(len(record.versions), 2)

    async def test_concurrent_saves_to_one_name_do_not_lose_versions(self) -> None:
        store = self.make_store(keep_versions=5)
        await asyncio.gather(*(store.save("doc", f"text {i}", version=f"v{i}") for i in range(4)))

        record = store.require("doc")
        self.assertEqual(len(record.versions), 4)
        self.assertEqual({v.version for v in record.versions}, {"v0", "v1", "v2", "v3"})

    async def test_not_modified_fetch_keeps_versions_and_index(self) -> None:
        store = self.make_store()
        first = FetchResult(url="https://example.com/a.md", content="# Title\nbody", content_type=MARKDOWN, etag='"e1"')
        record = await store.save("doc", first)
        index_before = record.search_index
        versions_before = len(record.versions)

        not_modified = FetchResult(url="https://example.com/a.md", content="", content_type=MARKDOWN, not_modified=True)
        record = await store.save("doc", not_modified)

        self.assertEqual(len(record.versions), versions_before)
        self.assertIs(record.search_index, index_before)
        self.assertEqual(record.resource.etag, '"e1"')
        self.assertIsNotNone(record.last_attempted_update)

    async def test_not_modified_for_unknown_document_raises(self) -> None:
        store = self.make_store()
        result = FetchResult(url="https://example.com", content="", content_type=MARKDOWN, not_modified=True)
        with self.assertRaises(NotFoundError):
            await store.save("doc", result)

    async def test_fetch_result_sets_resource_info_and_metadata(self) -> None:
        store = self.make_store()
        result = FetchResult(
            url="https://example.com/guide",
            content="Guide text",
            content_type=MARKDOWN,
            etag='"abc"',
            last_modified="Wed, 21 Oct 2015 07:28:00 GMT",
            title="The Guide",
            description="All about it",
        )
        record = await store.save("guide", result, details=DocumentDetails(source_url="https://example.com/guide"))

        self.assertEqual(record.resource.etag, '"abc"')
        self.assertEqual(record.resource.last_modified, "Wed, 21 Oct 2015 07:28:00 GMT")
        self.assertIsNotNone(record.resource.content_hash)
        self.assertEqual(record.title, "The Guide")
        self.assertEqual(record.description, "All about it")
        self.assertEqual(record.content_type, MARKDOWN)
        self.assertEqual(len(list((self.base_dir / "cache").glob("*.md"))), 1)

    async def test_oversized_content_marks_existing_record(self) -> None:
        store = self.make_store(max_content_chars=20)
        await store.save("doc", "short")

        with self.assertRaises(ValidationError):
            await store.save("doc", "x" * 50)

        record = store.require("doc")
        self.assertEqual(record.current.content, "short")
        self.assertIsNotNone(record.update_error)

    async def test_placeholder_save_keeps_error(self) -> None:
        store = self.make_store()
        record = await store.save("doc", "placeholder", update_error="boom")

        self.assertEqual(record.update_error, "boom")
        self.assertIsNone(record.last_successful_update)
        self.assertEqual(len(record.versions), 1)


class PersistenceTests(ContentStoreTestCase):
    async def test_layout_and_reload(self) -> None:
        store = self.make_store()
        await store.save(
            "https://Example.com/Docs",
            "line one\nline two keyword",
            details=DocumentDetails(description="desc", category="web", tags={"b", "a"}),
        )

        self.assertTrue((self.base_dir / "sources.json").exists())
        metadata_files = sorted(p.name for p in (self.base_dir / "metadata").iterdir())
        self.assertEqual(len(metadata_files), 2)
        self.assertTrue(any(name.endswith(".index.json") for name in metadata_files))
        self.assertTrue(all(name.startswith("https_example_com_docs-") for name in metadata_files))

        summaries = json.loads((self.base_dir / "sources.json").read_text(encoding="utf-8"))
        self.assertEqual(summaries[0]["name"], "https://Example.com/Docs")
        self.assertEqual(summaries[0]["tags"], ["a", "b"])

        reloaded = self.make_store()
        record = reloaded.require("https://Example.com/Docs")
        self.assertEqual(record.category, "web")
        self.assertIsNotNone(record.search_index)
        matches = await reloaded.search_lines("https://Example.com/Docs", "keyword")
        self.assertEqual([m.line for m in matches], [2])

    async def test_missing_index_falls_back_to_scan_and_is_rebuilt(self) -> None:
        store = self.make_store()
        await store.save("doc", "alpha\nbeta\nalpha beta")
        for path in (self.base_dir / "metadata").glob("*.index.json"):
            path.unlink()

        reloaded = self.make_store()
        self.assertIsNone(reloaded.require("doc").search_index)
        matches = await reloaded.search_lines("doc", "beta")
        self.assertEqual([m.line for m in matches], [2, 3])

        report = await reloaded.cleanup()
        self.assertEqual(report.rebuilt_indexes, 1)
        self.assertIsNotNone(reloaded.require("doc").search_index)
        self.assertEqual(len(list((self.base_dir / "metadata").glob("*.index.json"))), 1)

    async def test_remove_deletes_all_files(self) -> None:
        store = self.make_store()
        await store.save("doc", "content")
        await store.save("other", "content")

        await store.remove("doc")

        self.assertIsNone(store.get("doc"))
        self.assertEqual(len(list((self.base_dir / "cache").iterdir())), 1)
        self.assertEqual(len(list((self.base_dir / "metadata").iterdir())), 2)
        with self.assertRaises(NotFoundError):
            await store.remove("doc")

    async def test_read_current_content_falls_back_to_record(self) -> None:
        store = self.make_store()
        await store.save("doc", "cached text")
        for path in (self.base_dir / "cache").iterdir():
            path.unlink()

        self.assertEqual(await store.read_current_content("doc"), "cached text")
        self.assertEqual(store.memory_cache.stats().entries, 1)
        self.assertIsNone(await store.read_current_content("missing"))

    async def test_read_current_content_ignores_a_stale_cache_file(self) -> None:
        await self.make_store().save("doc", "saved text")
        for path in (self.base_dir / "cache").iterdir():
            path.write_text("left over from an older version", encoding="utf-8")
        for path in (self.base_dir / "metadata").glob("*.index.json"):
            path.unlink()

        store = self.make_store()

        self.assertEqual(await store.read_current_content("doc"), "saved text")
        matches = await store.search_lines("doc", "saved")
        self.assertEqual([m.content for m in matches], ["saved text"])

    async def test_locks_are_dropped_once_released(self) -> None:
        store = self.make_store()
        await asyncio.gather(*(store.save(f"doc {i}", f"content {i}") for i in range(5)))
        await store.record_failure("doc 0", "HTTP 500")
        await store.remove("doc 1")

        gc.collect()

        self.assertEqual(len(store._locks), 0)


class FailureTests(ContentStoreTestCase):
    def leftovers(self):
        return [
            p.name
            for folder in ("cache", "metadata")
            for p in (self.base_dir / folder).iterdir()
            if p.name.endswith((".tmp", ".deleting"))
        ]

    def files(self):
        return sorted(p.name for folder in ("cache", "metadata") for p in (self.base_dir / folder).iterdir())

    async def test_failed_commit_leaves_the_previous_version_in_place(self) -> None:
        store = self.make_store()
        await store.save("D", "alpha one", version="one")
        before = self.files()

        with patch.object(StagedWrite, "commit", side_effect=OSError("disk full")):
            with self.assertRaises(StorageError):
                await store.save("D", "beta two", version="two")

        record = store.require("D")
        self.assertEqual([v.version for v in record.versions], ["one"])
        self.assertIn("disk full", record.update_error)
        self.assertEqual(await store.search_lines("D", "beta"), [])
        self.assertEqual(await store.read_current_content("D"), "alpha one")
        self.assertEqual(self.files(), before)
        self.assertEqual(self.leftovers(), [])

        reloaded = self.make_store()
        self.assertEqual([v.version for v in reloaded.require("D").versions], ["one"])

    async def test_failed_remove_restores_every_file(self) -> None:
        store = self.make_store()
        await store.save("D", "alpha one")
        before = self.files()
        original_replace = Path.replace
        renamed = []

        def replace(path, target):
            if str(target).endswith(".deleting"):
                renamed.append(path)
                if len(renamed) > 1:
                    raise OSError("permission denied")
            return original_replace(path, target)

        with patch.object(Path, "replace", replace):
            with self.assertRaises(StorageError):
                await store.remove("D")

        self.assertEqual(len(renamed), 2)
        self.assertEqual(self.files(), before)
        self.assertEqual(self.leftovers(), [])
        self.assertIsNotNone(store.get("D"))
        matches = await store.search_lines("D", "alpha")
        self.assertEqual([m.content for m in matches], ["alpha one"])

        await store.remove("D")
        self.assertIsNone(store.get("D"))


class CleanupTests(ContentStoreTestCase):
    async def test_expired_files_are_removed(self) -> None:
        store = self.make_store(cache_max_age_seconds=60)
        await store.save("old", "old content")
        await store.save("fresh", "fresh content")
        old_file = next(p for p in (self.base_dir / "cache").iterdir() if p.name.startswith("old-"))
        past = time.time() - 3600
        os.utime(old_file, (past, past))

        report = await store.cleanup()

        self.assertEqual(report.removed_files, 1)
        self.assertFalse(old_file.exists())
        self.assertIsNotNone(store.get("old"))

    async def test_least_recently_accessed_files_go_first_when_over_size(self) -> None:
        store = self.make_store(cache_max_bytes=150)
        await store.save("first", "a" * 100)
        await store.save("second", "b" * 100)
        cache_dir = self.base_dir / "cache"
        first = next(p for p in cache_dir.iterdir() if p.name.startswith("first-"))
        second = next(p for p in cache_dir.iterdir() if p.name.startswith("second-"))
        now = time.time()
        os.utime(first, (now - 100, now))
        os.utime(second, (now, now))

        report = await store.cleanup()

        self.assertEqual(report.removed_files, 1)
        self.assertEqual(report.freed_bytes, 100)
        self.assertFalse(first.exists())
        self.assertTrue(second.exists())

    async def test_start_and_stop_maintenance_loop(self) -> None:
        store = self.make_store(cleanup_interval_seconds=0.01)
        store.start()
        await asyncio.sleep(0.05)
        await asyncio.wait_for(store.stop(), timeout=1)


class BackupTests(ContentStoreTestCase):
    async def test_restore_brings_back_removed_document(self) -> None:
        store = self.make_store()
        await store.save("doc", "keep me")
        stamp = await store.create_backup()
        await store.remove("doc")

        restored = await store.restore_backup()

        self.assertEqual(restored, stamp)
        self.assertEqual(store.require("doc").current.content, "keep me")
        self.assertEqual([m.line for m in await store.search_lines("doc", "keep")], [1])

    async def test_restore_without_backups_raises(self) -> None:
        store = self.make_store()
        with self.assertRaises(NotFoundError):
            await store.restore_backup()
        with self.assertRaises(NotFoundError):
            await store.restore_backup("20000101")

    async def test_old_backups_are_pruned(self) -> None:
        store = self.make_store(max_backups=2)
        await store.save("doc", "content")
        for _ in range(3):
            await store.create_backup()
            await asyncio.sleep(0.001)

        self.assertEqual(len(store.list_backups()), 2)


if __name__ == "__main__":
    unittest.main()
