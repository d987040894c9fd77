from codex_keeper.store.content_store import ContentStore
from codex_keeper.store.memory_cache import MemoryCache
from codex_keeper.store.models import DocumentDetails, DocumentRecord, LineMatch, VersionEntry

__all__ = ["ContentStore", "DocumentDetails", "DocumentRecord", "LineMatch", "MemoryCache", "VersionEntry"]
