from codex_keeper.batch.processor import BatchProcessor

__all__ = ["BatchProcessor"]
