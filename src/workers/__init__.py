"""Worker package exports."""

from src.workers.source_pool import ProcessTarget, SourceWorkerPool

__all__ = [
    "ProcessTarget",
    "SourceWorkerPool",
]
