"""Lore knowledge ingestion and sync engine.

Discovers documents in configured directories, extracts metadata and
embeddings, and keeps a content-addressed knowledge repository in sync
across machines through git.
"""

from lore_knowledge.orchestrator import SyncOptions, SyncOrchestrator, SyncRunResult

__version__ = "0.1.0"
__all__ = ["SyncOptions", "SyncOrchestrator", "SyncRunResult"]
