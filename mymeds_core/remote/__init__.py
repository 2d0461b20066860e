# =============================================================================
# mymeds_core/remote/__init__.py
# Remote Store Adapters
# =============================================================================

from mymeds_core.remote.repository import CollectionRepository, InMemoryRepository

__all__ = ["CollectionRepository", "InMemoryRepository"]
