"""
Core engine for managing installed artifacts.

This package contains the primary logic. The `ArtifactStore` acts as the
multi-family coordinator, delegating each family's state machine to an
`ArtifactLifecycleManager`.
"""

from .lifecycle import ArtifactLifecycleManager
from .store import ArtifactStore

__all__ = ["ArtifactLifecycleManager", "ArtifactStore"]
