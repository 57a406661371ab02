"""
Data Models Layer.

This package contains the pydantic and dataclass models that define the core
data structures used throughout the application, such as configuration,
catalog descriptors and per-key download state.
"""

from .artifact import (
    ArtifactDescriptor,
    ArtifactError,
    DownloadState,
    DownloadStatus,
    ErrorKind,
    InstalledArtifact,
    StateChange,
)
from .config import StoreConfig

__all__ = [
    "ArtifactDescriptor",
    "ArtifactError",
    "DownloadState",
    "DownloadStatus",
    "ErrorKind",
    "InstalledArtifact",
    "StateChange",
    "StoreConfig",
]
