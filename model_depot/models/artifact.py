"""
Data types shared by the catalog, the durable record and the lifecycle manager.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel


class ArtifactDescriptor(BaseModel):
    """A downloadable artifact, defined at build time as part of the catalog."""

    key: str
    display_name: str
    remote_url: str
    destination_filename: str
    expected_size_mb: int
    description: str = ""
    family: str
    languages: tuple[str, ...] = ()
    context_size: int | None = None

    class Config:
        """Pydantic model configuration."""

        frozen = True

    @property
    def expected_size_bytes(self) -> int:
        return self.expected_size_mb * 1024 * 1024


@dataclass(frozen=True)
class InstalledArtifact:
    """An artifact whose transfer completed and whose file is on disk."""

    key: str
    local_path: Path
    installed_at_epoch_millis: int


class DownloadStatus(Enum):
    """Lifecycle states of a single artifact key."""

    NOT_INSTALLED = "not_installed"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    INSTALLED = "installed"
    FAILED = "failed"


class ErrorKind(Enum):
    """Classified errors attached to a key's download state."""

    NO_CONNECTIVITY = "no_connectivity"  # Retry later
    POLICY_BLOCKED = "policy_blocked"  # Needs an explicit override
    TRANSFER_FAILED = "transfer_failed"
    STORAGE_FULL = "storage_full"
    WRITE_FAILED = "write_failed"
    PERSISTENCE_CORRUPT = "persistence_corrupt"


@dataclass(frozen=True)
class ArtifactError:
    """A classified error as surfaced to callers through DownloadState."""

    kind: ErrorKind
    message: str
    resumable: bool = False


@dataclass
class DownloadState:
    """
    In-memory state of one key. Never persisted.

    `resume_token` is only set while Paused, or while Failed with a partial
    file the transfer primitive preserved.
    """

    status: DownloadStatus = DownloadStatus.NOT_INSTALLED
    progress: float = 0.0
    last_error: ArtifactError | None = None
    resume_token: Any = field(default=None, repr=False)


@dataclass(frozen=True)
class StateChange:
    """An immutable snapshot delivered to observers after every state change."""

    family: str
    key: str
    status: DownloadStatus
    progress: float
    last_error: ArtifactError | None
