"""
Reads and writes the per-family durable record of installed artifacts.

The on-disk shape is kept compatible with earlier clients:

    {"installedModels": {"<key>": {"path": "...", "installedAt": 1700000000000}},
     "currentModel": "<key>" | null}
"""

import asyncio
import json
import logging
import os
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path

import aiofiles
from pydantic import BaseModel, Field, ValidationError

from model_depot.exceptions import PersistenceCorruptError
from model_depot.models.artifact import InstalledArtifact

log = logging.getLogger(__name__)


class InstalledEntry(BaseModel):
    """One installed artifact as stored in the record."""

    path: str
    installed_at: int = Field(alias="installedAt")

    class Config:
        """Pydantic model configuration."""

        populate_by_name = True
        extra = "ignore"

    def to_installed(self, key: str) -> InstalledArtifact:
        return InstalledArtifact(
            key=key,
            local_path=Path(self.path),
            installed_at_epoch_millis=self.installed_at,
        )


class DurableRecord(BaseModel):
    """A family's installed artifacts and its current selection."""

    installed: dict[str, InstalledEntry] = Field(
        default_factory=dict, alias="installedModels"
    )
    current: str | None = Field(default=None, alias="currentModel")

    class Config:
        """Pydantic model configuration."""

        populate_by_name = True
        extra = "ignore"

    def put(self, artifact: InstalledArtifact) -> None:
        self.installed[artifact.key] = InstalledEntry(
            path=str(artifact.local_path),
            installed_at=artifact.installed_at_epoch_millis,
        )


RecordMutator = Callable[[DurableRecord], None]


class RecordStore:
    """
    Owns one durable record file.

    Every write is a full read-modify-write under a per-file lock, so two keys
    of the same family completing together cannot lose each other's update.
    Entries the caller does not touch, including keys unknown to the running
    catalog, survive the write unchanged.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = asyncio.Lock()

    async def load(self) -> DurableRecord:
        """
        Loads the record. A missing file is an empty record.

        Raises:
            PersistenceCorruptError: The file is unreadable, not JSON, or does not
                match the record schema.
        """
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return DurableRecord()
        except OSError as e:
            raise PersistenceCorruptError(f"Cannot read '{self.path}': {e}") from e

        try:
            return DurableRecord.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise PersistenceCorruptError(
                f"Malformed durable record '{self.path.name}': {e}"
            ) from e

    async def update(self, mutator: RecordMutator) -> DurableRecord:
        """Applies `mutator` to the freshest on-disk record and writes it back."""
        async with self._lock:
            try:
                record = await self.load()
            except PersistenceCorruptError as e:
                log.warning(f"[yellow]{e}. Rewriting from scratch.[/yellow]")
                record = DurableRecord()
            mutator(record)
            await self._write(record)
            return record

    async def _write(self, record: DurableRecord) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        payload = record.model_dump_json(by_alias=True, indent=2)
        try:
            await asyncio.to_thread(self.path.parent.mkdir, parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
            await asyncio.to_thread(os.replace, tmp_path, self.path)
        except OSError:
            with suppress(OSError):
                await asyncio.to_thread(tmp_path.unlink, missing_ok=True)
            raise
        log.debug(f"Saved durable record '{self.path.name}'.")
