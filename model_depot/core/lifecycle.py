"""
Owns the installation state machine of one artifact family.

States per key:

    NotInstalled -> Downloading -> {Paused, Installed, Failed}
    Paused       -> {Downloading (resume), NotInstalled (cancel)}
    Failed       -> Downloading (retry)
    Installed    -> NotInstalled (delete)

Every public operation is safe to call repeatedly in the same state. None of
them raise for runtime conditions: failures land in `DownloadState.last_error`
and are returned to the caller. Only an unknown catalog key raises.
"""

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable
from pathlib import Path

from model_depot.catalog.registry import ArtifactCatalog
from model_depot.exceptions import (
    PersistenceCorruptError,
    StorageFullError,
    TransferError,
    TransferStopped,
    WriteFailedError,
)
from model_depot.models.artifact import (
    ArtifactDescriptor,
    ArtifactError,
    DownloadState,
    DownloadStatus,
    ErrorKind,
    InstalledArtifact,
    StateChange,
)
from model_depot.network.policy import NetworkClass, NetworkPolicy, PolicyDecision
from model_depot.storage.record import DurableRecord, RecordMutator, RecordStore
from model_depot.transfer.downloader import (
    PART_SUFFIX,
    Downloader,
    TransferHandle,
    partial_path_for,
)
from model_depot.utils.structured_logger import (
    ArtifactEventLogger,
    create_structured_logger,
)

log = logging.getLogger(__name__)

Observer = Callable[[StateChange], None]


def _classify_transfer_error(error: TransferError) -> ErrorKind:
    if isinstance(error, StorageFullError):
        return ErrorKind.STORAGE_FULL
    if isinstance(error, WriteFailedError):
        return ErrorKind.WRITE_FAILED
    return ErrorKind.TRANSFER_FAILED


class ArtifactLifecycleManager:
    """
    Drives downloads of one family's artifacts and records the outcome.

    Operations on the same key are serialized by a per-key lock held only for
    state transitions, never for the duration of a transfer. Distinct keys run
    independently; the shared downloader caps how many transfer at once.
    """

    def __init__(
        self,
        catalog: ArtifactCatalog,
        storage_root: Path,
        downloader: Downloader,
        policy: NetworkPolicy,
        events: ArtifactEventLogger | None = None,
    ):
        self.catalog = catalog
        self.family = catalog.family.name
        self.directory = Path(storage_root) / catalog.family.directory
        self.records = RecordStore(Path(storage_root) / catalog.family.record_filename)
        self.downloader = downloader
        self.policy = policy
        self.events = events or ArtifactEventLogger(
            create_structured_logger(), self.family
        )

        self._states: dict[str, DownloadState] = {
            key: DownloadState() for key in catalog.keys()
        }
        self._locks: dict[str, asyncio.Lock] = {
            key: asyncio.Lock() for key in catalog.keys()
        }
        self._installed: dict[str, InstalledArtifact] = {}
        self._current: str | None = None
        self._handles: dict[str, TransferHandle] = {}
        self._started_at: dict[str, float] = {}
        self._observers: list[Observer] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state(self, key: str) -> DownloadState:
        """Returns a copy of `key`'s state. Never blocks."""
        self.catalog.get(key)
        return dataclasses.replace(self._states[key])

    def states(self) -> dict[str, DownloadState]:
        """Copies of every key's state, in catalog order."""
        return {key: dataclasses.replace(s) for key, s in self._states.items()}

    @property
    def current_key(self) -> str | None:
        return self._current

    def destination_for(self, key: str) -> Path:
        return self.directory / self.catalog.get(key).destination_filename

    def current_artifact_path(self) -> Path | None:
        """The path consumers should load, or None if nothing usable is selected."""
        key = self._current
        if key is None or self._states[key].status is not DownloadStatus.INSTALLED:
            return None
        return self._installed[key].local_path

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Observer) -> Callable[[], None]:
        """Registers `callback` for every state change. Returns an unsubscriber."""
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def _notify(self, key: str) -> None:
        state = self._states[key]
        change = StateChange(
            family=self.family,
            key=key,
            status=state.status,
            progress=state.progress,
            last_error=state.last_error,
        )
        for callback in list(self._observers):
            try:
                callback(change)
            except Exception:
                log.exception(f"Observer {callback!r} failed on {self.family}/{key}")

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Rebuilds in-memory state from the durable record and the filesystem.

        Entries whose files vanished are pruned from the record, leftover
        partial files are removed, and the selection is restored only if it
        still points at an installed artifact.
        """
        await self._abort_live_transfers()
        await asyncio.to_thread(self.directory.mkdir, parents=True, exist_ok=True)

        try:
            record = await self.records.load()
        except PersistenceCorruptError as e:
            log.warning(f"[yellow]{e}. Starting from an empty record.[/yellow]")
            self.events.record_corrupt(str(e))
            record = DurableRecord()

        self._installed = {}
        self._states = {key: DownloadState() for key in self.catalog.keys()}
        pruned: list[str] = []
        for key, entry in record.installed.items():
            if key not in self.catalog:
                continue
            artifact = entry.to_installed(key)
            if not await asyncio.to_thread(artifact.local_path.is_file):
                pruned.append(key)
                continue
            self._installed[key] = artifact
            self._states[key] = DownloadState(DownloadStatus.INSTALLED, progress=1.0)

        self._current = record.current if record.current in self._installed else None

        if pruned:
            log.info(
                f"Pruned {len(pruned)} missing {self.family} artifact(s): "
                f"{', '.join(pruned)}"
            )
            self.events.record_pruned(pruned)
            stale_current = record.current in pruned

            def prune(r: DurableRecord) -> None:
                for key in pruned:
                    r.installed.pop(key, None)
                if stale_current:
                    r.current = None

            if error := await self._persist(prune):
                log.error(f"[red]{error.message}[/red]")

        await self._remove_orphaned_partials()
        for key in self._states:
            self._notify(key)

    async def _abort_live_transfers(self) -> None:
        handles, self._handles = self._handles, {}
        for handle in handles.values():
            await self.downloader.cancel(handle)
        for state in self._states.values():
            if state.resume_token is not None:
                await self.downloader.cancel(state.resume_token)

    async def _remove_orphaned_partials(self) -> None:
        def sweep() -> list[str]:
            removed = []
            for part in self.directory.glob(f"*{PART_SUFFIX}"):
                part.unlink(missing_ok=True)
                removed.append(part.name)
            return removed

        try:
            removed = await asyncio.to_thread(sweep)
        except OSError as e:
            log.warning(f"[yellow]Could not clean partial files: {e}[/yellow]")
            return
        if removed:
            log.debug(f"Removed orphaned partial files: {', '.join(removed)}")

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def download(self, key: str, override_network_policy: bool = False) -> DownloadState:
        """
        Installs `key` and waits for the outcome.

        No-op while the key is already Downloading or Installed. A Paused key is
        resumed. When the network policy refuses to start, the reason is set as
        `last_error` and the state is returned without starting a transfer.
        """
        descriptor = self.catalog.get(key)
        async with self._locks[key]:
            state = self._states[key]
            if state.status in (DownloadStatus.DOWNLOADING, DownloadStatus.INSTALLED):
                return dataclasses.replace(state)
            if state.status is DownloadStatus.PAUSED:
                handle = self._resume_locked(key)
            else:
                if not await self._policy_allows(descriptor, override_network_policy):
                    return dataclasses.replace(self._states[key])
                handle = self._start_locked(descriptor)
        return await self._await_outcome(key, handle)

    async def resume(self, key: str) -> DownloadState:
        """Continues a Paused key from its resume token; no-op in any other state."""
        self.catalog.get(key)
        async with self._locks[key]:
            if self._states[key].status is not DownloadStatus.PAUSED:
                return dataclasses.replace(self._states[key])
            handle = self._resume_locked(key)
        return await self._await_outcome(key, handle)

    async def pause(self, key: str) -> DownloadState:
        """Stops a Downloading key and keeps a token to resume it later."""
        self.catalog.get(key)
        async with self._locks[key]:
            state = self._states[key]
            handle = self._handles.get(key)
            if state.status is not DownloadStatus.DOWNLOADING or handle is None:
                return dataclasses.replace(state)

            token = await self.downloader.pause(handle)
            if token is None:
                # The transfer finished first; its outcome handler owns the state.
                return dataclasses.replace(state)

            self._handles.pop(key, None)
            state.status = DownloadStatus.PAUSED
            state.resume_token = token
            self.events.transfer_paused(key, token.bytes_written, token.supports_ranges)
            if not token.supports_ranges:
                log.info(
                    f"[yellow]Server for '{key}' did not advertise range support; "
                    "resuming may restart from zero.[/yellow]"
                )
            self._notify(key)
            return dataclasses.replace(state)

    async def cancel(self, key: str) -> DownloadState:
        """
        Aborts a Downloading or Paused key, deleting every partial byte.

        When this returns, the key is NotInstalled and free for a fresh download.
        """
        self.catalog.get(key)
        async with self._locks[key]:
            state = self._states[key]
            if state.status not in (DownloadStatus.DOWNLOADING, DownloadStatus.PAUSED):
                return dataclasses.replace(state)

            target = self._handles.pop(key, None) or state.resume_token
            destination = self.destination_for(key)
            if target is not None:
                await self.downloader.cancel(target)
            await asyncio.to_thread(partial_path_for(destination).unlink, missing_ok=True)
            # A transfer that completed while being cancelled leaves its final file.
            await asyncio.to_thread(destination.unlink, missing_ok=True)

            self._states[key] = DownloadState()
            self._started_at.pop(key, None)
            self.events.transfer_cancelled(key)
            self._notify(key)
            return dataclasses.replace(self._states[key])

    async def _policy_allows(self, descriptor: ArtifactDescriptor, override: bool) -> bool:
        classification = await self.policy.classify()
        decision = self.policy.may_auto_download(
            descriptor,
            classification,
            override,
            family_threshold_mb=self.catalog.family.metered_threshold_mb,
        )
        if decision is PolicyDecision.ALLOW:
            return True

        if decision is PolicyDecision.DENY:
            error = ArtifactError(
                ErrorKind.NO_CONNECTIVITY,
                "No network connection. Try again once you are back online.",
            )
        else:
            error = ArtifactError(
                ErrorKind.POLICY_BLOCKED,
                f"{descriptor.display_name} is {descriptor.expected_size_mb} MB and "
                f"the current network is {NetworkClass.METERED.value}. "
                "Confirm to download anyway.",
            )
        self._states[descriptor.key].last_error = error
        self.events.policy_blocked(
            descriptor.key, error.kind.value, descriptor.expected_size_mb
        )
        self._notify(descriptor.key)
        return False

    def _start_locked(self, descriptor: ArtifactDescriptor) -> TransferHandle:
        key = descriptor.key
        state = self._states[key]
        token = state.resume_token
        on_progress = self._progress_callback(descriptor)

        if token is not None:
            # A failed transfer that kept its partial file continues from it.
            handle = self.downloader.resume(token, on_progress)
            self.events.transfer_resumed(key, token.bytes_written)
        else:
            handle = self.downloader.start(
                descriptor.remote_url, self.destination_for(key), on_progress
            )
            state.progress = 0.0
            self.events.transfer_started(
                key, descriptor.remote_url, descriptor.expected_size_mb
            )

        self._handles[key] = handle
        self._started_at.setdefault(key, time.monotonic())
        state.status = DownloadStatus.DOWNLOADING
        state.last_error = None
        state.resume_token = None
        self._notify(key)
        return handle

    def _resume_locked(self, key: str) -> TransferHandle:
        descriptor = self.catalog.get(key)
        state = self._states[key]
        token = state.resume_token
        handle = self.downloader.resume(token, self._progress_callback(descriptor))
        self._handles[key] = handle
        state.status = DownloadStatus.DOWNLOADING
        state.last_error = None
        state.resume_token = None
        self.events.transfer_resumed(key, token.bytes_written)
        self._notify(key)
        return handle

    def _progress_callback(self, descriptor: ArtifactDescriptor) -> Callable[[int, int], None]:
        key = descriptor.key

        def on_progress(written: int, expected: int) -> None:
            state = self._states[key]
            if state.status is not DownloadStatus.DOWNLOADING:
                return
            # The catalog size is only an estimate; prefer what the server reports.
            total = expected or descriptor.expected_size_bytes
            state.progress = min(written / total, 1.0) if total else 0.0
            self._notify(key)

        return on_progress

    async def _await_outcome(self, key: str, handle: TransferHandle) -> DownloadState:
        try:
            path = await handle.wait()
        except TransferStopped:
            # pause() or cancel() holds the lock and updates the state itself.
            async with self._locks[key]:
                return dataclasses.replace(self._states[key])
        except TransferError as e:
            async with self._locks[key]:
                if self._handles.get(key) is not handle:
                    return dataclasses.replace(self._states[key])
                return self._record_failure(key, handle, e)

        async with self._locks[key]:
            if self._handles.get(key) is not handle:
                return dataclasses.replace(self._states[key])
            return await self._record_success(key, handle, path)

    def _record_failure(
        self, key: str, handle: TransferHandle, error: TransferError
    ) -> DownloadState:
        self._handles.pop(key, None)
        self._started_at.pop(key, None)
        kind = _classify_transfer_error(error)
        state = self._states[key]
        state.status = DownloadStatus.FAILED
        state.last_error = ArtifactError(kind, str(error), resumable=error.resumable)
        state.resume_token = handle.to_token() if error.resumable else None
        log.error(f"[red]Download of {self.family}/{key} failed: {error}[/red]")
        self.events.transfer_failed(key, kind.value, str(error), error.resumable)
        self._notify(key)
        return dataclasses.replace(state)

    async def _record_success(
        self, key: str, handle: TransferHandle, path: Path
    ) -> DownloadState:
        self._handles.pop(key, None)
        started = self._started_at.pop(key, time.monotonic())
        artifact = InstalledArtifact(
            key=key,
            local_path=path,
            installed_at_epoch_millis=int(time.time() * 1000),
        )
        self._installed[key] = artifact
        auto_selected = self._current is None
        if auto_selected:
            self._current = key

        def install(r: DurableRecord) -> None:
            r.put(artifact)
            if auto_selected:
                r.current = self._current

        state = DownloadState(DownloadStatus.INSTALLED, progress=1.0)
        state.last_error = await self._persist(install)
        self._states[key] = state

        self.events.transfer_completed(
            key, handle.bytes_written, time.monotonic() - started, handle.restarted
        )
        if auto_selected:
            self.events.selection_changed(key)
        log.info(f"[green]Installed {self.family}/{key}[/green] -> {path}")
        self._notify(key)
        return dataclasses.replace(state)

    # ------------------------------------------------------------------
    # Installed artifacts
    # ------------------------------------------------------------------

    async def delete(self, key: str) -> DownloadState:
        """
        Removes an Installed key's file and record entry.

        If it was the current selection, the first remaining installed key
        takes over, or the selection is cleared.
        """
        self.catalog.get(key)
        async with self._locks[key]:
            state = self._states[key]
            if state.status is not DownloadStatus.INSTALLED:
                return dataclasses.replace(state)

            artifact = self._installed[key]
            try:
                await asyncio.to_thread(artifact.local_path.unlink, missing_ok=True)
            except OSError as e:
                state.last_error = ArtifactError(
                    ErrorKind.WRITE_FAILED, f"Could not delete {artifact.local_path}: {e}"
                )
                self._notify(key)
                return dataclasses.replace(state)

            del self._installed[key]
            was_current = self._current == key
            if was_current:
                self._current = next(iter(self._installed), None)
            new_current = self._current

            # Selection changes on other keys take different locks, so the
            # record takes whatever selection is live when the write happens.
            def remove(r: DurableRecord) -> None:
                r.installed.pop(key, None)
                if was_current:
                    r.current = self._current

            self._states[key] = DownloadState()
            self._states[key].last_error = await self._persist(remove)
            self.events.artifact_deleted(key, new_current)
            if was_current:
                self.events.selection_changed(new_current)
            self._notify(key)
            return dataclasses.replace(self._states[key])

    async def select_current(self, key: str) -> bool:
        """
        Makes an Installed key the family's current artifact.

        Returns False, without raising, when `key` is not installed.
        """
        self.catalog.get(key)
        async with self._locks[key]:
            if self._states[key].status is not DownloadStatus.INSTALLED:
                log.debug(f"Ignoring selection of non-installed {self.family}/{key}")
                return False
            if self._current == key:
                return True
            self._current = key

            def select(r: DurableRecord) -> None:
                r.current = self._current

            if error := await self._persist(select):
                self._states[key].last_error = error
                self._notify(key)
            self.events.selection_changed(key)
            return True

    async def _persist(self, mutator: RecordMutator) -> ArtifactError | None:
        try:
            await self.records.update(mutator)
        except OSError as e:
            log.error(f"[red]Could not save the {self.family} record: {e}[/red]")
            return ArtifactError(
                ErrorKind.WRITE_FAILED, f"Could not save the durable record: {e}"
            )
        return None
