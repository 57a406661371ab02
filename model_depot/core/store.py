"""
The multi-family entry point: one lifecycle manager per artifact family,
sharing a downloader, a network policy and the event log.
"""

import logging
from collections.abc import Callable
from pathlib import Path

from model_depot.catalog.builtin import builtin_catalogs
from model_depot.catalog.registry import ArtifactCatalog
from model_depot.exceptions import UnknownArtifactError
from model_depot.models.artifact import DownloadState, StateChange
from model_depot.models.config import StoreConfig
from model_depot.network.connectivity import ConnectivityMonitor
from model_depot.network.policy import Classifier, NetworkPolicy
from model_depot.transfer.downloader import Downloader, close_connection_pool
from model_depot.utils.structured_logger import (
    ArtifactEventLogger,
    StructuredLogger,
    create_structured_logger,
)

from .lifecycle import ArtifactLifecycleManager

log = logging.getLogger(__name__)


class ArtifactStore:
    """Owns every family's manager and routes keys to the right one."""

    def __init__(
        self,
        config: StoreConfig,
        catalogs: dict[str, ArtifactCatalog] | None = None,
        classifier: Classifier | None = None,
        downloader: Downloader | None = None,
        event_logger: StructuredLogger | None = None,
    ):
        self.config = config
        self.catalogs = catalogs if catalogs is not None else builtin_catalogs()
        self.downloader = downloader or Downloader(
            max_concurrent=config.max_concurrent_transfers,
            progress_interval=config.progress_interval,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
        )
        self.policy = NetworkPolicy(
            classifier or ConnectivityMonitor(config.probe_url, config.network_mode),
            metered_threshold_mb=config.metered_threshold_mb,
        )
        self.event_logger = event_logger or create_structured_logger(
            config.root_path / "logs", enable_json=config.json_logs
        )

        self._family_by_key: dict[str, str] = {}
        self._managers: dict[str, ArtifactLifecycleManager] = {}
        for name, catalog in self.catalogs.items():
            for key in catalog.keys():
                if key in self._family_by_key:
                    raise ValueError(
                        f"Key '{key}' is in both the '{self._family_by_key[key]}' "
                        f"and '{name}' catalogs."
                    )
                self._family_by_key[key] = name
            self._managers[name] = ArtifactLifecycleManager(
                catalog,
                config.root_path,
                self.downloader,
                self.policy,
                ArtifactEventLogger(self.event_logger, name),
            )

    @property
    def families(self) -> list[str]:
        return list(self._managers)

    async def initialize(self) -> None:
        """Initializes every family. Call once at startup before any operation."""
        for manager in self._managers.values():
            await manager.initialize()
        log.debug(f"Artifact store ready at {self.config.root_path}")

    def family_of(self, key: str) -> str:
        try:
            return self._family_by_key[key]
        except KeyError:
            raise UnknownArtifactError(f"'{key}' is not in any catalog.") from None

    def manager(self, family: str) -> ArtifactLifecycleManager:
        try:
            return self._managers[family]
        except KeyError:
            raise UnknownArtifactError(f"Unknown artifact family '{family}'.") from None

    def manager_for(self, key: str) -> ArtifactLifecycleManager:
        return self._managers[self.family_of(key)]

    def get_current_artifact_path(self, family: str) -> Path | None:
        """What an inference engine should load for `family`, if anything."""
        return self.manager(family).current_artifact_path()

    def state(self, key: str) -> DownloadState:
        return self.manager_for(key).state(key)

    def subscribe(self, callback: Callable[[StateChange], None]) -> Callable[[], None]:
        """Subscribes `callback` to every family. Returns a single unsubscriber."""
        unsubscribers = [m.subscribe(callback) for m in self._managers.values()]

        def unsubscribe() -> None:
            for fn in unsubscribers:
                fn()

        return unsubscribe

    async def close(self) -> None:
        """Releases the shared connection pool and the event log."""
        await close_connection_pool()
        self.event_logger.close()

    async def __aenter__(self) -> "ArtifactStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
