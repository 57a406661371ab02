"""
Structured logging system for lifecycle events.
Provides JSON-formatted logs with context and metadata.
"""

import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any


class StructuredLogger:
    """
    Logger that outputs both human-readable and machine-parseable records.

    Usage:
        logger = StructuredLogger("model_depot.events")
        logger.info("transfer_completed", family="speech", key="tiny", size_mb=75)
    """

    def __init__(
        self,
        name: str,
        log_dir: Path | None = None,
        enable_json: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize structured logger.

        Args:
            name: Logger name
            log_dir: Directory for JSON log files (None = disabled)
            enable_json: Enable JSON file logging
            enable_console: Mirror events to the stdlib logger
        """
        self.name = name
        self.log_dir = log_dir
        self.enable_json = enable_json and log_dir is not None
        self.enable_console = enable_console

        self._logger = logging.getLogger(name)

        # JSON log file
        self._json_file = None
        self.json_log_path: Path | None = None
        if self.enable_json:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.json_log_path = log_dir / f"model_depot_{timestamp}.jsonl"
            self._json_file = open(self.json_log_path, "a", encoding="utf-8")  # noqa: SIM115

        # Session context (added to all log entries)
        self._session_context: dict[str, Any] = {
            "session_id": f"{int(time.time())}_{id(self)}",
            "start_time": datetime.now().isoformat(),
        }

    def set_session_context(self, **kwargs) -> None:
        """Set session-level context that appears in all logs."""
        self._session_context.update(kwargs)

    def _format_message(self, event: str, **context) -> str:
        parts = [f"[{event}]"]
        for key, value in context.items():
            if key not in ("level", "timestamp"):
                parts.append(f"{key}={value}")
        return " ".join(parts)

    def _write_json(self, level: str, event: str, **context) -> None:
        if not self._json_file or self._json_file.closed:
            return

        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "event": event,
            **self._session_context,
            **context,
        }

        try:
            self._json_file.write(json.dumps(entry, default=str) + "\n")
            self._json_file.flush()
        except OSError as e:
            self._logger.warning(f"JSON event logging failed: {e}")

    def _emit(self, level: int, event: str, **context) -> None:
        if self.enable_console:
            self._logger.log(level, self._format_message(event, **context))
        if self.enable_json:
            self._write_json(logging.getLevelName(level), event, **context)

    def debug(self, event: str, **context) -> None:
        self._emit(logging.DEBUG, event, **context)

    def info(self, event: str, **context) -> None:
        self._emit(logging.INFO, event, **context)

    def warning(self, event: str, **context) -> None:
        self._emit(logging.WARNING, event, **context)

    def error(self, event: str, **context) -> None:
        self._emit(logging.ERROR, event, **context)

    def close(self) -> None:
        """Close JSON log file."""
        if self._json_file and not self._json_file.closed:
            self._json_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class ArtifactEventLogger:
    """Named lifecycle events for a single artifact family."""

    def __init__(self, logger: StructuredLogger, family: str):
        self.logger = logger
        self.family = family

    def transfer_started(self, key: str, url: str, expected_size_mb: int):
        self.logger.info(
            "transfer_started",
            family=self.family,
            key=key,
            url=url,
            expected_size_mb=expected_size_mb,
        )

    def transfer_paused(self, key: str, bytes_written: int, supports_ranges: bool):
        self.logger.info(
            "transfer_paused",
            family=self.family,
            key=key,
            bytes_written=bytes_written,
            supports_ranges=supports_ranges,
        )

    def transfer_resumed(self, key: str, from_bytes: int):
        self.logger.info(
            "transfer_resumed", family=self.family, key=key, from_bytes=from_bytes
        )

    def transfer_completed(
        self, key: str, size_bytes: int, duration_s: float, restarted: bool
    ):
        """Log a transfer that produced an installed artifact."""
        self.logger.info(
            "transfer_completed",
            family=self.family,
            key=key,
            size_bytes=size_bytes,
            size_mb=round(size_bytes / (1024 * 1024), 2),
            duration_s=round(duration_s, 2),
            restarted=restarted,
        )

    def transfer_failed(self, key: str, kind: str, error: str, resumable: bool):
        self.logger.error(
            "transfer_failed",
            family=self.family,
            key=key,
            kind=kind,
            error=error,
            resumable=resumable,
        )

    def transfer_cancelled(self, key: str):
        self.logger.info("transfer_cancelled", family=self.family, key=key)

    def policy_blocked(self, key: str, kind: str, expected_size_mb: int):
        """Log a transfer the network policy refused to start."""
        self.logger.warning(
            "policy_blocked",
            family=self.family,
            key=key,
            kind=kind,
            expected_size_mb=expected_size_mb,
        )

    def artifact_deleted(self, key: str, reassigned_to: str | None):
        self.logger.info(
            "artifact_deleted", family=self.family, key=key, current=reassigned_to
        )

    def selection_changed(self, key: str | None):
        self.logger.info("selection_changed", family=self.family, current=key)

    def record_pruned(self, keys: list[str]):
        """Log installed entries dropped because their files disappeared."""
        self.logger.warning("record_pruned", family=self.family, keys=keys)

    def record_corrupt(self, error: str):
        self.logger.error("record_corrupt", family=self.family, error=error)


def create_structured_logger(
    log_dir: Path | None = None, enable_json: bool = False
) -> StructuredLogger:
    """Create the shared event logger every family writes through."""
    return StructuredLogger("model_depot.events", log_dir=log_dir, enable_json=enable_json)
