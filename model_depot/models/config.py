"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

NETWORK_MODES = ("auto", "metered", "unmetered")


def default_storage_root() -> str:
    """Returns the platform's private data directory for the application."""
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_DATA_HOME", "~/.local/share"))
    return str(base_dir.expanduser() / "model-depot")


class StoreConfig(BaseModel):
    """A validated configuration model for the application."""

    # Storage
    storage_root: str = Field(default_factory=default_storage_root)

    # Transfer Settings
    max_concurrent_transfers: int = 2
    progress_interval: float = 0.25
    connect_timeout: float = 15.0
    read_timeout: float = 90.0

    # Network Policy (None keeps each family's own threshold)
    metered_threshold_mb: int | None = None
    network_mode: str = "auto"
    probe_url: str = "https://huggingface.co"

    # Logging
    json_logs: bool = False

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("storage_root")
    @classmethod
    def validate_storage_root(cls, v: str) -> str:
        """Expands '~' and rejects an empty root."""
        if not v:
            raise ValueError("Storage root cannot be empty.")
        return str(Path(v).expanduser())

    @field_validator("max_concurrent_transfers")
    @classmethod
    def validate_transfers(cls, v: int) -> int:
        """Ensures a reasonable number of simultaneous transfers."""
        if v < 1 or v > 8:
            raise ValueError("Max concurrent transfers must be between 1 and 8.")
        return v

    @field_validator("progress_interval")
    @classmethod
    def validate_progress_interval(cls, v: float) -> float:
        if v <= 0 or v > 5:
            raise ValueError("Progress interval must be in (0, 5] seconds.")
        return v

    @field_validator("metered_threshold_mb")
    @classmethod
    def validate_threshold(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError("Metered threshold cannot be negative.")
        return v

    @field_validator("network_mode")
    @classmethod
    def validate_network_mode(cls, v: str) -> str:
        """Normalizes the network mode and checks it against the known modes."""
        v = v.lower()
        if v not in NETWORK_MODES:
            raise ValueError(f"Network mode must be one of {', '.join(NETWORK_MODES)}.")
        return v

    @model_validator(mode="after")
    def validate_timeouts(self) -> "StoreConfig":
        """Checks that network timeouts are positive."""
        if self.connect_timeout <= 0 or self.read_timeout <= 0:
            raise ValueError("Network timeouts must be positive.")
        if not self.probe_url.startswith(("http://", "https://")):
            raise ValueError(f"Probe URL must be http(s), got: {self.probe_url}")
        return self

    @property
    def root_path(self) -> Path:
        return Path(self.storage_root)

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        return set(cls.model_fields)
