"""
Storage Layer.

This package handles all data persistence: the per-family durable records of
installed artifacts and the INI configuration file.
"""

from .config_manager import ConfigManager
from .record import DurableRecord, InstalledEntry, RecordStore

__all__ = ["ConfigManager", "DurableRecord", "InstalledEntry", "RecordStore"]
