"""
Transfer Layer.

This package wraps single resumable HTTP downloads: start, pause, resume and
cancel, with rate-limited progress reporting.
"""

from .downloader import (
    Downloader,
    ResumeToken,
    TransferHandle,
    close_connection_pool,
    get_connection_pool,
    partial_path_for,
)

__all__ = [
    "Downloader",
    "ResumeToken",
    "TransferHandle",
    "close_connection_pool",
    "get_connection_pool",
    "partial_path_for",
]
