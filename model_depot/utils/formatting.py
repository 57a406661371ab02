"""
Helper functions for formatting data into human-readable strings.
"""

from model_depot.models.artifact import ArtifactError, DownloadState, DownloadStatus


def format_size(bytes_size: float) -> str:
    """Formats bytes into a human-readable size string (e.g., '145.3 MB')."""
    if bytes_size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while bytes_size >= 1024 and i < len(units) - 1:
        bytes_size /= 1024
        i += 1
    return f"{bytes_size:.1f} {units[i]}"


_STATUS_STYLES = {
    DownloadStatus.NOT_INSTALLED: ("Not installed", "dim"),
    DownloadStatus.DOWNLOADING: ("Downloading", "cyan"),
    DownloadStatus.PAUSED: ("Paused", "yellow"),
    DownloadStatus.INSTALLED: ("Installed", "green"),
    DownloadStatus.FAILED: ("Failed", "red"),
}


def format_status(state: DownloadState) -> str:
    """Renders a download state as a short rich-markup label."""
    label, color = _STATUS_STYLES[state.status]
    if state.status in (DownloadStatus.DOWNLOADING, DownloadStatus.PAUSED):
        label = f"{label} {state.progress:.0%}"
    return f"[{color}]{label}[/{color}]"


def format_error(error: ArtifactError | None) -> str:
    if error is None:
        return ""
    suffix = " (resumable)" if error.resumable else ""
    return f"{error.kind.value}: {error.message}{suffix}"
