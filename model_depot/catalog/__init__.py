"""
Artifact Catalog Layer.

This package holds the static, read-only tables of downloadable artifacts and
the per-family storage layout.
"""

from .builtin import LANGUAGE_FAMILY, SPEECH_FAMILY, builtin_catalogs
from .registry import ArtifactCatalog, FamilySpec

__all__ = [
    "ArtifactCatalog",
    "FamilySpec",
    "LANGUAGE_FAMILY",
    "SPEECH_FAMILY",
    "builtin_catalogs",
]
