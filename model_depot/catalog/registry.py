"""
Read-only lookup tables of the artifacts this client knows how to install.
"""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from pathvalidate import ValidationError, validate_filename

from model_depot.exceptions import UnknownArtifactError
from model_depot.models.artifact import ArtifactDescriptor
from model_depot.network.policy import DEFAULT_METERED_THRESHOLD_MB


@dataclass(frozen=True)
class FamilySpec:
    """
    Where a family's artifacts and durable record live under the storage root.

    Attributes:
        name: Family identifier, e.g. "speech".
        directory: Directory holding the family's artifact files.
        record_filename: JSON document holding the family's durable record.
        metered_threshold_mb: Artifacts larger than this need confirmation
            before downloading on a metered network.
    """

    name: str
    directory: str
    record_filename: str
    metered_threshold_mb: int = DEFAULT_METERED_THRESHOLD_MB


class ArtifactCatalog:
    """
    An immutable table of artifact descriptors for a single family.

    Looking up a key the catalog does not contain raises
    UnknownArtifactError: the catalog is compiled into the client, so an
    unknown key is a programming error.
    """

    def __init__(self, family: FamilySpec, descriptors: Iterable[ArtifactDescriptor]):
        self.family = family
        self._descriptors: dict[str, ArtifactDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.key in self._descriptors:
                raise ValueError(f"Duplicate catalog key: {descriptor.key}")
            if descriptor.family != family.name:
                raise ValueError(
                    f"Descriptor '{descriptor.key}' belongs to family "
                    f"'{descriptor.family}', not '{family.name}'."
                )
            try:
                validate_filename(descriptor.destination_filename, platform="universal")
            except ValidationError as e:
                raise ValueError(
                    f"Unsafe destination filename for '{descriptor.key}': {e}"
                ) from e
            self._descriptors[descriptor.key] = descriptor

    def get(self, key: str) -> ArtifactDescriptor:
        """Returns the descriptor for `key`, failing loudly if it is unknown."""
        try:
            return self._descriptors[key]
        except KeyError:
            raise UnknownArtifactError(
                f"'{key}' is not in the {self.family.name} catalog."
            ) from None

    def keys(self) -> list[str]:
        return list(self._descriptors)

    def __contains__(self, key: object) -> bool:
        return key in self._descriptors

    def __iter__(self) -> Iterator[ArtifactDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)
