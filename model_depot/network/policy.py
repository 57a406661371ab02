"""
Decides whether a transfer may start automatically given the current network.
"""

import logging
from enum import Enum
from typing import Protocol

from model_depot.models.artifact import ArtifactDescriptor

log = logging.getLogger(__name__)

DEFAULT_METERED_THRESHOLD_MB = 100


class NetworkClass(Enum):
    """Connectivity classes, ordered from worst to best."""

    UNREACHABLE = "unreachable"
    METERED = "metered"
    UNMETERED = "unmetered"


class PolicyDecision(Enum):
    """Outcome of the pre-transfer policy check."""

    ALLOW = "allow"
    REQUIRE_CONFIRMATION = "require_confirmation"
    DENY = "deny"


class Classifier(Protocol):
    async def classify(self) -> NetworkClass: ...


class NetworkPolicy:
    """
    Gates the start of a transfer on connectivity and network cost.

    The check is advisory and only runs when a transfer starts; an in-flight
    transfer is never stopped because the network changed underneath it.
    """

    def __init__(self, classifier: Classifier, metered_threshold_mb: int | None = None):
        """
        Args:
            classifier: Anything with an async `classify()` returning a NetworkClass.
            metered_threshold_mb: When set, replaces every family's own threshold
                for confirmation on metered networks.
        """
        self.classifier = classifier
        self.metered_threshold_mb = metered_threshold_mb

    async def classify(self) -> NetworkClass:
        return await self.classifier.classify()

    def threshold_for(self, family_threshold_mb: int) -> int:
        if self.metered_threshold_mb is not None:
            return self.metered_threshold_mb
        return family_threshold_mb

    def may_auto_download(
        self,
        descriptor: ArtifactDescriptor,
        classification: NetworkClass,
        override: bool = False,
        family_threshold_mb: int = DEFAULT_METERED_THRESHOLD_MB,
    ) -> PolicyDecision:
        """Returns the policy decision for starting `descriptor`'s transfer."""
        if classification is NetworkClass.UNREACHABLE:
            return PolicyDecision.DENY
        threshold = self.threshold_for(family_threshold_mb)
        if (
            classification is NetworkClass.METERED
            and descriptor.expected_size_mb > threshold
            and not override
        ):
            log.debug(
                f"'{descriptor.key}' ({descriptor.expected_size_mb} MB) exceeds the "
                f"metered threshold of {threshold} MB."
            )
            return PolicyDecision.REQUIRE_CONFIRMATION
        return PolicyDecision.ALLOW
