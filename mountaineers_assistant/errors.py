from __future__ import annotations

from typing import Any


class HarvestError(RuntimeError):
    """Base class for failures raised by the collection pipeline."""


class DiscoveryError(HarvestError):
    """The portal page could not be loaded or lacks the activities link."""


class FeedError(HarvestError):
    """The activity history feed could not be located or fetched."""


class FeedParseError(FeedError):
    """The history feed returned JSON in a shape we do not understand."""


class EnrichmentError(HarvestError):
    """A per-activity detail or roster fetch failed. Always recovered."""


class RefreshTimeoutError(HarvestError):
    pass


class RefreshInProgressError(HarvestError):
    """Another refresh or collection holds the single-flight slot."""

    def __init__(self, message: str, *, progress: dict[str, Any] | None = None):
        super().__init__(message)
        self.progress = progress


class UnknownMessageError(ValueError):
    pass
