class SourceUnavailable(Exception):
    """A page request to the row store failed; the whole collection is abandoned."""


class CollectionCancelled(Exception):
    """The caller stopped a scan before it reached the last page."""


class InconsistentTotals(AssertionError):
    """Allocated amounts do not add back up to the bill's net total."""

    def __init__(self, net_total_minor: int, allocated_minor: int) -> None:
        super().__init__(
            f"allocated {allocated_minor} minor units against a net total of {net_total_minor}"
        )
        self.net_total_minor = net_total_minor
        self.allocated_minor = allocated_minor


class BaselineConflict(Exception):
    """The discount baseline changed since the caller last read it."""
