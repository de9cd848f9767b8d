"""Exceptions raised by the stitching and funnel services."""


class StitchingError(Exception):
    """Base exception for identity-stitching failures."""


class InvalidCriteria(StitchingError, ValueError):
    """Raised when neither an email nor a visitor_id was supplied."""


class InvalidStage(StitchingError, ValueError):
    """Raised when a funnel update names an unknown stage."""


class NotFound(StitchingError, LookupError):
    """Raised by explicit point lookups that find nothing."""


class MergeConflict(StitchingError):
    """Raised when two leads cannot be merged."""


class StorageError(StitchingError):
    """Wraps any failure coming from the underlying store."""


class InvalidTransition(StitchingError, ValueError):
    """Raised when a lead status change is not allowed from the current status."""
