"""Exception types raised by the Visual DNA engine."""


class VisualDNAError(Exception):
    """Base class for engine errors."""


class ImageDecodeError(VisualDNAError, ValueError):
    """Raised when image bytes cannot be decoded into pixels."""


class DuplicateMatchError(VisualDNAError):
    """Raised by a store when a (source, target) photo pair already has a match record."""

    def __init__(self, source_photo_id: str, target_photo_id: str):
        super().__init__(
            f"Match already recorded for {source_photo_id} -> {target_photo_id}"
        )
        self.source_photo_id = source_photo_id
        self.target_photo_id = target_photo_id


class RecordNotFoundError(VisualDNAError, LookupError):
    """Raised when a case or photo record is missing from the store."""
