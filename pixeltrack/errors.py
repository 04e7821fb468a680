"""Error taxonomy for the tracking pipeline."""


class TrackingError(Exception):
    """Base class for tracking errors."""


class InvalidToken(TrackingError):
    """Pixel token could not be decoded into a tracking payload."""


class MissingIdentifier(TrackingError):
    """A signal request arrived without an email_id."""


class PersistenceFailure(TrackingError):
    """The open event could not be written to the database."""


class GeoLookupFailure(TrackingError):
    """GeoIP resolution failed for an address."""
