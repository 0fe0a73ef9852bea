# sketchshift/errors.py


class SketchShiftError(Exception):
    """Base class for every error raised by the conversion pipeline."""


class NotFound(SketchShiftError):
    """Referenced job or entity does not exist (404)."""


class ValidationError(SketchShiftError):
    """Malformed input: empty content, disallowed type, oversize upload (400)."""


class TransportError(SketchShiftError):
    """Network / timeout failure talking to a remote collaborator. Retryable."""


class ConversionFailure(SketchShiftError):
    """The conversion function answered but declined or returned unusable output."""


class PersistenceError(SketchShiftError):
    """The job store or the artifact storage is unavailable."""


class StorageError(PersistenceError):
    """No storage backend accepted the artifact."""


class LeaseLost(SketchShiftError):
    """
    A lease-guarded write found the lease gone.

    superseded=True means the job input was replaced while the
    conversion was in flight, so the result was discarded.
    """

    def __init__(self, message: str, superseded: bool = False):
        super().__init__(message)
        self.superseded = superseded
