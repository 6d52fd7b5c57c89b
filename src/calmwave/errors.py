"""Error taxonomy."""

from __future__ import annotations


class CalmWaveError(Exception):
    """Base class for errors raised by calmwave components."""

    # Safe to show to an end user; never carries internal detail.
    public_message = "Something went wrong, please try again."


class ValidationError(CalmWaveError, ValueError):
    """Malformed input to an operation; the operation is aborted."""

    public_message = "The request was invalid, please check it and try again."


class RecordNotFoundError(ValidationError):
    public_message = "The requested record could not be found."


class TransientExternalError(CalmWaveError):
    """A managed key service or the datastore is unavailable."""

    public_message = "The service is temporarily unavailable, please try again."


class DataIntegrityError(CalmWaveError):
    """Decryption failure or schema mismatch. Always surfaced."""


class ConflictError(DataIntegrityError):
    """A conditional write found the record in an unexpected state."""


class EncryptionUnavailableError(DataIntegrityError):
    """The encryption self-check failed; nothing may be encrypted."""


class AdvisoryComputationError(CalmWaveError):
    """Summary or trend derivation failed. Degraded to a default, never surfaced."""
