from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from farmrun.services.uploads import UploadJob


class FarmrunError(Exception):
    """Base class for pipeline failures surfaced to callers."""


class ConfigError(FarmrunError, ValueError):
    pass


class InvalidSelectionError(FarmrunError, ValueError):
    """Raised when a test selection is missing the fields its mode needs."""


class RemoteServiceError(FarmrunError):
    """The remote device-testing service rejected or failed a call."""


class UploadError(FarmrunError):
    """Base for upload-and-poll failures; carries the job when one exists."""

    def __init__(self, message: str, job: Optional["UploadJob"] = None) -> None:
        super().__init__(message)
        self.job = job


class UploadCreationError(UploadError):
    pass


class UploadTransferError(UploadError):
    pass


class UploadFailedError(UploadError):
    pass


class UploadTimeoutError(UploadError):
    """Attempt budget exhausted while the remote was still processing.

    Distinct from ``UploadFailedError``: resubmitting with a larger budget may
    succeed.
    """


class SchedulingError(FarmrunError):
    """A run was requested with incomplete or non-successful upload handles."""


class ArtifactNotFoundError(FarmrunError):
    pass


class ExtractionError(FarmrunError):
    pass


class ObjectStoreError(FarmrunError):
    """Transport or backend failure while talking to an object store."""


class VersionConflictError(ObjectStoreError):
    """A conditional write lost against a concurrent writer."""


class HistoryConflictError(FarmrunError):
    pass


class HistoryStoreRaceWarning(UserWarning):
    """Logged when a history write had to be recomputed after a conflict."""
