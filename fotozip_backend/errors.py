from __future__ import annotations


class ServiceError(Exception):
    """Error with a stable machine-readable code and an HTTP status."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class UploadRejected(ServiceError):
    status_code = 400
    code = "UPLOAD_ERROR"


class ArchiveNotFound(ServiceError):
    status_code = 404
    code = "FILE_NOT_FOUND"


class ArchiveBuildError(ServiceError):
    status_code = 500
    code = "COMPRESSION_ERROR"


class SessionBusy(ServiceError):
    status_code = 409
    code = "SESSION_BUSY"


class IntakeError(ServiceError):
    status_code = 500
    code = "STORAGE_ERROR"
