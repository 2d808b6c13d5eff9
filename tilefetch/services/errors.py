from __future__ import annotations


class ImageryError(Exception):
    """Base class for failures raised while resolving or fetching imagery."""


class GeometryError(ImageryError):
    """Raised when a tile coordinate cannot be converted into a bounding box."""


class UnsupportedApiError(ImageryError):
    """Raised when a layer cannot be served by any usable remote interface."""


class NetworkFailure(ImageryError):
    """Raised when the remote service cannot produce an image for a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthorizationError(ImageryError):
    """Raised when the remote service rejects the credential attached to a request."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ChunkPartialFailure(ImageryError):
    """Raised when any sub-request of a chunk plan fails."""

    def __init__(self, row: int, col: int, cause: Exception) -> None:
        super().__init__(f"chunk at row {row}, column {col} failed: {cause}")
        self.row = row
        self.col = col
        self.cause = cause


class InvalidHandleUsage(ImageryError):
    """Raised when a display handle is read or released after it was released."""
