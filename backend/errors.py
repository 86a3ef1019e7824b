"""
Error taxonomy for authorization and mutation failures.

Every error is an HTTPException so it short-circuits a route handler the
same way the rest of the API does, with the status code baked in.
"""

from fastapi import HTTPException, status


class NotFound(HTTPException):
    """Entity is absent, or present but hidden from the requester."""

    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class Forbidden(HTTPException):
    """Entity is acknowledged but the action is denied."""

    def __init__(self, detail: str = "Forbidden"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class StorageFailure(Forbidden):
    """A permission lookup failed; treated as a denial."""

    def __init__(self, detail: str = "Permission check failed"):
        super().__init__(detail=detail)


class Conflict(HTTPException):
    """Unique-constraint violation (duplicate membership, pending invite, ...)."""

    def __init__(self, detail: str = "Conflict"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class Gone(HTTPException):
    def __init__(self, detail: str = "Gone"):
        super().__init__(status_code=status.HTTP_410_GONE, detail=detail)


class ValidationFailed(HTTPException):
    def __init__(self, detail: str = "Validation failed"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
