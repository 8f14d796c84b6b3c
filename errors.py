"""Errors shared by the storage backends and the API layer."""


class StoreError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        self.message = message or self.message


class ValidationError(StoreError):
    status_code = 400
    message = "Invalid request data"


class DuplicateError(ValidationError):
    """A unique name (category name, admin username) is already taken."""

    message = "Record already exists"


class NotFoundError(StoreError):
    status_code = 404
    message = "Not found"


class AuthError(StoreError):
    status_code = 401
    message = "Authentication required"


class StorageError(StoreError):
    """The backing store failed: connection, SQL, or file I/O."""

    status_code = 500
    message = "Storage backend failure"
