"""Domain errors raised by the console components.

The HTTP layer maps every ``ConsoleError`` to a JSON body ``{"detail": ...}``
with the error's status code.
"""
from dataclasses import dataclass


class ConsoleError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ConsoleError):
    """Malformed or missing input."""
    status_code = 400


class NotFoundError(ConsoleError):
    """Entity or slug does not resolve."""
    status_code = 404


class OwnershipError(ConsoleError):
    """Authenticated, but not the owner of the entity."""
    status_code = 403


class PermissionDeniedError(ConsoleError):
    """Authenticated, but the role does not allow the operation."""
    status_code = 403


class UnauthenticatedError(ConsoleError):
    status_code = 401


@dataclass
class PartialImportFailure:
    """One import row that was valid but could not be committed.

    Collected in the commit result, never raised.
    """
    row: int
    key: str
    message: str

    def __str__(self) -> str:
        return f"Row {self.row} ({self.key}): {self.message}"
