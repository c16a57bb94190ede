class LibraryError(Exception):
    """Base exception for circulation errors.

    Args:
        message     Human readable description
        entity_id   Id of the offending record, if any
    """

    kind = 'error'
    status_code = 500

    def __init__(self, message, entity_id=None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id

    def to_dict(self):
        return {'error': self.message, 'kind': self.kind, 'entityId': self.entity_id}


class NotFoundError(LibraryError):
    """Raised when a referenced library, title, inventory, copy, request or record is missing."""

    kind = 'not_found'
    status_code = 404


class ConflictError(LibraryError):
    """Raised when an operation is invalid given the current state."""

    kind = 'conflict'
    status_code = 409


class InsufficientAvailabilityError(LibraryError):
    """Raised when no available copy exists, at request time or at approval time.

    Not a ConflictError: the caller can wait or try another branch.
    """

    kind = 'insufficient_availability'
    status_code = 409


class ForbiddenError(LibraryError):
    """Raised when the caller has no rights over this particular resource."""

    kind = 'forbidden'
    status_code = 403


class ValidationError(LibraryError):
    """Raised for malformed input, before any state is touched."""

    kind = 'validation'
    status_code = 400
