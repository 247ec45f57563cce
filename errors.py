"""Domain errors raised by the service layer.

Handlers in ``main`` turn these into HTTP responses; authentication and
permission failures stay as ``HTTPException`` raised by ``auth_utils``.
"""


class LibraryError(Exception):
    status_code = 500
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(LibraryError):
    status_code = 404
    kind = "not_found"


class InvalidOperation(LibraryError):
    status_code = 400
    kind = "invalid_operation"


class InvalidState(InvalidOperation):
    kind = "invalid_state"


class Conflict(LibraryError):
    status_code = 409
    kind = "conflict"


class ExternalServiceFailure(LibraryError):
    status_code = 500
    kind = "external_service_failure"
