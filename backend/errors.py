class AttendanceError(Exception):
    """Base error for the scan pipeline; carries the HTTP status to answer with."""

    status_code = 500
    default_message = "Attendance processing failed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ValidationError(AttendanceError):
    status_code = 400
    default_message = "Invalid request."


class Unauthenticated(AttendanceError):
    status_code = 401
    default_message = "Unauthenticated device."


class MissingCredential(Unauthenticated):
    default_message = "Missing Device Secret"


class InvalidCredential(Unauthenticated):
    default_message = "Invalid Device Secret"


class InternalError(AttendanceError):
    status_code = 500
    default_message = "Internal store failure."


class PersistenceError(InternalError):
    default_message = "Failed to persist attendance log."


class Timeout(AttendanceError):
    status_code = 504
    default_message = "Attendance request deadline exceeded."
