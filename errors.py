"""
Error taxonomy shared by the gateway, the sync coordinator and the API.

Only ``UnavailableError`` is recoverable: the coordinator answers it with an
optimistic local mutation plus a queued replay. Everything else goes back to
the caller.
"""


class HabitTrackerError(Exception):
    status_code = 500
    default_message = "An error occurred. Please try again."

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(HabitTrackerError):
    status_code = 400
    default_message = "Invalid input"


class NotFoundError(HabitTrackerError):
    status_code = 404
    default_message = "Not found"


class AuthError(HabitTrackerError):
    status_code = 401
    default_message = "User not authenticated"


class UnavailableError(HabitTrackerError):
    status_code = 503
    default_message = "Network error. Please check your connection."


class UnknownError(HabitTrackerError):
    status_code = 500
