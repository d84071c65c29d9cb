class LendingError(RuntimeError):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(LendingError):
    status_code = 400


class StateConflict(LendingError):
    status_code = 400


class NotFound(LendingError):
    status_code = 404


class AuthenticationFailed(LendingError):
    status_code = 401


class AccessDenied(LendingError):
    status_code = 403
