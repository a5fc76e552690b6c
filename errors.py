"""Error types raised by the services and rendered by the Flask app."""


class CinelogError(Exception):
    """Base error carrying the HTTP status it maps to"""

    status_code = 500

    def __init__(self, message, status_code=None, detail=None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        body = {'message': self.message}
        if self.detail:
            body['error'] = self.detail
        return body


class ValidationError(CinelogError):
    status_code = 400


class AuthError(CinelogError):
    status_code = 401


class AuthzError(CinelogError):
    status_code = 403


class ConflictError(CinelogError):
    status_code = 409


class InfraError(CinelogError):
    """Storage or filesystem failure"""

    status_code = 500
