from __future__ import annotations


class KeyRentError(RuntimeError):
    """Base for domain errors; the API layer maps `status_code` onto the response."""

    status_code = 500

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__


class Unauthorized(KeyRentError):
    status_code = 401


class Forbidden(KeyRentError):
    status_code = 403


class NotFound(KeyRentError):
    status_code = 404


class Conflict(KeyRentError):
    status_code = 409


class ValidationError(KeyRentError):
    status_code = 400


class RateLimited(KeyRentError):
    status_code = 429


class GatewayError(KeyRentError):
    """The payment gateway could not be reached or answered with an error."""

    status_code = 502
