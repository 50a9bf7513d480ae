"""Exceptions raised by the outbound call gateway."""


class GatewayError(Exception):
    """An outbound call failed in a way the caller must handle."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthorizationError(GatewayError):
    """
    The server answered 401. The credential that was sent has already
    been invalidated in the store by the time this is raised.
    """


class AccessForbidden(GatewayError):
    """The terminal handshake was refused because developer mode is disabled."""
