from __future__ import annotations


class TourhubError(Exception):
    """Base for errors raised by the core modules; the HTTP layer maps status_code."""

    status_code = 400

    def __init__(self, message: str, data: dict | None = None):
        super().__init__(message)
        self.message = message
        self.data = data


class NotFound(TourhubError):
    status_code = 404


class Forbidden(TourhubError):
    status_code = 403


class InvalidState(TourhubError):
    status_code = 409


class BookingTerminal(InvalidState):
    pass


class AlreadyCancelled(InvalidState):
    pass


class AlreadyCompleted(InvalidState):
    pass


class CapacityExceeded(TourhubError):
    status_code = 409


class DuplicateBooking(TourhubError):
    status_code = 409


class QuotaExceeded(TourhubError):
    status_code = 403


class GatewayError(TourhubError):
    status_code = 502
