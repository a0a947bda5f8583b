"""Summary: Error taxonomy for connection and entitlement operations.

Importance: Gives callers specific, renderable failure reasons instead of generic errors.
Alternatives: Return status strings or raise HTTPException from services.
"""

from __future__ import annotations


class CareBridgeError(Exception):
    """Summary: Base class for all typed operation failures.

    Importance: Lets the API layer translate every failure with one handler.
    Alternatives: Catch each error type separately at every call site.
    """

    code = "internal"
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class Unauthenticated(CareBridgeError):
    code = "unauthenticated"
    status_code = 401


class Forbidden(CareBridgeError):
    code = "forbidden"
    status_code = 403


class NotFound(CareBridgeError):
    code = "not_found"
    status_code = 404


class InvalidArgument(CareBridgeError):
    code = "invalid_argument"
    status_code = 400


class InvalidState(CareBridgeError):
    code = "invalid_state"
    status_code = 409


class Internal(CareBridgeError):
    code = "internal"
    status_code = 500
