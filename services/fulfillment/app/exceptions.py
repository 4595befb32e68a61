"""
Domain exceptions for the Fulfillment service.

Engine modules raise these; the API layer renders them as
``{"detail": ...}`` with the carried status code.
"""
from fastapi import status


class FulfillmentError(Exception):
    """Base class for errors that map onto an HTTP response."""
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationFailed(FulfillmentError):
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthorized(FulfillmentError):
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFound(FulfillmentError):
    status_code = status.HTTP_404_NOT_FOUND


class StateConflict(FulfillmentError):
    """The entity exists but is in the wrong state for the operation."""
    status_code = status.HTTP_400_BAD_REQUEST


class ResourceConflict(FulfillmentError):
    """A uniqueness rule was violated (duplicate order, lost race)."""
    status_code = status.HTTP_409_CONFLICT


class ServiceUnavailable(FulfillmentError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
