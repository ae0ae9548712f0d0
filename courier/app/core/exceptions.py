"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


# Parcel workflow errors

class InvalidStateError(AppException):
    """Raised when a parcel in a terminal state receives a transition."""

    def __init__(self, parcel_id: int, current_status: str):
        super().__init__(
            message=f"Parcel {parcel_id} is {current_status} and cannot change any further",
            error_code="ERR_PARCEL_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"parcel_id": parcel_id, "status": current_status}
        )


class IllegalTransitionError(AppException):
    """Raised when an action is not legal for the parcel's current status."""

    def __init__(self, current_status: str, action: str, allowed_actions: list = None):
        super().__init__(
            message=f"Action '{action}' is not allowed while parcel is {current_status}",
            error_code="ERR_PARCEL_002",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "status": current_status,
                "action": action,
                "allowed_actions": allowed_actions or []
            }
        )


class TooLateToReassignError(AppException):
    """Raised when reassignment is attempted after physical pickup."""

    def __init__(self, parcel_id: int, current_status: str):
        super().__init__(
            message="Parcel has already been picked up and can no longer be reassigned",
            error_code="ERR_PARCEL_003",
            status_code=status.HTTP_409_CONFLICT,
            details={"parcel_id": parcel_id, "status": current_status}
        )


class ConcurrentModificationError(AppException):
    """Raised when another transition on the same parcel won the race."""

    def __init__(self, parcel_id: int):
        super().__init__(
            message="Parcel was modified by another request, reload it and try again",
            error_code="ERR_PARCEL_004",
            status_code=status.HTTP_409_CONFLICT,
            details={"parcel_id": parcel_id}
        )


class NotParcelCustomerError(AppException):
    """Raised when someone other than the recipient completes a parcel."""

    def __init__(self, parcel_id: int):
        super().__init__(
            message="Only the recipient of this delivery can mark it as completed",
            error_code="ERR_PARCEL_005",
            status_code=status.HTTP_403_FORBIDDEN,
            details={"parcel_id": parcel_id}
        )


class NotAssignedDriverError(AppException):
    """Raised when a driver acts on a parcel that is not assigned to them."""

    def __init__(self, parcel_id: int, actor_id: Any):
        super().__init__(
            message=f"Parcel {parcel_id} is not assigned to this driver",
            error_code="ERR_PARCEL_007",
            status_code=status.HTTP_403_FORBIDDEN,
            details={"parcel_id": parcel_id, "actor_id": actor_id}
        )


class InvalidTransitionPayloadError(AppException):
    """Raised when an action is missing data it needs (e.g. a driver id)."""

    def __init__(self, action: str, message: str):
        super().__init__(
            message=message,
            error_code="ERR_PARCEL_006",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"action": action}
        )


class DriverUnavailableError(AppException):
    """Raised when the target driver is not currently available."""

    def __init__(self, driver_id: int):
        super().__init__(
            message="Driver is not currently available",
            error_code="ERR_DRIVER_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"driver_id": driver_id}
        )


class SameDriverError(AppException):
    """Raised when a parcel is reassigned to the driver it already has."""

    def __init__(self, driver_id: int):
        super().__init__(
            message="Parcel is already assigned to this driver",
            error_code="ERR_DRIVER_002",
            status_code=status.HTTP_409_CONFLICT,
            details={"driver_id": driver_id}
        )


# Geospatial input errors

class InvalidAddressError(AppException):
    """Raised when an address is too short to be looked up."""

    def __init__(self, address: str):
        super().__init__(
            message="Address must be at least 3 characters long",
            error_code="ERR_GEO_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"address": address}
        )


class InvalidCoordinatesError(AppException):
    """Raised for NaN or out-of-range coordinates."""

    def __init__(self, lat: Any, lng: Any):
        super().__init__(
            message="Coordinates must be finite numbers within latitude/longitude range",
            error_code="ERR_GEO_002",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"lat": str(lat), "lng": str(lng)}
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER",
        503: "ERR_SERVICE_UNAVAILABLE"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": exc.errors()
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception(
        "Unhandled exception",
        extra={"path": request.url.path, "error_type": type(exc).__name__}
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
