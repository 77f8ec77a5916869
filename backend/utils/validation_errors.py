"""
Structured Error Utilities

Provides standardized error responses for validation failures and
reconciliation engine errors. Helps clients distinguish bad input,
missing resources, state conflicts and temporary unavailability.

Error Response Format:
{
    "error": "missing_parameter" | "invalid_parameter" | "validation_error" | <engine error code>,
    "parameter": "session_id",
    "message": "session_id is required"
}
"""

import uuid
from typing import Any, Dict, Optional, Type

from fastapi import HTTPException, status

from reconciliation.errors import (
    AccountNotLinkedError,
    CandidateStoreUnavailableError,
    DataIntegrityError,
    ExceptionAlreadyResolvedError,
    ExceptionNotFoundError,
    InvalidConfigurationError,
    InvalidMatchStateError,
    InvalidPeriodError,
    InvalidResolutionError,
    InvalidRuleError,
    LedgerEntryNotFoundError,
    MatchNotFoundError,
    ReconciliationError,
    SessionFailedError,
    SessionLockedError,
    SessionNotFoundError,
    SessionNotInProgressError,
    TransactionNotFoundError,
)


class ValidationErrorResponse:
    """Structured validation error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        """
        Create a missing parameter error response.

        Args:
            parameter: Name of the missing parameter
            message: Optional custom message

        Returns:
            Structured error dict
        """
        return {
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Create an invalid parameter error response.

        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value (optional, for debugging)

        Returns:
            Structured error dict
        """
        response = {
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]  # Truncate for safety
        return response

    @staticmethod
    def reconciliation_error(error: ReconciliationError) -> dict:
        """Structured body for an engine error."""
        response = error.to_dict()
        response.setdefault("parameter", None)
        return response


def raise_missing_parameter(parameter: str, message: Optional[str] = None):
    """
    Raise HTTPException with structured missing parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.missing_parameter(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None):
    """
    Raise HTTPException with structured invalid parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.invalid_parameter(parameter, message, value)
    )


def validate_required_uuid(value: Optional[str], parameter: str) -> str:
    """
    Validate that a required UUID parameter is present and valid.

    Args:
        value: The value to validate
        parameter: Name of the parameter for error messages

    Returns:
        The validated value

    Raises:
        HTTPException with structured error if validation fails
    """
    if not value:
        raise_missing_parameter(parameter)

    try:
        uuid.UUID(value)
        return value
    except ValueError:
        raise_invalid_parameter(
            parameter,
            f"{parameter} must be a valid UUID format",
            value
        )


# Most specific classes first; the first isinstance hit wins
ERROR_STATUS_CODES: Dict[Type[ReconciliationError], int] = {
    InvalidPeriodError: status.HTTP_400_BAD_REQUEST,
    InvalidConfigurationError: status.HTTP_400_BAD_REQUEST,
    InvalidResolutionError: status.HTTP_400_BAD_REQUEST,
    InvalidRuleError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AccountNotLinkedError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    MatchNotFoundError: status.HTTP_404_NOT_FOUND,
    ExceptionNotFoundError: status.HTTP_404_NOT_FOUND,
    TransactionNotFoundError: status.HTTP_404_NOT_FOUND,
    LedgerEntryNotFoundError: status.HTTP_404_NOT_FOUND,
    SessionNotInProgressError: status.HTTP_409_CONFLICT,
    SessionLockedError: status.HTTP_409_CONFLICT,
    ExceptionAlreadyResolvedError: status.HTTP_409_CONFLICT,
    InvalidMatchStateError: status.HTTP_409_CONFLICT,
    DataIntegrityError: status.HTTP_409_CONFLICT,
    CandidateStoreUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    SessionFailedError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_code_for(error: ReconciliationError) -> int:
    for error_class, code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_class):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def raise_reconciliation_error(error: ReconciliationError):
    """
    Raise HTTPException carrying the structured body of an engine error.

    Raises:
        HTTPException with the status mapped from the error class
    """
    raise HTTPException(
        status_code=status_code_for(error),
        detail=ValidationErrorResponse.reconciliation_error(error)
    ) from error
