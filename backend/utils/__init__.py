"""
Utils Package

Provides utility modules for:
- validation_errors: Structured HTTP error bodies for validation and engine errors
"""

from .validation_errors import (
    ValidationErrorResponse,
    raise_missing_parameter,
    raise_invalid_parameter,
    raise_reconciliation_error,
    status_code_for,
    validate_required_uuid,
)

__all__ = [
    'ValidationErrorResponse',
    'raise_missing_parameter',
    'raise_invalid_parameter',
    'raise_reconciliation_error',
    'status_code_for',
    'validate_required_uuid',
]
