"""
Utils Package

Provides utility modules for:
- errors: Engine error kinds and structured error responses
"""

from .errors import (
    DeadlineEngineError,
    ValidationError,
    ConflictError,
    NotFoundError,
    NoApplicableRuleError,
    error_response,
    success_response,
)

__all__ = [
    'DeadlineEngineError',
    'ValidationError',
    'ConflictError',
    'NotFoundError',
    'NoApplicableRuleError',
    'error_response',
    'success_response',
]
