"""
Error handling module for the mesh operator.

This module provides a comprehensive error hierarchy that integrates with kopf
and provides clear categorization for different types of failures.
"""

from .operator_errors import (
    AuthorizationDenied,
    ConfigurationError,
    ConvergenceError,
    ExternalServiceError,
    IdentityInvalid,
    KubernetesAPIError,
    OperatorError,
    PermanentError,
    PolicyViolation,
    RouteNotFound,
    SecretStoreUnavailable,
    SourceUnavailableError,
    TemplateInUseError,
    TemporaryError,
    TransientFetchError,
    ValidationError,
)

__all__ = [
    "OperatorError",
    "ValidationError",
    "TemplateInUseError",
    "PolicyViolation",
    "AuthorizationDenied",
    "IdentityInvalid",
    "TemporaryError",
    "PermanentError",
    "ExternalServiceError",
    "TransientFetchError",
    "SecretStoreUnavailable",
    "SourceUnavailableError",
    "ConvergenceError",
    "RouteNotFound",
    "KubernetesAPIError",
    "ConfigurationError",
]
