"""
Operator error hierarchy with categorization and retry logic.

This module defines the error types used throughout the mesh operator,
providing clear categorization and integration with kopf's retry mechanisms.
"""

import kopf


class OperatorError(Exception):
    """
    Base error class for all operator-related exceptions.

    Provides categorization, retry behavior, and user guidance for resolution.
    """

    def __init__(
        self,
        message: str,
        category: str,
        retryable: bool = True,
        delay: int = 30,
        user_action: str | None = None,
        cause: Exception | None = None,
    ):
        """
        Initialize operator error.

        Args:
            message: Human-readable error description
            category: Error category (validation, policy, external, ...)
            retryable: Whether kopf should retry this operation
            delay: Suggested retry delay in seconds
            user_action: What user should do to resolve the issue
            cause: Underlying exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.retryable = retryable
        self.delay = delay
        self.user_action = user_action
        self.cause = cause

    def as_kopf_error(self):
        """Convert to appropriate kopf exception type."""
        if self.retryable:
            return kopf.TemporaryError(str(self), delay=self.delay)
        else:
            return kopf.PermanentError(str(self))

    def __str__(self) -> str:
        """Enhanced string representation with user guidance."""
        base_msg = super().__str__()
        if self.user_action:
            return f"{base_msg}\nAction required: {self.user_action}"
        return base_msg


class ValidationError(OperatorError):
    """Malformed declaration, rejected before reconciliation attempts it."""

    def __init__(
        self, message: str, field: str | None = None, user_action: str | None = None
    ):
        action = user_action or "Check resource specification and fix validation errors"
        if field:
            message = f"Validation error in field '{field}': {message}"
        self.field = field
        super().__init__(
            message=message, category="validation", retryable=False, user_action=action
        )


class TemplateInUseError(ValidationError):
    """A constraint template cannot be removed while constraints reference it."""

    def __init__(self, template: str, constraints: list[str]):
        self.template = template
        self.constraints = constraints
        super().__init__(
            message=(
                f"Constraint template '{template}' is still referenced by "
                f"constraints: {', '.join(sorted(constraints))}"
            ),
            user_action="Delete the referencing constraints before the template",
        )


class PolicyViolation(OperatorError):
    """Admission denial caused by a violated constraint."""

    def __init__(self, constraint: str, message: str, violations: list[str] | None = None):
        self.constraint = constraint
        self.violations = violations or []
        super().__init__(
            message=f"Denied by constraint '{constraint}': {message}",
            category="policy",
            retryable=False,
            user_action=f"Change the specification to satisfy constraint '{constraint}'",
        )


class AuthorizationDenied(OperatorError):
    """A call between workloads was not granted by any authorization rule."""

    def __init__(self, source: str, target: str, reason: str):
        self.source = source
        self.target = target
        self.reason = reason
        super().__init__(
            message=f"Authorization denied for {source} -> {target}: {reason}",
            category="authorization",
            retryable=False,
            user_action=(
                f"Add a MeshAuthorizationPolicy rule granting {source} access to {target}"
            ),
        )


class IdentityInvalid(OperatorError):
    """The presented workload identity is expired or cannot be verified."""

    def __init__(self, subject: str, reason: str):
        self.subject = subject
        self.reason = reason
        super().__init__(
            message=f"Identity for '{subject}' rejected: {reason}",
            category="identity",
            retryable=False,
            user_action="Ensure the workload presents its current mesh certificate",
        )


class TemporaryError(OperatorError):
    """Temporary error that should be retried."""

    def __init__(self, message: str, delay: int = 30, user_action: str | None = None):
        super().__init__(
            message=message,
            category="temporary",
            retryable=True,
            delay=delay,
            user_action=user_action
            or "Wait for automatic retry or check system status",
        )


class PermanentError(OperatorError):
    """Permanent error that should not be retried."""

    def __init__(self, message: str, user_action: str | None = None):
        super().__init__(
            message=message,
            category="permanent",
            retryable=False,
            user_action=user_action or "Manual intervention required to resolve",
        )


class ExternalServiceError(OperatorError):
    """Error communicating with external services."""

    def __init__(
        self,
        service: str,
        message: str,
        retryable: bool = True,
        delay: int = 60,
        user_action: str | None = None,
    ):
        action = user_action or f"Check {service} connectivity and credentials"
        super().__init__(
            message=f"{service} error: {message}",
            category="external",
            retryable=retryable,
            delay=delay,
            user_action=action,
        )


class TransientFetchError(ExternalServiceError):
    """Fetching a value from the external secret store failed; retried later."""

    def __init__(self, store: str, key: str, message: str, delay: int = 30):
        self.store = store
        self.key = key
        super().__init__(
            service=f"Secret store '{store}'",
            message=f"failed to fetch '{key}': {message}",
            retryable=True,
            delay=delay,
        )


class SecretStoreUnavailable(TransientFetchError):
    """The external secret store is unreachable as a whole."""


class SourceUnavailableError(ExternalServiceError):
    """The desired-state source cannot be read at all."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(
            service=f"Desired-state source '{source}'",
            message=message,
            retryable=True,
            user_action="Check that the source checkout is mounted and readable",
        )


class ConvergenceError(OperatorError):
    """Applying a single unit failed; isolated from sibling units."""

    def __init__(
        self,
        unit: str,
        message: str,
        retryable: bool = True,
        delay: int = 30,
    ):
        self.unit = unit
        super().__init__(
            message=f"Failed to converge {unit}: {message}",
            category="convergence",
            retryable=retryable,
            delay=delay,
            user_action="Inspect operator logs and the declared specification",
        )


class RouteNotFound(OperatorError):
    """No route rule matches the request; surfaced as a client-visible 404."""

    def __init__(self, host: str, path: str):
        self.host = host
        self.path = path
        super().__init__(
            message=f"No route for {host}{path}",
            category="routing",
            retryable=False,
            user_action="Declare a MeshRoute for this host and path",
        )


class KubernetesAPIError(ExternalServiceError):
    """Error communicating with Kubernetes API."""

    def __init__(self, message: str, reason: str | None = None, retryable: bool = True):
        if reason:
            message = f"{message} (reason: {reason})"

        # Some K8s errors are not retryable
        non_retryable_reasons = {"Forbidden", "Unauthorized", "Invalid"}
        if reason in non_retryable_reasons:
            retryable = False

        super().__init__(
            service="Kubernetes API",
            message=message,
            retryable=retryable,
            user_action="Check RBAC permissions and cluster connectivity",
        )


class ConfigurationError(OperatorError):
    """Error in operator or resource configuration."""

    def __init__(
        self, message: str, retryable: bool = False, user_action: str | None = None
    ):
        super().__init__(
            message=message,
            category="configuration",
            retryable=retryable,
            user_action=user_action or "Review and correct configuration",
        )
