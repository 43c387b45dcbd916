"""
Provisioner - Error Taxonomy

Every failure raised by the engine derives from ProvisionerError.

- ConfigurationError: the declarations cannot be turned into a plan.
  Fatal, nothing is attempted.
- ProviderError: a remote call was rejected or timed out. Localized to
  the failing branch of the plan.
- StateCorruptionError: the state document is unreadable or
  inconsistent. Fatal, requires manual reconciliation before any apply.
"""

from typing import Any, Dict, List, Optional


class ProvisionerError(Exception):
    """Base exception for all provisioner errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(ProvisionerError):
    """Declarations are invalid; no operation may be attempted."""


class DeclarationError(ConfigurationError):
    """YAML syntax, structure or model validation failure."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        super().__init__(message, {"errors": self.errors} if self.errors else None)


class InvalidExpressionError(ConfigurationError):
    """A ${...} expression could not be parsed or evaluated."""


class UnresolvedReferenceError(ConfigurationError):
    """A reference or constraint names a resource that is not declared."""

    def __init__(self, message: str, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(message, {"source": source, "target": target})


class CycleError(ConfigurationError):
    """The dependency edges do not form a DAG."""

    def __init__(self, path: List[str]):
        self.path = path
        super().__init__(f"Dependency cycle detected: {' -> '.join(path)}")


class AmbiguousCountIndexError(ConfigurationError):
    """Repeated resources cannot be matched uniquely to prior state."""

    def __init__(self, family: str, addresses: List[str], reason: str):
        self.family = family
        self.addresses = addresses
        super().__init__(
            f"Cannot match state for '{family}': {reason}",
            {"addresses": addresses},
        )


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class ProviderError(ProvisionerError):
    """Remote provider call rejected."""

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.address = address
        super().__init__(message, details)


class TransientProviderError(ProviderError):
    """Provider failure that may succeed when retried within the run."""


class ProviderTimeoutError(ProviderError):
    """Provider call exceeded the per-operation timeout."""


class ResourceNotFoundError(ProviderError):
    """Provider has no resource with the given identifier."""


# =============================================================================
# STATE ERRORS
# =============================================================================

class StateCorruptionError(ProvisionerError):
    """State document unreadable or inconsistent."""
