"""Exception hierarchy for the HonseFarm operator."""

from typing import Optional


class OperatorError(Exception):
    """Base class for all operator errors."""

    reason = "OperatorError"


class ConfigurationError(OperatorError):
    """A required field is missing or invalid for an enabled component."""

    reason = "ConfigurationError"


class MaterialGenerationError(OperatorError):
    """Random or cryptographic material could not be generated."""

    reason = "MaterialGenerationFailed"


class ApplyError(OperatorError):
    """A control-plane call failed while applying a desired resource."""

    reason = "ApplyFailed"

    def __init__(
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        message: str,
        status: Optional[int] = None,
    ):
        """
        Initialize apply error.

        Args:
            kind: Resource kind
            name: Resource name
            namespace: Resource namespace (None for cluster-scoped kinds)
            message: Failure description
            status: HTTP status reported by the API server, if any
        """
        self.kind = kind
        self.name = name
        self.namespace = namespace
        self.status = status
        location = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} {location}: {message}")


class ReconcileCancelled(OperatorError):
    """The reconcile pass observed a cancellation request."""

    reason = "Cancelled"
