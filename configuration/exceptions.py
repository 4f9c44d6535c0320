"""
Error taxonomy for the configuration service.

Validation errors are raised before any transaction begins. Store errors
abort the surrounding transaction. Deployment failures are normally
returned as data; DeploymentPartialFailure exists for callers that prefer
an exception.
"""

from typing import List, Optional, Sequence, Tuple


class ConfigurationError(Exception):
    """Base class for all configuration service errors."""


class ValidationError(ConfigurationError):
    """One or more values failed validation. Nothing was written."""

    def __init__(
        self,
        errors: Sequence[str],
        warnings: Optional[Sequence[str]] = None,
        failures: Optional[Sequence[Tuple[str, str, str]]] = None,
    ):
        self.errors: List[str] = list(errors)
        self.warnings: List[str] = list(warnings or [])
        # (category, key, message) triples for batch operations
        self.failures: List[Tuple[str, str, str]] = list(failures or [])
        super().__init__("; ".join(self.errors) or "Validation failed")


class NotFoundError(ConfigurationError):
    """The requested scope, template or record does not exist."""


class VersionNotFoundError(NotFoundError):
    def __init__(self, version: int):
        self.version = version
        super().__init__(f"Configuration version {version} not found")


class NothingToDeployError(NotFoundError):
    """The active set selected for deployment is empty."""


class ConflictError(ConfigurationError):
    """The request conflicts with the current state of the store."""


class VersionConflictError(ConflictError):
    """A concurrent writer claimed the same version; retry the operation."""


class TransientStoreError(ConfigurationError):
    """The database is unavailable."""


class DeploymentPartialFailure(ConfigurationError):
    def __init__(self, result):
        self.result = result
        super().__init__(
            f"Deployment {result.deployment_id} failed for targets: "
            f"{', '.join(result.failed_targets)}"
        )
