"""Custom exceptions for jenkins-kube.

This module defines the exception hierarchy used throughout the application.
Every exception names the reconciliation stage it belongs to and the process
exit code the CLI reports for it, so a failed run can be diagnosed from the
terminal message alone.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from jenkins_kube.models import AppliedSet, ResourceIdentity


class JenkinsKubeError(Exception):
    """Base exception for all jenkins-kube errors.

    All custom exceptions in this package inherit from this class,
    allowing callers to catch all jenkins-kube errors with a single
    except clause if desired.
    """

    stage: str = "run"
    exit_code: int = 1


class ConfigurationError(JenkinsKubeError):
    """Raised when the desired-state configuration cannot be loaded.

    This can occur when:
    - The config file does not exist or is not a YAML mapping
    - A required option (controller URL, tunnel address) is missing
    - A duration such as credentialTTL cannot be parsed
    """

    stage = "configuration"


class PreconditionFailedError(JenkinsKubeError):
    """Raised when the cluster cannot be used before any mutation happens."""

    stage = "probe"
    exit_code = 2


class ClusterConnectionError(PreconditionFailedError):
    """Raised when the kubeconfig is invalid, missing, or has no usable context."""


class ClusterUnreachableError(PreconditionFailedError):
    """Raised when the Kubernetes API server does not answer in time.

    This can occur when:
    - The cluster is not running
    - The API server address is wrong
    - The network path to the API server is blocked
    """


class ClusterUnauthorizedError(PreconditionFailedError):
    """Raised when the API server rejects the kubeconfig credentials."""


class ApplyFailedError(JenkinsKubeError):
    """Raised when a resource object could not be created or updated.

    Objects applied before the failure stay applied; re-running the
    reconciler resumes from the failing object.

    Attributes:
        applied: Objects converged before the failure.
        failed_at: Identity of the object that failed.
        reason: Human readable failure reason.
        retryable: True for transient conditions (network, server errors).

    """

    stage = "apply"
    exit_code = 3

    def __init__(
        self,
        *,
        applied: "AppliedSet",
        failed_at: "ResourceIdentity",
        reason: str,
        retryable: bool,
    ) -> None:
        super().__init__(f"Failed to apply {failed_at}: {reason}")
        self.applied = applied
        self.failed_at = failed_at
        self.reason = reason
        self.retryable = retryable


class CredentialUnavailableError(JenkinsKubeError):
    """Raised when no bounded-lifetime token can be obtained.

    This typically means:
    - The service account does not exist
    - The cluster does not serve the TokenRequest API
    - The kubeconfig user may not create service account tokens
    """

    stage = "credential"
    exit_code = 4


class RenderInvalidError(JenkinsKubeError):
    """Raised when the controller configuration would be malformed."""

    stage = "render"
    exit_code = 5


class ActivationError(JenkinsKubeError):
    """Base class for failures while bringing the controller live."""

    stage = "activate"
    exit_code = 6


class ActivationTimeoutError(ActivationError):
    """Raised when the controller does not become live within the maximum wait."""


class ActivationRejectedError(ActivationError):
    """Raised when the controller is up but refuses the configuration.

    Attributes:
        detail: Rejection detail reported by the controller.

    """

    exit_code = 7

    def __init__(self, message: str, detail: str = "") -> None:
        super().__init__(message)
        self.detail = detail


class ReconcileCancelled(JenkinsKubeError):
    """Raised at a stage checkpoint when the run was asked to stop."""

    exit_code = 130
