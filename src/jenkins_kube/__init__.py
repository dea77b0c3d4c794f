"""jenkins-kube: converge Jenkins and an existing Kubernetes cluster.

This package applies the namespace, RBAC objects and agent pod template a
Jenkins Kubernetes cloud needs, issues a bounded-lifetime service account
token and renders the controller's Configuration-as-Code document.

Example usage:
    from jenkins_kube import Cluster, load_config

    cfg = load_config("desired-state.yaml")
    cluster = Cluster(kubeconfig=cfg.settings.kubeconfig)
    desired = cfg.desired_state(detected_endpoint=cluster.endpoint)
"""

__version__ = "0.1.0"

from jenkins_kube.cli import cli
from jenkins_kube.cluster import Cluster
from jenkins_kube.config import load_config
from jenkins_kube.exceptions import (
    ActivationError,
    ActivationRejectedError,
    ActivationTimeoutError,
    ApplyFailedError,
    ClusterConnectionError,
    ClusterUnauthorizedError,
    ClusterUnreachableError,
    ConfigurationError,
    CredentialUnavailableError,
    JenkinsKubeError,
    PreconditionFailedError,
    ReconcileCancelled,
    RenderInvalidError,
)
from jenkins_kube.reconciler import Reconciler
from jenkins_kube.renderer import render

__all__ = [
    # Version
    "__version__",
    # Main CLI
    "cli",
    # Classes and functions
    "Cluster",
    "Reconciler",
    "load_config",
    "render",
    # Exceptions
    "JenkinsKubeError",
    "ConfigurationError",
    "PreconditionFailedError",
    "ClusterConnectionError",
    "ClusterUnreachableError",
    "ClusterUnauthorizedError",
    "ApplyFailedError",
    "CredentialUnavailableError",
    "RenderInvalidError",
    "ActivationError",
    "ActivationTimeoutError",
    "ActivationRejectedError",
    "ReconcileCancelled",
]
