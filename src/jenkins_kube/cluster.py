"""Kubernetes cluster connection and connectivity probe.

This module provides the Cluster class, which loads the kubeconfig, picks
the context to work with and verifies the API server is reachable and
accepts the credentials before anything is changed.
"""

import click
import questionary
from icecream import ic
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError, MaxRetryError

from jenkins_kube import console
from jenkins_kube.exceptions import (
    ClusterConnectionError,
    ClusterUnauthorizedError,
    ClusterUnreachableError,
)
from jenkins_kube.models import ClusterInfo
from jenkins_kube.styles import POINTER, PROMPT_STYLE, QMARK

_KUBECONFIG_HINT = (
    "Provide a valid kubeconfig from the existing cluster, for example: "
    "scp user@k8s-master:/etc/kubernetes/admin.conf ./kubeconfig"
)


class Cluster:
    """Connection to the Kubernetes cluster that hosts the build agents.

    Attributes:
        kubeconfig: Path to the kubeconfig file, or None for the default.
        context: The active Kubernetes context name.
        configuration: Client configuration built from the kubeconfig.
        api_client: Shared API client used by every stage.

    """

    def __init__(
        self,
        *,
        kubeconfig: str | None = None,
        context: str | None = None,
        select_context: bool = False,
        endpoint: str | None = None,
    ) -> None:
        """Load the kubeconfig and build the API client.

        Args:
            kubeconfig: Path to the kubeconfig file.
            context: Context to use; None means the current context.
            select_context: If True, prompt the user to select a context.
            endpoint: API server URL overriding the kubeconfig server.

        Raises:
            ClusterConnectionError: If the kubeconfig is invalid or missing.

        """
        self.kubeconfig: str | None = kubeconfig
        self.context: str = self._set_context(kubeconfig=kubeconfig, context=context, select_context=select_context)
        self.configuration = client.Configuration()
        try:
            config.load_kube_config(
                config_file=kubeconfig,
                context=self.context,
                client_configuration=self.configuration,
            )
        except (ConfigException, OSError) as e:
            raise ClusterConnectionError(f"Cannot load kubeconfig: {e}. {_KUBECONFIG_HINT}") from e

        if endpoint:
            self.configuration.host = endpoint.rstrip("/")
        # Fail fast; retry policy belongs to the operator
        self.configuration.retries = 0
        self.api_client = client.ApiClient(self.configuration)
        ic(self.configuration.host)

    @staticmethod
    def _set_context(*, kubeconfig: str | None, context: str | None, select_context: bool) -> str:
        """Resolve the Kubernetes context to use.

        Raises:
            ClusterConnectionError: If kubeconfig is invalid or missing.
            click.Abort: If the user cancels context selection.

        """
        try:
            contexts, current_context = config.list_kube_config_contexts(config_file=kubeconfig)
        except (ConfigException, OSError) as e:
            raise ClusterConnectionError(f"Invalid or missing kubeconfig: {e}. {_KUBECONFIG_HINT}") from e

        context_names: list[str] = [ctx["name"] for ctx in contexts]
        if select_context:
            selected: str | None = questionary.select(
                "Select context to work with",
                choices=context_names,
                style=PROMPT_STYLE,
                pointer=POINTER,
                qmark=QMARK,
            ).ask()
            if selected is None:
                console.warning("Context selection cancelled.")
                raise click.Abort()
            context = selected
        elif context is not None:
            if context not in context_names:
                raise ClusterConnectionError(f"Context '{context}' not found in kubeconfig")
        elif current_context is None:
            raise ClusterConnectionError(f"Kubeconfig has no current context. {_KUBECONFIG_HINT}")
        else:
            context = str(current_context["name"])

        console.action(f"Working with {console.highlight(context)} cluster")
        return context

    @property
    def endpoint(self) -> str:
        """The API server URL requests are sent to."""
        return str(self.configuration.host)

    def core_v1(self) -> client.CoreV1Api:
        return client.CoreV1Api(self.api_client)

    def rbac_v1(self) -> client.RbacAuthorizationV1Api:
        return client.RbacAuthorizationV1Api(self.api_client)

    def probe(self, timeout: float = 10.0) -> ClusterInfo:
        """Verify the API server is reachable and accepts the credentials.

        Issues a single read-only version request; nothing is retried.

        Args:
            timeout: Seconds to wait for the API server.

        Returns:
            ClusterInfo describing the server that answered.

        Raises:
            ClusterUnreachableError: On network errors, timeouts or server errors.
            ClusterUnauthorizedError: If the credentials are rejected.

        """
        with console.spinner(f"Connecting to {self.endpoint}..."):
            try:
                version = client.VersionApi(self.api_client).get_code(_request_timeout=timeout)
            except ApiException as e:
                if e.status in (401, 403):
                    raise ClusterUnauthorizedError(
                        f"API server {self.endpoint} rejected the credentials: HTTP {e.status} {e.reason}"
                    ) from e
                raise ClusterUnreachableError(
                    f"API server {self.endpoint} answered HTTP {e.status} {e.reason}"
                ) from e
            except MaxRetryError as e:
                raise ClusterUnreachableError(
                    f"Failed to connect to the Kubernetes cluster at {self.endpoint}: {e.reason}"
                ) from e
            except (HTTPError, OSError) as e:
                raise ClusterUnreachableError(
                    f"Failed to connect to the Kubernetes cluster at {self.endpoint}: {e}"
                ) from e

        info = ClusterInfo(
            endpoint=self.endpoint,
            version=str(version.git_version),
            platform=str(version.platform),
        )
        ic(info)
        console.success(f"Connected to Kubernetes {console.highlight(info.version)} at {info.endpoint}")
        return info

    def __repr__(self) -> str:
        """Return a detailed string representation for debugging."""
        return f"Cluster(context={self.context!r}, endpoint={self.endpoint!r})"
