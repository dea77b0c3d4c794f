"""Data models for jenkins-kube.

This module provides the typed values passed between reconciliation stages:
the desired state read from configuration, the resource objects applied to
the cluster, the service account credential and the rendered controller
configuration document.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, NamedTuple

import yaml


class CredentialPolicy(str, Enum):
    """What the materializer does when an unexpired token is cached.

    REUSE keeps tokens held by running controllers valid; REISSUE always
    requests a fresh token.
    """

    REUSE = "reuse"
    REISSUE = "reissue"


class ActivationMode(str, Enum):
    """How the controller is made to pick up a new configuration document."""

    NONE = "none"
    RESTART = "restart"
    RELOAD = "reload"


class ResourceKind(str, Enum):
    """Kubernetes object kinds managed by the applier.

    Inherits from str to allow direct use in manifests and messages.
    """

    NAMESPACE = "Namespace"
    SERVICE_ACCOUNT = "ServiceAccount"
    CLUSTER_ROLE = "ClusterRole"
    CLUSTER_ROLE_BINDING = "ClusterRoleBinding"
    POD_TEMPLATE = "PodTemplate"

    @property
    def api_version(self) -> str:
        """The apiVersion used when building manifests of this kind."""
        if self in (ResourceKind.CLUSTER_ROLE, ResourceKind.CLUSTER_ROLE_BINDING):
            return "rbac.authorization.k8s.io/v1"
        return "v1"

    @property
    def namespaced(self) -> bool:
        """Whether objects of this kind live inside a namespace."""
        return self in (ResourceKind.SERVICE_ACCOUNT, ResourceKind.POD_TEMPLATE)

    @property
    def rank(self) -> int:
        """Dependency rank; lower ranks are applied first."""
        return _KIND_RANK[self]


_KIND_RANK = {
    ResourceKind.NAMESPACE: 0,
    ResourceKind.SERVICE_ACCOUNT: 1,
    ResourceKind.CLUSTER_ROLE: 1,
    ResourceKind.CLUSTER_ROLE_BINDING: 2,
    ResourceKind.POD_TEMPLATE: 3,
}


class ResourceIdentity(NamedTuple):
    """Identity of a resource object: its kind and name."""

    kind: ResourceKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"


@dataclass(frozen=True, slots=True)
class ResourceObject:
    """A desired Kubernetes object.

    Attributes:
        kind: The object kind.
        name: The object name.
        spec: Top-level body fields other than apiVersion, kind and metadata
            (for example ``rules`` or ``template``). Treated as opaque.
        namespace: Namespace for namespaced kinds, None otherwise.
        labels: Labels set on the object metadata.

    """

    kind: ResourceKind
    name: str
    spec: dict[str, Any] = field(default_factory=dict)
    namespace: str | None = None
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def identity(self) -> ResourceIdentity:
        return ResourceIdentity(self.kind, self.name)

    def manifest(self) -> dict[str, Any]:
        """Build the full object body sent to the API server."""
        metadata: dict[str, Any] = {"name": self.name}
        if self.namespace is not None:
            metadata["namespace"] = self.namespace
        if self.labels:
            metadata["labels"] = dict(self.labels)
        return {
            "apiVersion": self.kind.api_version,
            "kind": self.kind.value,
            "metadata": metadata,
            **self.spec,
        }


class ApplyOutcome(str, Enum):
    """What the applier did with a single object."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class AppliedSet:
    """Objects converged by the applier, in application order."""

    entries: list[tuple[ResourceIdentity, ApplyOutcome]] = field(default_factory=list)

    def add(self, identity: ResourceIdentity, outcome: ApplyOutcome) -> None:
        self.entries.append((identity, outcome))

    def outcome_of(self, identity: ResourceIdentity) -> ApplyOutcome | None:
        for applied, outcome in self.entries:
            if applied == identity:
                return outcome
        return None

    def __contains__(self, identity: object) -> bool:
        return any(applied == identity for applied, _ in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


@dataclass(frozen=True, slots=True)
class Credential:
    """A time-bounded service account token.

    The token value is excluded from ``repr`` and must only be shown through
    :attr:`masked`.

    Attributes:
        value: The bearer token.
        issued_at: When the token was issued (UTC).
        expires_at: Expiry reported by the API server (UTC).
        subject: The service account username the token belongs to.
        requested_ttl: Lifetime asked for when the token was issued, if known.

    """

    value: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime
    subject: str
    requested_ttl: timedelta | None = field(default=None, compare=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def remaining(self, now: datetime | None = None) -> timedelta:
        return self.expires_at - (now or datetime.now(timezone.utc))

    @property
    def lifetime(self) -> timedelta:
        """Lifetime the API server actually granted."""
        return self.expires_at - self.issued_at

    @property
    def masked(self) -> str:
        """Printable form that never reveals the token."""
        return f"<token: {len(self.value)} chars, expires {self.expires_at:%Y-%m-%d %H:%M} UTC>"


@dataclass(frozen=True, slots=True)
class PodTemplateSpec:
    """Agent pod template shared by the cluster object and the Jenkins cloud."""

    name: str = "jnlp-agent"
    label: str = "kubernetes jnlp"
    container_name: str = "jnlp"
    image: str = "jenkins/inbound-agent:latest"
    working_dir: str = "/home/jenkins/agent"
    request_cpu: str = "200m"
    request_memory: str = "256Mi"
    limit_cpu: str = "500m"
    limit_memory: str = "512Mi"
    node_usage_mode: str = "NORMAL"
    pod_retention: str = "never"
    yaml_merge_strategy: str = "override"


@dataclass(frozen=True, slots=True)
class CloudSettings:
    """Jenkins Kubernetes cloud and controller settings."""

    name: str = "kubernetes"
    credential_id: str = "k8s-service-account-token"
    container_cap: int = 10
    max_requests_per_host: int = 32
    retention_timeout: int = 5
    connect_timeout: int = 5
    read_timeout: int = 15
    skip_tls_verify: bool = True
    server_certificate: str | None = None
    system_message: str = "Jenkins configured automatically with Kubernetes Cloud - Ready to use!"
    admin_address: str = "admin@localhost"
    seed_test_job: bool = True
    admin_user: str | None = None


_ALL_VERBS = ["create", "delete", "get", "list", "patch", "update", "watch"]

DEFAULT_ROLE_RULES: tuple[dict[str, Any], ...] = (
    {"apiGroups": [""], "resources": ["pods"], "verbs": _ALL_VERBS},
    {"apiGroups": [""], "resources": ["pods/exec"], "verbs": _ALL_VERBS},
    {"apiGroups": [""], "resources": ["pods/log"], "verbs": ["get", "list", "watch"]},
    {"apiGroups": [""], "resources": ["events"], "verbs": ["get", "list", "watch"]},
    {"apiGroups": [""], "resources": ["secrets"], "verbs": ["get"]},
)


@dataclass(frozen=True, slots=True)
class DesiredState:
    """The declarative target for one reconciliation run.

    Created from configuration at process start and never mutated.
    """

    external_endpoint: str
    controller_url: str
    tunnel_address: str
    namespace: str = "jenkins"
    role_name: str = "jenkins"
    binding_name: str = "jenkins"
    service_account: str = "jenkins"
    credential_ttl: timedelta = timedelta(hours=8760)
    pod_template: PodTemplateSpec = field(default_factory=PodTemplateSpec)
    cloud: CloudSettings = field(default_factory=CloudSettings)
    role_rules: tuple[dict[str, Any], ...] = DEFAULT_ROLE_RULES

    @property
    def service_account_subject(self) -> str:
        """Username the API server assigns to the service account."""
        return f"system:serviceaccount:{self.namespace}:{self.service_account}"


class ClusterInfo(NamedTuple):
    """Result of a successful connectivity probe.

    Attributes:
        endpoint: The API server URL that answered.
        version: Server git version (e.g. 'v1.33.1').
        platform: Server platform (e.g. 'linux/amd64').

    """

    endpoint: str
    version: str
    platform: str


class _CascDumper(yaml.SafeDumper):
    """Safe dumper that writes multi-line strings (job scripts) as literal blocks."""


def _represent_str(dumper: yaml.SafeDumper, value: str) -> yaml.ScalarNode:
    if "\n" in value:
        return dumper.represent_scalar("tag:yaml.org,2002:str", value, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", value)


_CascDumper.add_representer(str, _represent_str)


@dataclass(frozen=True, slots=True)
class ControllerConfigDocument:
    """A rendered Jenkins Configuration-as-Code document.

    Attributes:
        data: The JCasC object tree.
        credential_id: Id under which the token is stored in Jenkins.

    """

    data: dict[str, Any]
    credential_id: str

    def to_yaml(self) -> str:
        return yaml.dump(
            self.data,
            Dumper=_CascDumper,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        )

    def __repr__(self) -> str:
        return f"ControllerConfigDocument(credential_id={self.credential_id!r}, sections={list(self.data)!r})"


class LiveStatus(NamedTuple):
    """Result of a successful activation.

    Attributes:
        url: The liveness URL that answered.
        status_code: HTTP status that was accepted as live.
        attempts: Number of liveness probes sent.

    """

    url: str
    status_code: int
    attempts: int
