"""Jenkins Configuration-as-Code rendering.

Builds the complete JCasC document for the controller as an object tree and
leaves serialisation to PyYAML, so no input value can break the document
structure. Every string taken from the desired state or the credential is
escaped against JCasC variable interpolation; only the admin password
reference is left for the controller to resolve. Rendering does no I/O: the
same desired state and credential always produce the same document.
"""

from datetime import datetime
from string import Template
from typing import Any
from urllib.parse import urlsplit

from jenkins_kube.exceptions import RenderInvalidError
from jenkins_kube.models import (
    AppliedSet,
    ControllerConfigDocument,
    Credential,
    DesiredState,
    PodTemplateSpec,
    ResourceIdentity,
    ResourceKind,
)

# Variable the controller resolves the local admin password from
ADMIN_PASSWORD_VARIABLE = "JENKINS_ADMIN_PASSWORD"

TEST_JOB_NAME = "test-k8s-agent"

_TEST_JOB_DSL = Template(
    """\
pipelineJob('test-k8s-agent') {
  description('Test pipeline to verify Kubernetes agents are working')
  definition {
    cps {
      script('''
        pipeline {
            agent {
                label '$label'
            }
            stages {
                stage('Hello') {
                    steps {
                        echo 'Hello from Kubernetes Agent!'
                        sh 'hostname'
                        sh 'cat /etc/os-release'
                    }
                }
                stage('Environment') {
                    steps {
                        sh 'env | sort'
                    }
                }
            }
        }
      '''.stripIndent())
      sandbox(true)
    }
  }
}
"""
)


def escape_casc(value: str) -> str:
    """Escape JCasC variable interpolation so the value is taken literally."""
    return value.replace("${", "^${")


def _escape_tree(node: Any) -> Any:
    if isinstance(node, str):
        return escape_casc(node)
    if isinstance(node, dict):
        return {key: _escape_tree(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_escape_tree(item) for item in node]
    return node


def _seed_job_label(template: PodTemplateSpec) -> str:
    labels = template.label.split()
    if not labels:
        raise RenderInvalidError("podTemplate.label must not be empty when the test job is seeded")
    if any(char in labels[0] for char in "'\\"):
        raise RenderInvalidError(f"podTemplate.label {labels[0]!r} cannot be used in the test job")
    return labels[0]


def validate_url(option: str, value: str) -> str:
    """Check that value is an absolute http(s) URL with a host.

    Returns:
        The URL without a trailing slash.

    Raises:
        RenderInvalidError: If the URL is malformed.

    """
    try:
        parts = urlsplit(value)
        _ = parts.port
    except ValueError as e:
        raise RenderInvalidError(f"{option} is not a valid URL: {value!r} ({e})") from e
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise RenderInvalidError(f"{option} must be an http(s) URL with a host, got {value!r}")
    if value != value.strip():
        raise RenderInvalidError(f"{option} must not contain surrounding whitespace, got {value!r}")
    return value.rstrip("/")


def parse_host_port(option: str, value: str) -> tuple[str, int]:
    """Split a host:port address, accepting bracketed IPv6 hosts.

    Raises:
        RenderInvalidError: If the host or port is missing or invalid.

    """
    if not value or value != value.strip() or any(sep in value for sep in ("/", "?", "#", "@")):
        raise RenderInvalidError(f"{option} must be host:port, got {value!r}")
    try:
        parts = urlsplit(f"//{value}")
        port = parts.port
    except ValueError as e:
        raise RenderInvalidError(f"{option} has an invalid port: {value!r}") from e
    if not parts.hostname:
        raise RenderInvalidError(f"{option} is missing a host: {value!r}")
    if port is None:
        raise RenderInvalidError(f"{option} is missing a port: {value!r} (expected host:port)")
    if not 0 < port < 65536:
        raise RenderInvalidError(f"{option} port out of range: {value!r}")
    return parts.hostname, port


def _check_applied(desired: DesiredState, applied: AppliedSet) -> None:
    referenced = [
        ResourceIdentity(ResourceKind.NAMESPACE, desired.namespace),
        ResourceIdentity(ResourceKind.SERVICE_ACCOUNT, desired.service_account),
        ResourceIdentity(ResourceKind.CLUSTER_ROLE_BINDING, desired.binding_name),
        ResourceIdentity(ResourceKind.POD_TEMPLATE, desired.pod_template.name),
    ]
    missing = [str(identity) for identity in referenced if identity not in applied]
    if missing:
        raise RenderInvalidError(f"Configuration references objects that were not applied: {', '.join(missing)}")


def _pod_template(desired: DesiredState, template: PodTemplateSpec) -> dict[str, Any]:
    return {
        "name": template.name,
        "namespace": desired.namespace,
        "label": template.label,
        "nodeUsageMode": template.node_usage_mode,
        "serviceAccount": desired.service_account,
        "containers": [
            {
                "name": template.container_name,
                "image": template.image,
                "workingDir": template.working_dir,
                "ttyEnabled": True,
                "resourceRequestCpu": template.request_cpu,
                "resourceRequestMemory": template.request_memory,
                "resourceLimitCpu": template.limit_cpu,
                "resourceLimitMemory": template.limit_memory,
            }
        ],
        "yamlMergeStrategy": template.yaml_merge_strategy,
        "podRetention": template.pod_retention,
    }


def render(
    desired: DesiredState,
    credential: Credential,
    *,
    applied: AppliedSet | None = None,
    now: datetime | None = None,
) -> ControllerConfigDocument:
    """Render the JCasC document for the controller.

    Args:
        desired: The desired state.
        credential: Token for the Kubernetes cloud; embedded only in the
            credentials section and referenced by id everywhere else.
        applied: When given, every object the document references must be in it.
        now: Time used for the credential expiry check.

    Returns:
        The ControllerConfigDocument.

    Raises:
        RenderInvalidError: If an address is malformed, the credential has
            expired, or a referenced object was not applied.

    """
    controller_url = validate_url("controllerURL", desired.controller_url)
    server_url = validate_url("externalEndpoint", desired.external_endpoint)
    _, agent_port = parse_host_port("tunnelAddress", desired.tunnel_address)

    if credential.is_expired(now):
        raise RenderInvalidError(
            f"Credential for {credential.subject} expired at {credential.expires_at:%Y-%m-%d %H:%M} UTC"
        )
    if applied is not None:
        _check_applied(desired, applied)

    cloud = desired.cloud
    kubernetes_cloud: dict[str, Any] = {
        "name": cloud.name,
        "serverUrl": server_url,
        "skipTlsVerify": cloud.skip_tls_verify,
    }
    if cloud.server_certificate:
        kubernetes_cloud["serverCertificate"] = cloud.server_certificate
    kubernetes_cloud.update(
        {
            "namespace": desired.namespace,
            "jenkinsUrl": controller_url,
            "jenkinsTunnel": desired.tunnel_address,
            "credentialsId": cloud.credential_id,
            "containerCapStr": str(cloud.container_cap),
            "maxRequestsPerHostStr": str(cloud.max_requests_per_host),
            "retentionTimeout": cloud.retention_timeout,
            "connectTimeout": cloud.connect_timeout,
            "readTimeout": cloud.read_timeout,
            "templates": [_pod_template(desired, desired.pod_template)],
        }
    )

    jenkins: dict[str, Any] = {
        "systemMessage": cloud.system_message,
        "numExecutors": 0,
        "mode": "EXCLUSIVE",
    }
    if cloud.admin_user:
        jenkins["securityRealm"] = {
            "local": {
                "allowsSignup": False,
                "users": [{"id": cloud.admin_user}],
            }
        }
        jenkins["authorizationStrategy"] = {"loggedInUsersCanDoAnything": {"allowAnonymousRead": False}}
    jenkins["slaveAgentPort"] = agent_port
    jenkins["clouds"] = [{"kubernetes": kubernetes_cloud}]

    data: dict[str, Any] = {
        "jenkins": jenkins,
        "credentials": {
            "system": {
                "domainCredentials": [
                    {
                        "credentials": [
                            {
                                "string": {
                                    "scope": "GLOBAL",
                                    "id": cloud.credential_id,
                                    "description": f"Kubernetes token for {credential.subject}",
                                    "secret": credential.value,
                                }
                            }
                        ]
                    }
                ]
            }
        },
        "unclassified": {
            "location": {
                "url": f"{controller_url}/",
                "adminAddress": cloud.admin_address,
            }
        },
    }
    if cloud.seed_test_job:
        data["jobs"] = [{"script": _TEST_JOB_DSL.substitute(label=_seed_job_label(desired.pod_template))}]

    data = _escape_tree(data)
    if cloud.admin_user:
        # Resolved by the controller from its environment, so left unescaped
        data["jenkins"]["securityRealm"]["local"]["users"][0]["password"] = f"${{{ADMIN_PASSWORD_VARIABLE}}}"

    return ControllerConfigDocument(data=data, credential_id=cloud.credential_id)
