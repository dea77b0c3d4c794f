"""Kubernetes objects the Jenkins Kubernetes cloud depends on.

Builds the namespace, service account, RBAC objects and agent pod template
from the desired state, in the order the applier needs them.
"""

from jenkins_kube.models import DesiredState, PodTemplateSpec, ResourceKind, ResourceObject

MANAGED_BY_LABEL = {"app.kubernetes.io/managed-by": "jenkins-kube"}


def pod_template_body(template: PodTemplateSpec, service_account: str) -> dict:
    """Build the ``template`` field of the agent PodTemplate object."""
    return {
        "metadata": {
            "labels": {
                "jenkins/agent": "true",
                "jenkins/pod-template": template.name,
            }
        },
        "spec": {
            "serviceAccountName": service_account,
            "containers": [
                {
                    "name": template.container_name,
                    "image": template.image,
                    "workingDir": template.working_dir,
                    "tty": True,
                    "resources": {
                        "requests": {"cpu": template.request_cpu, "memory": template.request_memory},
                        "limits": {"cpu": template.limit_cpu, "memory": template.limit_memory},
                    },
                }
            ],
        },
    }


def build_resource_objects(desired: DesiredState) -> list[ResourceObject]:
    """Return every object the controller needs, in dependency order."""
    return [
        ResourceObject(
            kind=ResourceKind.NAMESPACE,
            name=desired.namespace,
            labels=MANAGED_BY_LABEL,
        ),
        ResourceObject(
            kind=ResourceKind.SERVICE_ACCOUNT,
            name=desired.service_account,
            namespace=desired.namespace,
            labels=MANAGED_BY_LABEL,
        ),
        ResourceObject(
            kind=ResourceKind.CLUSTER_ROLE,
            name=desired.role_name,
            spec={"rules": [dict(rule) for rule in desired.role_rules]},
            labels=MANAGED_BY_LABEL,
        ),
        ResourceObject(
            kind=ResourceKind.CLUSTER_ROLE_BINDING,
            name=desired.binding_name,
            spec={
                "roleRef": {
                    "apiGroup": "rbac.authorization.k8s.io",
                    "kind": "ClusterRole",
                    "name": desired.role_name,
                },
                "subjects": [
                    {
                        "kind": "ServiceAccount",
                        "name": desired.service_account,
                        "namespace": desired.namespace,
                    }
                ],
            },
            labels=MANAGED_BY_LABEL,
        ),
        ResourceObject(
            kind=ResourceKind.POD_TEMPLATE,
            name=desired.pod_template.name,
            namespace=desired.namespace,
            spec={"template": pod_template_body(desired.pod_template, desired.service_account)},
            labels=MANAGED_BY_LABEL,
        ),
    ]
