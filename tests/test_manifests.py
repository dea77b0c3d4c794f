"""Tests for manifests.py and the resource models."""

from jenkins_kube.manifests import MANAGED_BY_LABEL, build_resource_objects
from jenkins_kube.models import AppliedSet, ApplyOutcome, ResourceIdentity, ResourceKind


class TestBuildResourceObjects:
    """Tests for the objects the Kubernetes cloud depends on."""

    def test_objects_and_order(self, desired_state):
        objects = build_resource_objects(desired_state)

        assert [str(obj.identity) for obj in objects] == [
            "Namespace/jenkins",
            "ServiceAccount/jenkins",
            "ClusterRole/jenkins",
            "ClusterRoleBinding/jenkins",
            "PodTemplate/jnlp-agent",
        ]
        assert all(obj.labels == MANAGED_BY_LABEL for obj in objects)

    def test_binding_grants_role_to_service_account(self, desired_state):
        """Test the binding references the role and the agent service account."""
        binding = build_resource_objects(desired_state)[3].manifest()

        assert binding["apiVersion"] == "rbac.authorization.k8s.io/v1"
        assert binding["roleRef"] == {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": "jenkins"}
        assert binding["subjects"] == [{"kind": "ServiceAccount", "name": "jenkins", "namespace": "jenkins"}]
        assert "namespace" not in binding["metadata"]

    def test_role_rules_cover_agent_pods(self, desired_state):
        rules = build_resource_objects(desired_state)[2].manifest()["rules"]

        resources = {resource for rule in rules for resource in rule["resources"]}
        assert {"pods", "pods/exec", "pods/log", "events", "secrets"} <= resources

    def test_pod_template(self, desired_state):
        """Test the pod template runs the agent under the service account."""
        manifest = build_resource_objects(desired_state)[4].manifest()

        assert manifest["metadata"]["namespace"] == "jenkins"
        spec = manifest["template"]["spec"]
        assert spec["serviceAccountName"] == "jenkins"
        container = spec["containers"][0]
        assert container["name"] == "jnlp"
        assert container["image"] == "jenkins/inbound-agent:latest"
        assert container["resources"]["limits"] == {"cpu": "500m", "memory": "512Mi"}


class TestResourceModels:
    """Tests for resource identities and applied sets."""

    def test_kind_properties(self):
        assert ResourceKind.NAMESPACE.namespaced is False
        assert ResourceKind.POD_TEMPLATE.namespaced is True
        assert ResourceKind.CLUSTER_ROLE.api_version == "rbac.authorization.k8s.io/v1"
        assert ResourceKind.SERVICE_ACCOUNT.api_version == "v1"

    def test_applied_set(self):
        applied = AppliedSet()
        namespace = ResourceIdentity(ResourceKind.NAMESPACE, "jenkins")
        applied.add(namespace, ApplyOutcome.UPDATED)

        assert namespace in applied
        assert ResourceIdentity(ResourceKind.NAMESPACE, "other") not in applied
        assert applied.outcome_of(namespace) is ApplyOutcome.UPDATED
        assert applied.outcome_of(ResourceIdentity(ResourceKind.POD_TEMPLATE, "jnlp-agent")) is None
        assert list(applied) == [(namespace, ApplyOutcome.UPDATED)]
