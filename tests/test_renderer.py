"""Tests for renderer.py module."""

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest
import yaml

from jenkins_kube.exceptions import RenderInvalidError
from jenkins_kube.manifests import build_resource_objects
from jenkins_kube.models import (
    AppliedSet,
    ApplyOutcome,
    CloudSettings,
    PodTemplateSpec,
    ResourceIdentity,
    ResourceKind,
)
from jenkins_kube.renderer import (
    ADMIN_PASSWORD_VARIABLE,
    TEST_JOB_NAME,
    escape_casc,
    parse_host_port,
    render,
    validate_url,
)

NOW = datetime(2026, 1, 2, tzinfo=timezone.utc)


def full_applied_set(desired):
    applied = AppliedSet()
    for obj in build_resource_objects(desired):
        applied.add(obj.identity, ApplyOutcome.CREATED)
    return applied


def cloud_of(document):
    return document.data["jenkins"]["clouds"][0]["kubernetes"]


def secrets_of(document):
    return document.data["credentials"]["system"]["domainCredentials"][0]["credentials"]


class TestRenderScenario:
    """Tests for the document rendered for the lab setup."""

    def test_cloud_section(self, desired_state, credential):
        """Test the Kubernetes cloud points at the cluster and the controller."""
        document = render(desired_state, credential, applied=full_applied_set(desired_state), now=NOW)

        cloud = cloud_of(document)
        assert cloud["serverUrl"] == "https://192.168.8.101:6443"
        assert cloud["namespace"] == "jenkins"
        assert cloud["jenkinsUrl"] == "http://192.168.8.171:8080"
        assert cloud["jenkinsTunnel"] == "192.168.8.171:50000"
        assert cloud["credentialsId"] == document.credential_id
        assert cloud["skipTlsVerify"] is True
        assert cloud["templates"][0]["serviceAccount"] == "jenkins"
        assert cloud["templates"][0]["label"] == "kubernetes jnlp"
        assert cloud["templates"][0]["containers"][0]["image"] == "jenkins/inbound-agent:latest"

    def test_controller_settings(self, desired_state, credential):
        """Test the controller runs builds only on agents and listens on the tunnel port."""
        jenkins = render(desired_state, credential, now=NOW).data["jenkins"]

        assert jenkins["numExecutors"] == 0
        assert jenkins["mode"] == "EXCLUSIVE"
        assert jenkins["slaveAgentPort"] == 50000
        assert "securityRealm" not in jenkins

    def test_token_appears_only_in_credentials(self, desired_state, credential):
        """Test the secret is stored once and referenced by id elsewhere."""
        document = render(desired_state, credential, now=NOW)

        assert secrets_of(document)[0]["string"]["secret"] == credential.value
        assert secrets_of(document)[0]["string"]["id"] == "k8s-service-account-token"
        assert document.to_yaml().count(credential.value) == 1
        assert credential.value not in repr(document)

    def test_location_and_test_job(self, desired_state, credential):
        document = render(desired_state, credential, now=NOW)

        assert document.data["unclassified"]["location"]["url"] == "http://192.168.8.171:8080/"
        assert TEST_JOB_NAME in document.data["jobs"][0]["script"]

    def test_yaml_parses_back_to_same_tree(self, desired_state, credential):
        """Test the serialised document is valid YAML for the same data."""
        document = render(desired_state, credential, now=NOW)

        assert yaml.safe_load(document.to_yaml()) == document.data
        assert "script: |" in document.to_yaml()

    def test_render_is_pure(self, desired_state, credential):
        """Test that equal inputs give identical documents."""
        first = render(desired_state, credential, now=NOW).to_yaml()
        second = render(desired_state, credential, now=NOW).to_yaml()

        assert first == second


class TestRenderOptions:
    """Tests for optional parts of the document."""

    def test_admin_user_uses_password_variable(self, desired_state, credential):
        """Test that the admin password is left to the controller environment."""
        desired = dataclasses.replace(desired_state, cloud=CloudSettings(admin_user="admin"))

        jenkins = render(desired, credential, now=NOW).data["jenkins"]

        user = jenkins["securityRealm"]["local"]["users"][0]
        assert user["id"] == "admin"
        assert user["password"] == f"${{{ADMIN_PASSWORD_VARIABLE}}}"
        assert "loggedInUsersCanDoAnything" in jenkins["authorizationStrategy"]

    def test_without_test_job(self, desired_state, credential):
        desired = dataclasses.replace(desired_state, cloud=CloudSettings(seed_test_job=False))

        assert "jobs" not in render(desired, credential, now=NOW).data

    def test_server_certificate(self, desired_state, credential):
        """Test that a CA certificate is embedded and TLS verification kept on."""
        pem = "-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"
        desired = dataclasses.replace(
            desired_state, cloud=CloudSettings(server_certificate=pem, skip_tls_verify=False)
        )

        document = render(desired, credential, now=NOW)

        assert cloud_of(document)["serverCertificate"] == pem
        assert cloud_of(document)["skipTlsVerify"] is False
        assert yaml.safe_load(document.to_yaml()) == document.data

    def test_interpolation_is_escaped(self, desired_state, credential):
        """Test that values containing ${...} are not expanded by the controller."""
        desired = dataclasses.replace(desired_state, cloud=CloudSettings(system_message="Built by ${USER}"))

        assert render(desired, credential, now=NOW).data["jenkins"]["systemMessage"] == "Built by ^${USER}"

    def test_every_user_value_is_escaped(self, desired_state, credential):
        """Test that pod template fields, addresses and the admin id are all taken literally."""
        desired = dataclasses.replace(
            desired_state,
            controller_url="http://jenkins.${DOMAIN}:8080",
            pod_template=PodTemplateSpec(image="registry/${IMAGE}:1", working_dir="/home/${AGENT}"),
            cloud=CloudSettings(admin_address="ops@${DOMAIN}", admin_user="${ADMIN}"),
        )

        data = render(desired, credential, now=NOW).data

        container = data["jenkins"]["clouds"][0]["kubernetes"]["templates"][0]["containers"][0]
        assert container["image"] == "registry/^${IMAGE}:1"
        assert container["workingDir"] == "/home/^${AGENT}"
        assert data["unclassified"]["location"]["adminAddress"] == "ops@^${DOMAIN}"
        assert data["unclassified"]["location"]["url"] == "http://jenkins.^${DOMAIN}:8080/"
        assert data["jenkins"]["clouds"][0]["kubernetes"]["jenkinsUrl"] == "http://jenkins.^${DOMAIN}:8080"
        user = data["jenkins"]["securityRealm"]["local"]["users"][0]
        assert user == {"id": "^${ADMIN}", "password": f"${{{ADMIN_PASSWORD_VARIABLE}}}"}

    def test_test_job_uses_pod_template_label(self, desired_state, credential):
        """Test that the seeded job schedules on the configured agent label."""
        desired = dataclasses.replace(desired_state, pod_template=PodTemplateSpec(label="k8s-agent linux"))

        script = render(desired, credential, now=NOW).data["jobs"][0]["script"]

        assert "label 'k8s-agent'" in script
        assert "label 'kubernetes'" not in script

    @pytest.mark.parametrize("label", ["", "it's"])
    def test_unusable_test_job_label(self, desired_state, credential, label):
        desired = dataclasses.replace(desired_state, pod_template=PodTemplateSpec(label=label))

        with pytest.raises(RenderInvalidError, match="podTemplate.label"):
            render(desired, credential, now=NOW)

    def test_ipv6_tunnel(self, desired_state, credential):
        desired = dataclasses.replace(desired_state, tunnel_address="[fd00::171]:50000")

        document = render(desired, credential, now=NOW)

        assert document.data["jenkins"]["slaveAgentPort"] == 50000
        assert cloud_of(document)["jenkinsTunnel"] == "[fd00::171]:50000"


class TestRenderInvalid:
    """Tests for inputs that cannot produce a valid document."""

    def test_tunnel_without_port(self, desired_state, credential):
        desired = dataclasses.replace(desired_state, tunnel_address="192.168.8.171")

        with pytest.raises(RenderInvalidError, match="missing a port") as exc_info:
            render(desired, credential, now=NOW)

        assert exc_info.value.exit_code == 5

    def test_bad_controller_url(self, desired_state, credential):
        desired = dataclasses.replace(desired_state, controller_url="192.168.8.171:8080")

        with pytest.raises(RenderInvalidError, match="controllerURL"):
            render(desired, credential, now=NOW)

    def test_expired_credential(self, desired_state, credential):
        with pytest.raises(RenderInvalidError, match="expired"):
            render(desired_state, credential, now=credential.expires_at + timedelta(seconds=1))

    def test_unapplied_reference(self, desired_state, credential):
        """Test that the document may only name objects the applier converged."""
        applied = full_applied_set(desired_state)
        applied.entries = [
            entry for entry in applied.entries if entry[0] != ResourceIdentity(ResourceKind.POD_TEMPLATE, "jnlp-agent")
        ]

        with pytest.raises(RenderInvalidError, match="PodTemplate/jnlp-agent"):
            render(desired_state, credential, applied=applied, now=NOW)


class TestAddressHelpers:
    """Tests for URL and address validation helpers."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("192.168.8.171:50000", ("192.168.8.171", 50000)),
            ("jenkins.lab:50000", ("jenkins.lab", 50000)),
            ("[fd00::1]:50000", ("fd00::1", 50000)),
        ],
    )
    def test_parse_host_port(self, value, expected):
        assert parse_host_port("tunnelAddress", value) == expected

    @pytest.mark.parametrize("value", ["", ":50000", "host:0", "host:70000", "host:port", "http://host:1", " host:1"])
    def test_parse_host_port_invalid(self, value):
        with pytest.raises(RenderInvalidError):
            parse_host_port("tunnelAddress", value)

    def test_validate_url_strips_slash(self):
        assert validate_url("controllerURL", "http://jenkins.lab:8080/") == "http://jenkins.lab:8080"

    @pytest.mark.parametrize("value", ["ftp://host", "http://", "http://host:99999", "jenkins"])
    def test_validate_url_invalid(self, value):
        with pytest.raises(RenderInvalidError):
            validate_url("controllerURL", value)

    def test_escape_casc(self):
        assert escape_casc("a ${B} c") == "a ^${B} c"
        assert escape_casc("plain") == "plain"
