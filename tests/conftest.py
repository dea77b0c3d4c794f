"""Shared test fixtures for jenkins-kube tests."""

import copy
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from jenkins_kube.models import Credential, DesiredState

FIXED_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeKubeApi:
    """In-memory stand-in for CoreV1Api and RbacAuthorizationV1Api.

    Supports the read/create/replace calls the applier makes, fills in a few
    server-side defaults and bookkeeping fields, and can be told to fail a
    given (verb, name) pair.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str | None, str], dict] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.namespace_phase = "Active"
        self._resource_version = 0
        self.tokens_issued = 0

    def __getattr__(self, attr: str):
        verb, _, suffix = attr.partition("_")
        if verb not in ("read", "create", "replace") or not suffix:
            raise AttributeError(attr)

        def method(*, name=None, namespace=None, body=None, _request_timeout=None):
            return self._handle(verb, suffix, name or body["metadata"]["name"], namespace, body)

        return method

    def _store(self, suffix: str, key: tuple, body: dict) -> dict:
        stored = copy.deepcopy(body)
        self._resource_version += 1
        stored["metadata"]["resourceVersion"] = str(self._resource_version)
        if suffix == "namespace":
            stored["metadata"].setdefault("labels", {})["kubernetes.io/metadata.name"] = key[2]
            stored["status"] = {"phase": self.namespace_phase}
        if suffix == "namespaced_pod_template":
            pod_spec = stored["template"]["spec"]
            pod_spec.setdefault("restartPolicy", "Always")
            for container in pod_spec["containers"]:
                container.setdefault("terminationMessagePath", "/dev/termination-log")
        self.objects[key] = stored
        return copy.deepcopy(stored)

    def _handle(self, verb: str, suffix: str, name: str, namespace: str | None, body: dict | None) -> dict:
        key = (suffix, namespace, name)
        self.calls.append((verb, suffix, name))
        failure = self.failures.get((verb, name))
        if failure is not None:
            raise failure

        if verb == "read":
            if key not in self.objects:
                raise ApiException(status=404, reason="Not Found")
            return copy.deepcopy(self.objects[key])
        if verb == "create":
            if key in self.objects:
                raise ApiException(status=409, reason="AlreadyExists")
            return self._store(suffix, key, body)

        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        if body["metadata"].get("resourceVersion") != self.objects[key]["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        return self._store(suffix, key, body)

    def create_namespaced_service_account_token(self, *, name, namespace, body, _request_timeout=None):
        self.calls.append(("create", "token", name))
        if ("namespaced_service_account", namespace, name) not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        self.tokens_issued += 1
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=body.spec.expiration_seconds)
        token = f"token-{name}-{self.tokens_issued}"
        return SimpleNamespace(status=SimpleNamespace(token=token, expiration_timestamp=expires_at))

    def verbs(self, verb: str) -> list[str]:
        return [name for called, _, name in self.calls if called == verb]


@pytest.fixture
def fake_api():
    """Stateful fake Kubernetes API."""
    return FakeKubeApi()


@pytest.fixture
def fake_cluster(fake_api):
    """Cluster stand-in backed by the fake API."""
    cluster = MagicMock()
    cluster.endpoint = "https://192.168.8.101:6443"
    cluster.core_v1.return_value = fake_api
    cluster.rbac_v1.return_value = fake_api
    cluster.api_client = client.ApiClient()
    return cluster


@pytest.fixture
def mock_kube_contexts():
    """Mock kubernetes config contexts."""
    with patch("kubernetes.config.list_kube_config_contexts") as mock:
        mock.return_value = ([{"name": "test-context"}, {"name": "lab"}], {"name": "test-context"})
        yield mock


@pytest.fixture
def mock_kube_config():
    """Mock kubernetes config loading."""
    with patch("kubernetes.config.load_kube_config") as mock:
        yield mock


@pytest.fixture
def desired_state():
    """Desired state of the lab setup the tool was written for."""
    return DesiredState(
        external_endpoint="https://192.168.8.101:6443",
        controller_url="http://192.168.8.171:8080",
        tunnel_address="192.168.8.171:50000",
        namespace="jenkins",
        service_account="jenkins",
        credential_ttl=timedelta(hours=8760),
    )


@pytest.fixture
def credential():
    """An unexpired token issued at FIXED_NOW."""
    return Credential(
        value="eyJhbGciOiJSUzI1NiJ9.payload.signature",
        issued_at=FIXED_NOW,
        expires_at=FIXED_NOW + timedelta(hours=8760),
        subject="system:serviceaccount:jenkins:jenkins",
    )


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    return MagicMock()
