"""Create-or-update of Kubernetes objects.

The applier converges each desired object in dependency order. Objects whose
desired fields already match the live object are left alone, objects that
differ are replaced in place, and missing objects are created. A failure
stops the run but keeps everything applied so far; running again resumes at
the failing object.
"""

import copy
import json
import time
from collections.abc import Callable, Iterable
from typing import Any

from icecream import ic
from kubernetes.client.rest import ApiException
from tenacity import RetryError, Retrying, retry_if_exception_type, wait_exponential
from urllib3.exceptions import HTTPError

from jenkins_kube import console
from jenkins_kube.cluster import Cluster
from jenkins_kube.exceptions import ApplyFailedError
from jenkins_kube.models import AppliedSet, ApplyOutcome, ResourceKind, ResourceObject
from jenkins_kube.retry import deadline, wait_until_deadline

# kind -> (API group accessor, method suffix)
_OPERATIONS: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.NAMESPACE: ("core_v1", "namespace"),
    ResourceKind.SERVICE_ACCOUNT: ("core_v1", "namespaced_service_account"),
    ResourceKind.CLUSTER_ROLE: ("rbac_v1", "cluster_role"),
    ResourceKind.CLUSTER_ROLE_BINDING: ("rbac_v1", "cluster_role_binding"),
    ResourceKind.POD_TEMPLATE: ("core_v1", "namespaced_pod_template"),
}

_IGNORED_FIELDS = ("apiVersion", "kind")


class _NotReady(Exception):
    pass


def is_subset(desired: Any, live: Any) -> bool:
    """Check that every field set in ``desired`` has the same value in ``live``.

    Fields the API server adds (defaults, status, bookkeeping metadata) are
    ignored; lists must match element by element.
    """
    if isinstance(desired, dict):
        return isinstance(live, dict) and all(
            key in live and is_subset(value, live[key]) for key, value in desired.items()
        )
    if isinstance(desired, list):
        return (
            isinstance(live, list)
            and len(desired) == len(live)
            and all(is_subset(d, item) for d, item in zip(desired, live, strict=True))
        )
    return desired == live


def order_objects(objects: Iterable[ResourceObject]) -> list[ResourceObject]:
    """Sort objects by dependency rank, keeping input order for equal ranks."""
    return sorted(objects, key=lambda obj: obj.kind.rank)


def _api_message(err: ApiException) -> str:
    try:
        body = json.loads(err.body or "")
    except (TypeError, ValueError):
        return str(err.reason or "")
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return str(err.reason or "")


def _classify(err: ApiException) -> tuple[str, bool]:
    """Return (reason, retryable) for an API error."""
    message = _api_message(err)
    match err.status:
        case 401 | 403:
            return f"permission denied (HTTP {err.status}): {message}", False
        case 400 | 422:
            return f"rejected by the API server (HTTP {err.status}): {message}", False
        case 404:
            return f"not found (HTTP 404): {message}", False
        case 409 | 429:
            return f"conflict (HTTP {err.status}): {message}", True
        case None | 0:
            return f"no response from the API server: {message}", True
        case status if status >= 500:
            return f"server error (HTTP {status}): {message}", True
        case status:
            return f"unexpected HTTP {status}: {message}", False


class ResourceApplier:
    """Applies resource objects to the cluster idempotently.

    Attributes:
        cluster: Cluster connection used for API calls.
        request_timeout: Seconds allowed for each API request.
        ready_timeout: Seconds to wait for an object to become ready.

    """

    def __init__(
        self,
        cluster: Cluster,
        *,
        request_timeout: float = 30.0,
        ready_timeout: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cluster = cluster
        self.request_timeout = request_timeout
        self.ready_timeout = ready_timeout
        self._sleep = sleep
        self._apis = {"core_v1": cluster.core_v1(), "rbac_v1": cluster.rbac_v1()}

    def _call(self, verb: str, obj: ResourceObject, **kwargs: Any) -> Any:
        group, suffix = _OPERATIONS[obj.kind]
        method = getattr(self._apis[group], f"{verb}_{suffix}")
        if obj.kind.namespaced:
            kwargs["namespace"] = obj.namespace
        return method(_request_timeout=self.request_timeout, **kwargs)

    def _read(self, obj: ResourceObject) -> dict[str, Any] | None:
        try:
            live = self._call("read", obj, name=obj.name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return self.cluster.api_client.sanitize_for_serialization(live)

    def _converge(self, obj: ResourceObject) -> ApplyOutcome:
        desired = obj.manifest()
        live = self._read(obj)

        if live is None:
            self._call("create", obj, body=desired)
            return ApplyOutcome.CREATED

        comparable = {key: value for key, value in desired.items() if key not in _IGNORED_FIELDS}
        if is_subset(comparable, live):
            return ApplyOutcome.UNCHANGED

        ic(obj.identity, live)
        body = copy.deepcopy(desired)
        live_metadata = live.get("metadata", {})
        body["metadata"]["resourceVersion"] = live_metadata.get("resourceVersion")
        # Keep labels and annotations other tools put on the object
        body["metadata"]["labels"] = {**live_metadata.get("labels", {}), **body["metadata"].get("labels", {})}
        if live_metadata.get("annotations"):
            body["metadata"]["annotations"] = live_metadata["annotations"]
        self._call("replace", obj, name=obj.name, body=body)
        return ApplyOutcome.UPDATED

    def _check_ready(self, obj: ResourceObject) -> None:
        live = self._read(obj)
        if live is None:
            raise _NotReady(f"{obj.identity} is not visible yet")
        if obj.kind is ResourceKind.NAMESPACE:
            phase = live.get("status", {}).get("phase")
            if phase != "Active":
                raise _NotReady(f"{obj.identity} is in phase {phase}")

    def wait_ready(self, obj: ResourceObject) -> None:
        """Block until the object is observed ready.

        Namespaces must report phase Active; service accounts must be
        readable. Other kinds are ready once accepted.

        Raises:
            _NotReady: If the object is still not ready at the deadline.

        """
        if obj.kind not in (ResourceKind.NAMESPACE, ResourceKind.SERVICE_ACCOUNT):
            return
        retrying = Retrying(
            stop=deadline(self.ready_timeout),
            wait=wait_until_deadline(wait_exponential(multiplier=0.5, max=5), self.ready_timeout),
            retry=retry_if_exception_type(_NotReady),
            sleep=self._sleep,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self._check_ready(obj)
        except RetryError as e:
            raise e.last_attempt.exception() from e

    def apply(self, objects: Iterable[ResourceObject]) -> AppliedSet:
        """Converge objects in dependency order.

        Args:
            objects: Desired objects; they are sorted by dependency rank.

        Returns:
            AppliedSet recording what happened to each object.

        Raises:
            ApplyFailedError: With the objects applied so far and the
                identity of the object that failed.

        """
        applied = AppliedSet()
        for obj in order_objects(objects):
            try:
                outcome = self._converge(obj)
                self.wait_ready(obj)
            except ApiException as e:
                reason, retryable = _classify(e)
                raise ApplyFailedError(
                    applied=applied, failed_at=obj.identity, reason=reason, retryable=retryable
                ) from e
            except (HTTPError, OSError) as e:
                raise ApplyFailedError(
                    applied=applied,
                    failed_at=obj.identity,
                    reason=f"API server {self.cluster.endpoint} unreachable: {e}",
                    retryable=True,
                ) from e
            except _NotReady as e:
                raise ApplyFailedError(
                    applied=applied,
                    failed_at=obj.identity,
                    reason=f"not ready after {self.ready_timeout:.0f}s: {e}",
                    retryable=True,
                ) from e

            applied.add(obj.identity, outcome)
            match outcome:
                case ApplyOutcome.CREATED:
                    console.success(f"{obj.identity} created")
                case ApplyOutcome.UPDATED:
                    console.success(f"{obj.identity} updated")
                case ApplyOutcome.UNCHANGED:
                    console.step(f"{obj.identity} unchanged")

        return applied
