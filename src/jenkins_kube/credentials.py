"""Service account token materialization.

Tokens come from the TokenRequest API and always carry an expiry. Issued
tokens are cached on disk so a re-run can hand the controller the token it
already holds instead of invalidating it.

Policy: with ``reuse`` (the default) a cached token is returned while its
remaining lifetime is above the refresh margin, a share of the lifetime the
API server actually granted. A server that caps or rounds the requested TTL
therefore does not defeat reuse. A cached token is also replaced when the
configured TTL has been lowered below the one it was requested with and the
token outlives the new TTL. With ``reissue`` every run requests a new token. The cache
file for a service account is only read or written while holding an
exclusive lock keyed by that service account, so concurrent runs do not race
on the reuse decision.
"""

import fcntl
import os
import tempfile
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import yaml
from icecream import ic
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from jenkins_kube import console
from jenkins_kube.cluster import Cluster
from jenkins_kube.exceptions import CredentialUnavailableError
from jenkins_kube.models import Credential, CredentialPolicy

# Reissue once less than this share of the granted lifetime is left
REFRESH_FRACTION = 0.1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _seconds(value) -> timedelta | None:
    if value is None:
        return None
    return timedelta(seconds=int(value))


class CredentialStore:
    """On-disk cache of issued tokens, one 0600 YAML file per service account.

    Attributes:
        directory: Directory holding the cache and lock files.

    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, subject: str) -> Path:
        return self.directory / f"{subject.replace(':', '_')}.yaml"

    @contextmanager
    def locked(self, subject: str) -> Generator[None, None, None]:
        """Hold an exclusive lock for one service account."""
        self.directory.mkdir(parents=True, exist_ok=True)
        lock_path = self.path_for(subject).with_suffix(".lock")
        with open(lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def load(self, subject: str, endpoint: str) -> Credential | None:
        """Return the cached credential for subject, if one was issued by endpoint."""
        path = self.path_for(subject)
        try:
            with open(path) as stream:
                data = yaml.safe_load(stream)
        except FileNotFoundError:
            return None
        except (OSError, yaml.YAMLError) as e:
            console.warning(f"Ignoring unreadable credential cache {path}: {e}")
            return None

        if not isinstance(data, dict) or data.get("subject") != subject or data.get("endpoint") != endpoint:
            return None
        try:
            return Credential(
                value=str(data["token"]),
                issued_at=_as_utc(datetime.fromisoformat(data["issuedAt"])),
                expires_at=_as_utc(datetime.fromisoformat(data["expiresAt"])),
                subject=subject,
                requested_ttl=_seconds(data.get("requestedTTLSeconds")),
            )
        except (KeyError, TypeError, ValueError) as e:
            console.warning(f"Ignoring malformed credential cache {path}: {e}")
            return None

    def save(self, credential: Credential, endpoint: str) -> Path:
        """Write the credential atomically with owner-only permissions."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(credential.subject)
        document = {
            "subject": credential.subject,
            "endpoint": endpoint,
            "issuedAt": credential.issued_at.isoformat(),
            "expiresAt": credential.expires_at.isoformat(),
            "token": credential.value,
        }
        if credential.requested_ttl is not None:
            document["requestedTTLSeconds"] = int(credential.requested_ttl.total_seconds())
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".credential-")
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w") as stream:
                yaml.safe_dump(document, stream, sort_keys=False)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return path


class CredentialMaterializer:
    """Obtains bounded-lifetime tokens for the Jenkins service account.

    Attributes:
        cluster: Cluster connection used for the TokenRequest call.
        store: Token cache.
        policy: Reuse or reissue cached tokens.
        request_timeout: Seconds allowed for the TokenRequest call.

    """

    def __init__(
        self,
        cluster: Cluster,
        store: CredentialStore,
        *,
        policy: CredentialPolicy = CredentialPolicy.REUSE,
        request_timeout: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.cluster = cluster
        self.store = store
        self.policy = policy
        self.request_timeout = request_timeout
        self._clock = clock

    def _reusable(self, cached: Credential | None, ttl: timedelta, now: datetime) -> bool:
        if cached is None:
            return False
        remaining = cached.remaining(now)
        if remaining <= cached.lifetime * REFRESH_FRACTION:
            console.step(f"Cached token expires {cached.expires_at:%Y-%m-%d %H:%M} UTC, reissuing")
            return False
        requested = cached.requested_ttl or cached.lifetime
        if ttl < requested and remaining > ttl + timedelta(minutes=1):
            console.step("Cached token outlives the configured TTL, reissuing")
            return False
        return True

    def _request(self, service_account: str, namespace: str, ttl: timedelta, subject: str) -> Credential:
        body = client.AuthenticationV1TokenRequest(
            spec=client.V1TokenRequestSpec(
                audiences=[],
                expiration_seconds=int(ttl.total_seconds()),
            )
        )
        issued_at = self._clock()
        try:
            response = self.cluster.core_v1().create_namespaced_service_account_token(
                name=service_account,
                namespace=namespace,
                body=body,
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            match e.status:
                case 404:
                    reason = (
                        f"service account {namespace}/{service_account} not found "
                        "or the TokenRequest API is not served"
                    )
                case 401 | 403:
                    reason = f"not allowed to create tokens for {namespace}/{service_account} (HTTP {e.status})"
                case _:
                    reason = f"TokenRequest failed: HTTP {e.status} {e.reason}"
            raise CredentialUnavailableError(reason) from e
        except (HTTPError, OSError) as e:
            raise CredentialUnavailableError(f"TokenRequest failed: API server unreachable: {e}") from e

        status = response.status
        if status is None or not status.token:
            raise CredentialUnavailableError(f"TokenRequest for {namespace}/{service_account} returned no token")
        if status.expiration_timestamp is None:
            raise CredentialUnavailableError(f"TokenRequest for {namespace}/{service_account} returned no expiry")

        expires_at = _as_utc(status.expiration_timestamp)
        if expires_at <= issued_at:
            raise CredentialUnavailableError(
                f"TokenRequest for {namespace}/{service_account} returned an already expired token"
            )

        credential = Credential(
            value=status.token,
            issued_at=issued_at,
            expires_at=expires_at,
            subject=subject,
            requested_ttl=ttl,
        )
        ic(credential)

        granted = expires_at - issued_at
        if abs(granted - ttl) > timedelta(minutes=1):
            console.warning(
                f"API server granted {granted} instead of the requested {ttl}; "
                f"using the reported expiry {expires_at:%Y-%m-%d %H:%M} UTC"
            )
        return credential

    def materialize(self, service_account: str, namespace: str, ttl: timedelta) -> Credential:
        """Return an unexpired token for the service account.

        Args:
            service_account: Service account name.
            namespace: Namespace of the service account.
            ttl: Requested token lifetime.

        Returns:
            The Credential, cached or newly issued.

        Raises:
            CredentialUnavailableError: If no token can be obtained.

        """
        subject = f"system:serviceaccount:{namespace}:{service_account}"
        endpoint = self.cluster.endpoint

        with self.store.locked(subject):
            now = self._clock()
            if self.policy is CredentialPolicy.REUSE:
                cached = self.store.load(subject, endpoint)
                if self._reusable(cached, ttl, now):
                    console.success(f"Reusing cached token {cached.masked}")
                    return cached

            with console.spinner(f"Requesting token for {namespace}/{service_account}..."):
                credential = self._request(service_account, namespace, ttl, subject)
            path = self.store.save(credential, endpoint)

        console.success(f"Token issued {credential.masked}")
        console.step(f"Token cached at {path}")
        return credential
