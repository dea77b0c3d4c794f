"""Controller activation.

Installs the rendered JCasC document where the controller reads it, makes
the controller pick it up and waits until it serves requests. A controller
that is not answering yet is polled with exponential backoff up to the
maximum wait; a controller that answers but failed to apply the
configuration is reported immediately.
"""

import os
import re
import shutil
import subprocess
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

import requests
from icecream import ic
from tenacity import RetryError, Retrying, retry_if_exception_type, wait_exponential

from jenkins_kube import console
from jenkins_kube.exceptions import ActivationError, ActivationRejectedError, ActivationTimeoutError
from jenkins_kube.models import ActivationMode, ControllerConfigDocument, LiveStatus
from jenkins_kube.retry import deadline, wait_until_deadline

# /login is served without authentication; 403 still means the web tier is up
_LIVE_STATUSES = (200, 403)
_REJECTED_STATUS = 500

_TAG_PATTERN = re.compile(r"<[^>]+>")
_DETAIL_LIMIT = 400


class _ControllerNotUp(Exception):
    pass


def extract_detail(body: str) -> str:
    """Reduce an HTML error page to a short plain-text detail."""
    text = " ".join(_TAG_PATTERN.sub(" ", body).split())
    if len(text) > _DETAIL_LIMIT:
        return text[:_DETAIL_LIMIT] + "..."
    return text


class ControllerActivator:
    """Installs the configuration document and waits for the controller.

    Attributes:
        controller_url: Base URL of the controller.
        casc_path: File the controller reads its JCasC configuration from.
        mode: How the controller picks up the document.
        service_name: systemd unit restarted in restart mode.
        owner: User (and group) that must own the document.
        max_wait: Seconds to wait for the controller to become live.
        request_timeout: Seconds allowed per HTTP request.
        api_user: User for the reload API.
        api_token: API token for the reload API.

    """

    def __init__(
        self,
        controller_url: str,
        casc_path: Path,
        *,
        mode: ActivationMode = ActivationMode.RESTART,
        service_name: str = "jenkins",
        owner: str | None = None,
        max_wait: float = 300.0,
        request_timeout: float = 10.0,
        api_user: str | None = None,
        api_token: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.controller_url = controller_url.rstrip("/")
        self.casc_path = casc_path
        self.mode = mode
        self.service_name = service_name
        self.owner = owner
        self.max_wait = max_wait
        self.request_timeout = request_timeout
        self.api_user = api_user
        self.api_token = api_token
        self._sleep = sleep

    @property
    def liveness_url(self) -> str:
        return f"{self.controller_url}/login"

    def write_document(self, document: ControllerConfigDocument) -> Path:
        """Replace the JCasC file atomically.

        The file embeds the token, so it is created owner-only.

        Raises:
            ActivationError: If the file cannot be written.

        """
        directory = self.casc_path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".jcasc-", suffix=".yaml")
        except OSError as e:
            raise ActivationError(f"Cannot write {self.casc_path}: {e}") from e

        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w") as stream:
                stream.write(document.to_yaml())
            if self.owner:
                shutil.chown(tmp_name, user=self.owner, group=self.owner)
            os.replace(tmp_name, self.casc_path)
        except (OSError, LookupError) as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise ActivationError(f"Cannot write {self.casc_path}: {e}") from e

        console.success(f"Configuration written to {console.highlight(str(self.casc_path))}")
        return self.casc_path

    def _restart(self) -> None:
        cmd = ["systemctl", "restart", self.service_name]
        ic(cmd)
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=self.request_timeout * 6)
        except subprocess.CalledProcessError as err:
            raise ActivationError(
                f"Failed to restart {self.service_name} (exit code {err.returncode}): {err.stderr.strip()}"
            ) from err
        except (OSError, subprocess.TimeoutExpired) as err:
            raise ActivationError(f"Failed to restart {self.service_name}: {err}") from err
        console.step(f"Restarted {self.service_name}")

    def _reload(self) -> None:
        url = f"{self.controller_url}/configuration-as-code/reload"
        auth = (self.api_user, self.api_token) if self.api_user and self.api_token else None
        try:
            response = requests.post(url, auth=auth, timeout=self.request_timeout, allow_redirects=False)
        except requests.RequestException as e:
            raise ActivationError(f"Reload request to {url} failed: {e}") from e

        ic(response.status_code)
        if response.status_code in (401, 403):
            raise ActivationRejectedError(
                f"Controller refused the reload request (HTTP {response.status_code}); check the API user and token",
                detail=extract_detail(response.text),
            )
        if response.status_code >= 400:
            detail = extract_detail(response.text)
            raise ActivationRejectedError(
                f"Controller rejected the configuration (HTTP {response.status_code}): {detail}",
                detail=detail,
            )
        console.step("Configuration reload requested")

    def _check_live(self, timeout: float) -> int:
        try:
            response = requests.get(self.liveness_url, timeout=timeout, allow_redirects=False)
        except requests.RequestException as e:
            raise _ControllerNotUp(f"no response: {e}") from e

        status = response.status_code
        if status in _LIVE_STATUSES:
            return status
        if status == _REJECTED_STATUS:
            detail = extract_detail(response.text)
            raise ActivationRejectedError(
                f"Controller at {self.controller_url} is up but failed to apply the configuration: {detail}",
                detail=detail,
            )
        raise _ControllerNotUp(f"HTTP {status}")

    def wait_live(self) -> LiveStatus:
        """Poll the liveness URL until the controller serves requests.

        Returns:
            LiveStatus for the accepted response.

        Raises:
            ActivationTimeoutError: If the controller is not live within max_wait.
            ActivationRejectedError: If the controller reports a configuration failure.

        """
        retrying = Retrying(
            stop=deadline(self.max_wait),
            wait=wait_until_deadline(wait_exponential(multiplier=1, min=1, max=30), self.max_wait),
            retry=retry_if_exception_type(_ControllerNotUp),
            before_sleep=lambda state: console.step(
                f"Waiting for controller... attempt {state.attempt_number} ({state.outcome.exception()})"
            ),
            sleep=self._sleep,
        )
        started = time.monotonic()
        with console.spinner(f"Waiting for {self.liveness_url}..."):
            try:
                for attempt in retrying:
                    with attempt:
                        left = self.max_wait - (time.monotonic() - started)
                        status = self._check_live(min(self.request_timeout, max(1.0, left)))
            except RetryError as e:
                raise ActivationTimeoutError(
                    f"Controller at {self.controller_url} not live after {self.max_wait:.0f}s: "
                    f"{e.last_attempt.exception()}"
                ) from e

        live = LiveStatus(url=self.liveness_url, status_code=status, attempts=attempt.retry_state.attempt_number)
        console.success(f"Controller is live (HTTP {live.status_code})")
        return live

    def activate(self, document: ControllerConfigDocument) -> LiveStatus:
        """Install the document and bring the controller live with it.

        Raises:
            ActivationError: If the document cannot be installed or the
                controller cannot be restarted.
            ActivationTimeoutError: If the controller never becomes live.
            ActivationRejectedError: If the controller rejects the document.

        """
        self.write_document(document)

        match self.mode:
            case ActivationMode.RESTART:
                self._restart()
            case ActivationMode.RELOAD:
                self.wait_live()
                self._reload()
            case ActivationMode.NONE:
                pass

        return self.wait_live()
