"""Configuration loading for jenkins-kube.

Desired state and run settings come from three layers: built-in defaults,
an optional YAML config file and explicit overrides (CLI flags, which click
already merged with their environment variables). Later layers win.

Config file keys use the camelCase names of the desired-state document::

    externalEndpoint: https://192.168.8.101:6443
    namespace: jenkins
    serviceAccount: jenkins
    credentialTTL: 8760h
    controllerURL: http://192.168.8.171:8080
    tunnelAddress: 192.168.8.171:50000
    podTemplate:
      image: jenkins/inbound-agent:latest
    cloud:
      caCertificateFile: /etc/jenkins-kube/ca.crt
"""

import dataclasses
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from icecream import ic

from jenkins_kube.exceptions import ConfigurationError
from jenkins_kube.models import (
    ActivationMode,
    CloudSettings,
    CredentialPolicy,
    DesiredState,
    PodTemplateSpec,
)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": "hours", "m": "minutes", "s": "seconds", "ms": "milliseconds"}

# TokenRequest rejects expirationSeconds below ten minutes
MIN_CREDENTIAL_TTL = timedelta(minutes=10)

_DESIRED_KEYS = {
    "external_endpoint",
    "namespace",
    "role_name",
    "binding_name",
    "service_account",
    "credential_ttl",
    "controller_url",
    "tunnel_address",
    "pod_template",
    "cloud",
    "role_rules",
}


def parse_duration(value: str | int | float) -> timedelta:
    """Parse a duration such as '8760h', '1h30m' or a number of seconds.

    Args:
        value: Duration string with h/m/s/ms units, or seconds as a number.

    Returns:
        The duration as a timedelta.

    Raises:
        ConfigurationError: If the value is not a positive duration.

    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        duration = timedelta(seconds=value)
    else:
        text = str(value).strip()
        parts = _DURATION_PART.findall(text)
        if not parts or "".join(number + unit for number, unit in parts) != text:
            raise ConfigurationError(f"Invalid duration: {value!r} (expected e.g. '8760h' or '1h30m')")
        duration = timedelta()
        for number, unit in parts:
            duration += timedelta(**{_DURATION_UNITS[unit]: float(number)})

    if duration <= timedelta(0):
        raise ConfigurationError(f"Duration must be positive: {value!r}")
    return duration


def _snake(key: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", key).lower()


def _snake_keys(section: str, raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"'{section}' must be a mapping")
    return {_snake(str(key)): value for key, value in raw.items()}


def _build(cls: type, section: str, values: dict[str, Any]) -> Any:
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(f"Unknown option(s) in '{section}': {', '.join(unknown)}")
    return cls(**values)


@dataclasses.dataclass(frozen=True, slots=True)
class RunSettings:
    """How a run talks to the cluster and the controller host.

    Attributes:
        kubeconfig: Path to the kubeconfig; None uses the client default.
        context: Kubeconfig context; None uses the current context.
        select_context: Prompt for the context interactively.
        casc_path: Where the JCasC document is written.
        casc_owner: User that must own the JCasC document, if any.
        credential_cache: Directory holding cached tokens and their locks.
        credential_policy: Reuse or reissue cached tokens.
        activation: How the controller picks up the document.
        service_name: systemd unit restarted in restart mode.
        probe_timeout: Seconds allowed for the connectivity probe.
        request_timeout: Seconds allowed for each API or HTTP request.
        ready_timeout: Seconds to wait for applied objects to become ready.
        max_wait: Seconds to wait for the controller to become live.

    """

    kubeconfig: str | None = None
    context: str | None = None
    select_context: bool = False
    casc_path: Path = Path("/var/lib/jenkins/casc_configs/jenkins.yaml")
    casc_owner: str | None = None
    credential_cache: Path = dataclasses.field(default_factory=lambda: default_credential_cache())
    credential_policy: CredentialPolicy = CredentialPolicy.REUSE
    activation: ActivationMode = ActivationMode.RESTART
    service_name: str = "jenkins"
    probe_timeout: float = 10.0
    request_timeout: float = 30.0
    ready_timeout: float = 60.0
    max_wait: float = 300.0


def default_credential_cache() -> Path:
    """Return the XDG data directory used for cached credentials."""
    xdg_data_home = os.environ.get("XDG_DATA_HOME")
    base_path = Path(xdg_data_home) if xdg_data_home else Path.home() / ".local" / "share"
    return base_path / "jenkins-kube" / "credentials"


@dataclasses.dataclass(frozen=True)
class Config:
    """Merged configuration, before the API endpoint is known.

    Attributes:
        settings: Run settings.
        desired: Desired-state options with snake_case keys.

    """

    settings: RunSettings
    desired: dict[str, Any]

    @property
    def external_endpoint(self) -> str | None:
        return self.desired.get("external_endpoint") or None

    def desired_state(self, detected_endpoint: str | None = None) -> DesiredState:
        """Build the immutable desired state for this run.

        Args:
            detected_endpoint: API server URL from the kubeconfig, used when
                no external endpoint was configured.

        Returns:
            The DesiredState.

        Raises:
            ConfigurationError: If a required option is missing or invalid.

        """
        values = dict(self.desired)
        values["external_endpoint"] = self.external_endpoint or detected_endpoint
        for required in ("external_endpoint", "controller_url", "tunnel_address"):
            if not values.get(required):
                raise ConfigurationError(f"Missing required option: {required}")

        if "credential_ttl" in values:
            values["credential_ttl"] = parse_duration(values["credential_ttl"])
            if values["credential_ttl"] < MIN_CREDENTIAL_TTL:
                raise ConfigurationError("credentialTTL must be at least 10m")

        values["pod_template"] = _build(
            PodTemplateSpec, "podTemplate", _snake_keys("podTemplate", values.get("pod_template"))
        )
        values["cloud"] = _cloud_settings(_snake_keys("cloud", values.get("cloud")))

        if values.get("role_rules") is not None:
            rules = values["role_rules"]
            if not isinstance(rules, list) or not all(isinstance(rule, dict) for rule in rules):
                raise ConfigurationError("'roleRules' must be a list of policy rule mappings")
            values["role_rules"] = tuple(rules)
        else:
            values.pop("role_rules", None)

        desired = DesiredState(**values)
        ic(desired)
        return desired


def _cloud_settings(values: dict[str, Any]) -> CloudSettings:
    ca_file = values.pop("ca_certificate_file", None)
    if ca_file:
        try:
            values["server_certificate"] = Path(ca_file).expanduser().read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read CA certificate '{ca_file}': {e}") from e
        values.setdefault("skip_tls_verify", False)
    return _build(CloudSettings, "cloud", values)


def _read_config_file(path: str) -> dict[str, Any]:
    try:
        with open(path) as stream:
            data = yaml.safe_load(stream)
    except FileNotFoundError as err:
        raise ConfigurationError(f"Config file '{path}' does not exist") from err
    except yaml.YAMLError as err:
        raise ConfigurationError(f"Config file '{path}' contains malformed YAML: {err}") from err

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file '{path}' must contain a YAML mapping")
    return data


def load_config(path: str | None = None, overrides: dict[str, Any] | None = None) -> Config:
    """Load and merge configuration.

    Args:
        path: Optional YAML config file.
        overrides: Option values from the command line, keyed by snake_case
            name. None values are ignored.

    Returns:
        The merged Config.

    Raises:
        ConfigurationError: If the file is unreadable or contains unknown options.

    """
    merged = _snake_keys("config", _read_config_file(path)) if path else {}
    merged.update({key: value for key, value in (overrides or {}).items() if value is not None})
    ic(sorted(merged))

    desired = {key: value for key, value in merged.items() if key in _DESIRED_KEYS}
    run_values = {key: value for key, value in merged.items() if key not in _DESIRED_KEYS}

    for key, convert in (
        ("credential_policy", CredentialPolicy),
        ("activation", ActivationMode),
        ("casc_path", Path),
        ("credential_cache", lambda value: Path(value).expanduser()),
    ):
        if key in run_values:
            try:
                run_values[key] = convert(run_values[key])
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {key}: {run_values[key]!r}") from e

    for key in ("probe_timeout", "request_timeout", "ready_timeout", "max_wait"):
        if key in run_values:
            run_values[key] = parse_duration(run_values[key]).total_seconds()

    settings = _build(RunSettings, "config", run_values)
    return Config(settings=settings, desired=desired)
