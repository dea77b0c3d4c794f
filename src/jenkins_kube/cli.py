#!/usr/bin/env python
"""Command-line interface for jenkins-kube.

This module provides the main CLI entry point: it merges configuration from
the config file, environment and flags, runs the reconciliation pipeline and
turns the outcome into a terminal summary and an exit code naming the
failing stage.
"""

import signal
import sys
import threading
from collections.abc import Generator
from contextlib import contextmanager

import click
from icecream import ic
from rich.markup import escape

from jenkins_kube import __version__, console
from jenkins_kube.activator import ControllerActivator
from jenkins_kube.applier import ResourceApplier
from jenkins_kube.cluster import Cluster
from jenkins_kube.config import RunSettings, load_config
from jenkins_kube.credentials import CredentialMaterializer, CredentialStore
from jenkins_kube.exceptions import ActivationRejectedError, ApplyFailedError, JenkinsKubeError
from jenkins_kube.models import ActivationMode, CredentialPolicy, DesiredState
from jenkins_kube.reconciler import Reconciler, RunReport
from jenkins_kube.renderer import TEST_JOB_NAME


def build_reconciler(
    desired: DesiredState,
    cluster: Cluster,
    settings: RunSettings,
    *,
    cancel_event: threading.Event,
    api_user: str | None = None,
    api_token: str | None = None,
) -> Reconciler:
    """Wire the stages of one run together.

    Args:
        desired: Desired state for the run.
        cluster: Connected cluster.
        settings: Run settings.
        cancel_event: Event checked between stages.
        api_user: Controller user for the reload API.
        api_token: Controller API token for the reload API.

    Returns:
        A Reconciler ready to run.

    """
    return Reconciler(
        desired,
        cluster,
        applier=ResourceApplier(
            cluster,
            request_timeout=settings.request_timeout,
            ready_timeout=settings.ready_timeout,
        ),
        materializer=CredentialMaterializer(
            cluster,
            CredentialStore(settings.credential_cache),
            policy=settings.credential_policy,
            request_timeout=settings.request_timeout,
        ),
        activator=ControllerActivator(
            desired.controller_url,
            settings.casc_path,
            mode=settings.activation,
            service_name=settings.service_name,
            owner=settings.casc_owner,
            max_wait=settings.max_wait,
            api_user=api_user,
            api_token=api_token,
        ),
        probe_timeout=settings.probe_timeout,
        cancel_event=cancel_event,
    )


@contextmanager
def cancellation_handlers(cancel_event: threading.Event) -> Generator[None, None, None]:
    """Turn the first SIGINT/SIGTERM into a cancellation request.

    A second signal interrupts immediately.
    """

    def _handle(signum: int, frame: object) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        console.warning("Cancellation requested; stopping before the next stage")
        cancel_event.set()

    previous = {sig: signal.signal(sig, _handle) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def report_failure(error: JenkinsKubeError, report: RunReport | None) -> None:
    """Print the terminal failure message and the progress made before it.

    Args:
        error: The error that stopped the run.
        report: Progress of the run, if it got as far as starting.

    """
    console.newline()
    console.error(f"Stage '{error.stage}' failed: {escape(str(error))}")

    if isinstance(error, ApplyFailedError):
        rows = [(str(identity), outcome.value) for identity, outcome in error.applied]
        rows.append((str(error.failed_at), "[error]failed[/error]"))
        console.applied_table("Objects", rows)
        if error.retryable:
            console.info(f"The failure looks transient; re-run to resume from {error.failed_at}")
        else:
            console.info(f"Fix {error.failed_at} and re-run; objects above are already converged")
    elif isinstance(error, ActivationRejectedError) and error.detail:
        console.step(f"Controller detail: {escape(error.detail)}")

    if report is not None and report.credential is not None:
        console.step(f"Credential in use: {report.credential.masked}")

    items = {"Stage": error.stage, "Exit code": str(error.exit_code)}
    if report is not None and report.cluster is not None:
        items["Kubernetes API"] = report.cluster.endpoint
    console.summary_panel("Reconciliation Failed", items, failed=True)


def report_success(desired: DesiredState, report: RunReport, settings: RunSettings) -> None:
    """Print the run summary panel."""
    items = {
        "Jenkins URL": desired.controller_url,
        "Agent tunnel": desired.tunnel_address,
        "Kubernetes API": desired.external_endpoint,
        "Kubernetes version": report.cluster.version if report.cluster else "unknown",
        "Namespace": desired.namespace,
        "Cloud": desired.cloud.name,
        "Pod template": f"{desired.pod_template.name} (labels: {desired.pod_template.label})",
        "Credential": desired.cloud.credential_id,
        "Configuration": str(settings.casc_path),
    }
    if report.credential is not None:
        items["Credential"] += f" {report.credential.masked}"
    if desired.cloud.seed_test_job:
        items["Test job"] = TEST_JOB_NAME

    console.newline()
    console.applied_table("Objects", [(str(identity), outcome.value) for identity, outcome in report.applied])
    console.summary_panel("Jenkins Kubernetes Cloud Ready", items)


@click.command(help="Converge a Jenkins controller and an existing Kubernetes cluster to a desired state")
@click.option("--version", "-v", required=False, is_flag=True, help="print version")
@click.option("--debug", required=False, is_flag=True, help="print debug information")
@click.option(
    "--config", "-c", "config_file", required=False, envvar="JENKINS_KUBE_CONFIG", help="desired-state YAML file"
)
@click.option("--kubeconfig", required=False, envvar="KUBECONFIG_PATH", help="kubeconfig of the existing cluster")
@click.option("--context", required=False, help="kubeconfig context to use")
@click.option("--select", required=False, is_flag=True, default=False, help="prompt for context select")
@click.option("--external-endpoint", required=False, envvar="K8S_API_SERVER", help="Kubernetes API server URL")
@click.option("--controller-url", required=False, envvar="JENKINS_URL", help="Jenkins URL agents connect to")
@click.option("--tunnel-address", required=False, envvar="JENKINS_TUNNEL", help="Jenkins agent tunnel host:port")
@click.option("--namespace", "-n", required=False, help="namespace for Jenkins agents")
@click.option("--service-account", required=False, help="service account agents and Jenkins use")
@click.option("--credential-ttl", required=False, help="token lifetime, e.g. 8760h")
@click.option(
    "--credential-policy",
    required=False,
    type=click.Choice([policy.value for policy in CredentialPolicy]),
    help="reuse an unexpired cached token or always reissue",
)
@click.option("--credential-cache", required=False, help="directory for cached tokens")
@click.option("--casc-path", required=False, help="JCasC file the controller reads")
@click.option(
    "--activation",
    required=False,
    type=click.Choice([mode.value for mode in ActivationMode]),
    help="how the controller picks up the configuration",
)
@click.option("--max-wait", required=False, help="maximum wait for the controller, e.g. 5m")
@click.option("--api-user", required=False, envvar="JENKINS_API_USER", help="Jenkins user for the reload API")
@click.option("--api-token", required=False, envvar="JENKINS_API_TOKEN", help="Jenkins API token for the reload API")
def cli(
    version: bool,
    debug: bool,
    config_file: str | None,
    kubeconfig: str | None,
    context: str | None,
    select: bool,
    external_endpoint: str | None,
    controller_url: str | None,
    tunnel_address: str | None,
    namespace: str | None,
    service_account: str | None,
    credential_ttl: str | None,
    credential_policy: str | None,
    credential_cache: str | None,
    casc_path: str | None,
    activation: str | None,
    max_wait: str | None,
    api_user: str | None,
    api_token: str | None,
) -> None:
    """Process CLI arguments and run the reconciliation.

    Exits with 0 once the controller is live, or with the failing stage's
    exit code.

    """
    if not debug:
        ic.disable()

    if version:
        click.echo(__version__)
        return

    overrides = {
        "kubeconfig": kubeconfig,
        "context": context,
        "select_context": True if select else None,
        "external_endpoint": external_endpoint,
        "controller_url": controller_url,
        "tunnel_address": tunnel_address,
        "namespace": namespace,
        "service_account": service_account,
        "credential_ttl": credential_ttl,
        "credential_policy": credential_policy,
        "credential_cache": credential_cache,
        "casc_path": casc_path,
        "activation": activation,
        "max_wait": max_wait,
    }

    cancel_event = threading.Event()
    reconciler: Reconciler | None = None
    try:
        with cancellation_handlers(cancel_event):
            cfg = load_config(config_file, overrides)
            settings = cfg.settings
            cluster = Cluster(
                kubeconfig=settings.kubeconfig,
                context=settings.context,
                select_context=settings.select_context,
                endpoint=cfg.external_endpoint,
            )
            desired = cfg.desired_state(detected_endpoint=cluster.endpoint)
            reconciler = build_reconciler(
                desired,
                cluster,
                settings,
                cancel_event=cancel_event,
                api_user=api_user,
                api_token=api_token,
            )
            report = reconciler.run()
    except JenkinsKubeError as e:
        report_failure(e, reconciler.report if reconciler else None)
        sys.exit(e.exit_code)

    report_success(desired, report, settings)


if __name__ == "__main__":
    cli()
