"""Reconciliation pipeline.

Runs the stages in order: probe the cluster, apply the objects, materialize
the token, render the controller configuration and activate it. Each stage
needs the previous stage's result, so the stages run sequentially. A
cancellation request is honoured before every mutating stage; nothing is
rolled back.
"""

import threading
from dataclasses import dataclass, field

from icecream import ic

from jenkins_kube import console
from jenkins_kube.activator import ControllerActivator
from jenkins_kube.applier import ResourceApplier
from jenkins_kube.cluster import Cluster
from jenkins_kube.credentials import CredentialMaterializer
from jenkins_kube.exceptions import ReconcileCancelled
from jenkins_kube.manifests import build_resource_objects
from jenkins_kube.models import (
    AppliedSet,
    ClusterInfo,
    ControllerConfigDocument,
    Credential,
    DesiredState,
    LiveStatus,
)
from jenkins_kube.renderer import render

STAGES = ("Probe cluster", "Apply objects", "Materialize credential", "Render configuration", "Activate controller")


@dataclass
class RunReport:
    """What a run achieved; filled in stage by stage.

    Attributes:
        cluster: Probe result.
        applied: Objects converged, including after a partial failure.
        credential: Token handed to the renderer.
        document: Rendered configuration.
        live: Activation result.

    """

    cluster: ClusterInfo | None = None
    applied: AppliedSet = field(default_factory=AppliedSet)
    credential: Credential | None = None
    document: ControllerConfigDocument | None = None
    live: LiveStatus | None = None


class Reconciler:
    """Drives the cluster and the controller to the desired state.

    Attributes:
        desired: Desired state for this run.
        cluster: Cluster connection.
        applier: Resource applier.
        materializer: Credential materializer.
        activator: Controller activator.
        cancel_event: Set to request cancellation at the next checkpoint.
        report: Progress of the current run.

    """

    def __init__(
        self,
        desired: DesiredState,
        cluster: Cluster,
        *,
        applier: ResourceApplier,
        materializer: CredentialMaterializer,
        activator: ControllerActivator,
        probe_timeout: float = 10.0,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.desired = desired
        self.cluster = cluster
        self.applier = applier
        self.materializer = materializer
        self.activator = activator
        self.probe_timeout = probe_timeout
        self.cancel_event = cancel_event or threading.Event()
        self.report = RunReport()

    def _checkpoint(self, index: int) -> None:
        if self.cancel_event.is_set():
            raise ReconcileCancelled(f"Cancelled before stage '{STAGES[index]}'")
        console.stage(index + 1, STAGES[index])

    def run(self) -> RunReport:
        """Run every stage once.

        Returns:
            The completed RunReport.

        Raises:
            JenkinsKubeError: The failing stage's error. ``self.report``
                keeps the progress made before it.

        """
        desired = self.desired

        self._checkpoint(0)
        self.report.cluster = self.cluster.probe(timeout=self.probe_timeout)

        self._checkpoint(1)
        self.report.applied = self.applier.apply(build_resource_objects(desired))

        self._checkpoint(2)
        self.report.credential = self.materializer.materialize(
            desired.service_account, desired.namespace, desired.credential_ttl
        )

        self._checkpoint(3)
        self.report.document = render(desired, self.report.credential, applied=self.report.applied)
        ic(self.report.document)
        console.success(
            f"Rendered configuration; credential referenced as {console.highlight(self.report.document.credential_id)}"
        )

        self._checkpoint(4)
        self.report.live = self.activator.activate(self.report.document)
        return self.report
