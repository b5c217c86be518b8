"""Bootstrap sequencer: the ordered pipeline from bare node to verified cluster.

The sequencer is a linear state machine over BootstrapStage. Each transition
runs one external operation (or one readiness gate) and advances the stage
marker by exactly one step. Any fatal error aborts the run with the target
stage recorded on the error; nothing is rolled back, re-running from the
start is the recovery path.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from ..config import DeploymentConfig
from ..errors import BootstrapError, CancelledError, TimeoutError
from ..shared.logging import get_logger
from ..shared.paths import CONTROLPLANE_PATCH_TEMPLATE, PATCH_TEMPLATE, ArtifactPaths
from .addons import AddonInstaller, AddonReport, AddonSpec
from .poller import AttemptCallback, ReadinessPoller, RetryPolicy, raise_if_cancelled
from .prerequisites import PreflightValidator, required_tools
from .render import ConfigRenderer, RawTemplate, RenderedDocument
from .tools import ClusterTool, KubeTool
from .verify import PostInstallVerifier, VerificationReport

logger = get_logger(__name__)

CONTROL_PLANE_NAMESPACE = "kube-system"
CONTROL_PLANE_COMPONENTS = ("kube-apiserver", "kube-controller-manager", "kube-scheduler")
FOUNDATIONAL_RESOURCE = "serviceaccounts"


class BootstrapStage(Enum):
    """Pipeline position. Declaration order is execution order."""

    PREFLIGHT = "preflight"
    SECRETS_GENERATED = "secrets_generated"
    CONFIG_RENDERED = "config_rendered"
    CONFIG_APPLIED = "config_applied"
    NODE_REACHABLE = "node_reachable"
    CLUSTER_BOOTSTRAPPED = "cluster_bootstrapped"
    KUBECONFIG_READY = "kubeconfig_ready"
    CONTROL_PLANE_READY = "control_plane_ready"
    API_RESOURCES_READY = "api_resources_ready"
    ADDONS_INSTALLED = "addons_installed"
    VERIFIED = "verified"

    @property
    def index(self) -> int:
        return list(BootstrapStage).index(self)

    def next(self) -> BootstrapStage:
        """The stage that follows this one."""
        stages = list(BootstrapStage)
        if self.index + 1 >= len(stages):
            raise ValueError(f"{self.value} is the final stage")
        return stages[self.index + 1]


STAGE_DESCRIPTIONS = {
    BootstrapStage.PREFLIGHT: "Preflight checks passed",
    BootstrapStage.SECRETS_GENERATED: "Talos secrets generated",
    BootstrapStage.CONFIG_RENDERED: "Patch templates rendered",
    BootstrapStage.CONFIG_APPLIED: "Machine configuration applied",
    BootstrapStage.NODE_REACHABLE: "Node is reachable",
    BootstrapStage.CLUSTER_BOOTSTRAPPED: "Cluster bootstrapped",
    BootstrapStage.KUBECONFIG_READY: "Kubeconfig written",
    BootstrapStage.CONTROL_PLANE_READY: "Control plane components running",
    BootstrapStage.API_RESOURCES_READY: "API resources available",
    BootstrapStage.ADDONS_INSTALLED: "Add-ons installed",
    BootstrapStage.VERIFIED: "Verification finished",
}


@dataclass(frozen=True)
class BootstrapTimings:
    """Retry budgets and fixed delays for every readiness gate."""

    node_reachable: RetryPolicy = RetryPolicy(60, 5.0, "node reachable")
    kubernetes_api: RetryPolicy = RetryPolicy(60, 5.0, "Kubernetes API")
    control_plane: RetryPolicy = RetryPolicy(60, 5.0, "control plane components")
    api_resources: RetryPolicy = RetryPolicy(30, 2.0, "API resources")
    # Delay after apply-config before the node is polled (it reboots)
    settle_seconds: float = 10.0
    # Delay after the control plane reports running
    stabilization_seconds: float = 10.0


@dataclass
class BootstrapResult:
    """Outcome of a completed run."""

    stage: BootstrapStage
    history: list[BootstrapStage] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    addons: AddonReport | None = None
    verification: VerificationReport | None = None
    bootstrap_skipped: bool = False


class BootstrapSequencer:
    """Drive a Talos node from unconfigured to a verified cluster."""

    def __init__(
        self,
        config: DeploymentConfig,
        cluster: ClusterTool,
        kube: KubeTool,
        paths: ArtifactPaths,
        templates: Sequence[RawTemplate],
        addons: Sequence[AddonSpec] = (),
        tools: Iterable[str] | None = None,
        poller: ReadinessPoller | None = None,
        renderer: ConfigRenderer | None = None,
        validator: PreflightValidator | None = None,
        installer: AddonInstaller | None = None,
        verifier: PostInstallVerifier | None = None,
        timings: BootstrapTimings | None = None,
        force_bootstrap: bool = False,
        on_stage: Callable[[BootstrapStage], None] | None = None,
        on_attempt: AttemptCallback | None = None,
    ):
        """Initialize sequencer.

        Args:
            config: Deployment configuration (read-only).
            cluster: Talos operations.
            kube: Kubernetes operations.
            paths: Where generated artifacts are written.
            templates: Patch templates to render.
            addons: Add-on specs handed to the installer.
            tools: External tools preflight must find (default: derived
                   from the config).
            poller: Readiness poller; its cancel event aborts the run.
            renderer: Template renderer (default: scratch-dir renderer).
            validator: Preflight validator.
            installer: Add-on installer (default: built on ``kube``).
            verifier: Post-install verifier (default: built on ``kube``).
            timings: Retry budgets and delays.
            force_bootstrap: Call bootstrap even if etcd already has members.
            on_stage: Called with each stage reached.
            on_attempt: Progress callback passed to every readiness wait.
        """
        self.config = config
        self.cluster = cluster
        self.kube = kube
        self.paths = paths
        self.templates = list(templates)
        self.addons = list(addons)
        self.tools = set(tools) if tools is not None else required_tools(config)
        self.poller = poller or ReadinessPoller()
        self.renderer = renderer or ConfigRenderer()
        self.validator = validator or PreflightValidator()
        self.installer = installer or AddonInstaller(kube)
        self.verifier = verifier or PostInstallVerifier(kube)
        self.timings = timings or BootstrapTimings()
        self.force_bootstrap = force_bootstrap
        self.on_stage = on_stage
        self.on_attempt = on_attempt

        self._stage = BootstrapStage.PREFLIGHT
        self._history: list[BootstrapStage] = []
        self._rendered: dict[str, RenderedDocument] = {}
        self._result = BootstrapResult(stage=BootstrapStage.PREFLIGHT)

    @property
    def stage(self) -> BootstrapStage:
        """The last stage reached."""
        return self._stage

    @property
    def node(self) -> str:
        return self.config.node_address

    def run(self) -> BootstrapResult:
        """Run the whole pipeline.

        Returns:
            BootstrapResult once the cluster is verified.

        Raises:
            BootstrapError: The first fatal failure, with ``stage`` set to
                            the stage that could not be reached.
        """
        self._run_step(BootstrapStage.PREFLIGHT, self.preflight)

        transitions: list[tuple[BootstrapStage, Callable[[], None]]] = [
            (BootstrapStage.SECRETS_GENERATED, self.generate_secrets),
            (BootstrapStage.CONFIG_RENDERED, self.render_config),
            (BootstrapStage.CONFIG_APPLIED, self.apply_config),
            (BootstrapStage.NODE_REACHABLE, self.wait_for_node),
            (BootstrapStage.CLUSTER_BOOTSTRAPPED, self.bootstrap_cluster),
            (BootstrapStage.KUBECONFIG_READY, self.fetch_kubeconfig),
            (BootstrapStage.CONTROL_PLANE_READY, self.wait_for_control_plane),
            (BootstrapStage.API_RESOURCES_READY, self.wait_for_api_resources),
            (BootstrapStage.ADDONS_INSTALLED, self.install_addons),
            (BootstrapStage.VERIFIED, self.verify),
        ]
        for target, step in transitions:
            self._run_step(target, step)

        self._result.stage = self._stage
        self._result.history = list(self._history)
        return self._result

    def _run_step(self, target: BootstrapStage, step: Callable[[], None]) -> None:
        log = logger.bind(stage=target.value, node=self.node)
        log.info("stage started")
        try:
            raise_if_cancelled(self.poller.cancel_event, target.value)
            step()
            raise_if_cancelled(self.poller.cancel_event, target.value)
        except BootstrapError as e:
            e.stage = e.stage or target.value
            log.error("stage failed", error=str(e))
            raise
        self._advance(target)
        log.info("stage reached")

    def _advance(self, target: BootstrapStage) -> None:
        # Preflight is the initial stage; it is recorded, not advanced into
        if target == BootstrapStage.PREFLIGHT and not self._history:
            self._history.append(target)
        elif self._history and target == self._stage.next():
            self._stage = target
            self._history.append(target)
        else:
            raise RuntimeError(f"Illegal stage transition {self._stage.value} -> {target.value}")

        if self.on_stage:
            self.on_stage(target)

    def _pause(self, seconds: float, reason: str) -> None:
        if seconds <= 0:
            return
        logger.info("waiting", seconds=seconds, reason=reason)
        if self.poller.cancel_event.wait(seconds):
            raise CancelledError(message=f"Cancelled while waiting for {reason}")

    def _wait(self, predicate: Callable[[], bool], policy: RetryPolicy) -> None:
        result = self.poller.wait_until(predicate, policy, self.on_attempt)
        logger.info(
            "condition met",
            condition=policy.description,
            attempts=result.attempts,
            elapsed_seconds=round(result.elapsed_seconds, 1),
        )

    # -- transitions -------------------------------------------------------

    def preflight(self) -> None:
        self.validator.validate(self.config, self.tools, self.templates)

    def generate_secrets(self) -> None:
        self.paths.workdir.mkdir(parents=True, exist_ok=True)
        self.cluster.gen_secrets(self.paths.secrets)

    def render_config(self) -> None:
        documents = self.renderer.render(self.templates, self.config)
        self._rendered = {doc.name: doc for doc in documents}

    def apply_config(self) -> None:
        """Generate the full machine config, then push it to the node."""
        patch = self._rendered[PATCH_TEMPLATE].path
        controlplane_patch = self._rendered[CONTROLPLANE_PATCH_TEMPLATE].path

        self.cluster.gen_config(
            cluster_name=self.config.cluster_name,
            endpoint=self.config.cluster_endpoint,
            secrets_path=self.paths.secrets,
            output_dir=self.paths.workdir,
            patch=patch,
            controlplane_patch=controlplane_patch,
            kubernetes_version=self.config.kubernetes_version,
        )
        self.cluster.configure_endpoint(self.node)
        self.cluster.apply_config(self.node, self.paths.controlplane)

    def wait_for_node(self) -> None:
        self._pause(self.timings.settle_seconds, "node to start applying configuration")
        self._wait(lambda: self.cluster.version(self.node), self.timings.node_reachable)

    def bootstrap_cluster(self) -> None:
        """Bootstrap etcd. Never retried: it is irreversible."""
        if not self.force_bootstrap and self.cluster.is_bootstrapped(self.node):
            msg = f"etcd on {self.node} already has members; skipping bootstrap"
            logger.warning("cluster already bootstrapped", node=self.node)
            self._result.warnings.append(msg)
            self._result.bootstrap_skipped = True
            return
        self.cluster.bootstrap(self.node)

    def fetch_kubeconfig(self) -> None:
        # talosctl merges into an existing file; start from a clean copy
        self.paths.kubeconfig.unlink(missing_ok=True)
        self.cluster.kubeconfig(self.node, self.paths.workdir)

    def wait_for_control_plane(self) -> None:
        self._wait(self.kube.list_nodes, self.timings.kubernetes_api)
        try:
            self._wait(self._control_plane_running, self.timings.control_plane)
        except TimeoutError:
            self._dump_diagnostics("kube-system pods", self._kube_system_pods)
            raise
        self._pause(self.timings.stabilization_seconds, "API server to stabilize")

    def _control_plane_running(self) -> bool:
        return all(
            self.kube.running_pod_count(CONTROL_PLANE_NAMESPACE, f"component={name}") >= 1
            for name in CONTROL_PLANE_COMPONENTS
        )

    def _kube_system_pods(self) -> str:
        return self.kube.get("pods", "-n", CONTROL_PLANE_NAMESPACE)

    def wait_for_api_resources(self) -> None:
        try:
            self._wait(
                lambda: self.kube.has_api_resource(FOUNDATIONAL_RESOURCE),
                self.timings.api_resources,
            )
        except TimeoutError:
            self._dump_diagnostics("api-resources", self.kube.api_resources)
            raise

    def _dump_diagnostics(self, what: str, collect: Callable[[], str]) -> None:
        try:
            output = collect()
        except BootstrapError as e:
            logger.warning("could not collect diagnostics", what=what, error=str(e))
            return
        logger.error("diagnostics", what=what, output=output)

    def install_addons(self) -> None:
        report = self.installer.install_all(self.config, self.addons, self.poller.cancel_event)
        self._result.addons = report
        self._result.warnings.extend(report.warnings)

    def verify(self) -> None:
        report = self.verifier.verify(self.config, self.poller.cancel_event)
        self._result.verification = report
        self._result.warnings.extend(report.warnings)
