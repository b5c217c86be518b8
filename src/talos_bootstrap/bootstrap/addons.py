"""Cluster add-on installation.

Add-ons are optional: each one is installed only when a version is
configured for it. They run in a fixed priority order (cloud controller,
CNI, storage, load balancer) because later add-ons assume earlier ones are
in place. Any install failure aborts the run.
"""

from __future__ import annotations

import shutil
import tempfile
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..config import (
    ADDON_CILIUM,
    ADDON_LOCAL_PATH,
    ADDON_METALLB,
    ADDON_PRIORITY,
    ADDON_TALOS_CCM,
    DeploymentConfig,
)
from ..errors import AddonError, BootstrapError, CancelledError
from ..shared.logging import get_logger
from .helm import ReleaseSpec
from .k8s import build_lb_pool_manifests
from .poller import raise_if_cancelled
from .tools import KubeTool, PackageInstaller, SourceFetcher

logger = get_logger(__name__)

ALL_PODS_READY_TIMEOUT_SECONDS = 600

TALOS_CCM_CHART = "oci://ghcr.io/siderolabs/charts/talos-cloud-controller-manager"
CILIUM_REPO = ("cilium", "https://helm.cilium.io/")
METALLB_REPO = ("metallb", "https://metallb.github.io/metallb")
LOCAL_PATH_REPO_URL = "https://github.com/rancher/local-path-provisioner"
LOCAL_PATH_CHART_DIR = "deploy/chart/local-path-provisioner"
LOCAL_PATH_STORAGE_CLASS = "local-path"


@dataclass
class AddonSpec:
    """An optional add-on and how to install it."""

    name: str
    version: str
    install: Callable[[DeploymentConfig], None]

    @property
    def enabled(self) -> bool:
        return bool(self.version.strip())


@dataclass
class AddonReport:
    """Outcome of installing the add-on set."""

    installed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    lb_pool_applied: bool = False
    warnings: list[str] = field(default_factory=list)


def talos_ccm_release(version: str) -> ReleaseSpec:
    return ReleaseSpec(
        name="talos-cloud-controller-manager",
        chart=TALOS_CCM_CHART,
        namespace="kube-system",
        version=version,
        values={
            "logVerbosityLevel": 4,
            "enabledControllers": ["cloud-node", "node-csr-approval", "node-ipam-controller"],
            "extraArgs": [
                "--allocate-node-cidrs",
                "--cidr-allocator-type=RangeAllocator",
                "--node-cidr-mask-size-ipv4=24",
                "--node-cidr-mask-size-ipv6=80",
            ],
            "daemonSet": {"enabled": True},
            "tolerations": [{"effect": "NoSchedule", "operator": "Exists"}],
        },
    )


def cilium_release(version: str) -> ReleaseSpec:
    # kube-proxy is disabled in the machine config; Cilium reaches the API
    # server through KubePrism on localhost:7445
    return ReleaseSpec(
        name="cilium",
        chart="cilium/cilium",
        namespace="kube-system",
        version=version,
        values={
            "ipam": {"mode": "kubernetes"},
            "kubeProxyReplacement": True,
            "securityContext": {
                "capabilities": {
                    "ciliumAgent": [
                        "CHOWN",
                        "KILL",
                        "NET_ADMIN",
                        "NET_RAW",
                        "IPC_LOCK",
                        "SYS_ADMIN",
                        "SYS_RESOURCE",
                        "DAC_OVERRIDE",
                        "FOWNER",
                        "SETGID",
                        "SETUID",
                    ],
                    "cleanCiliumState": ["NET_ADMIN", "SYS_ADMIN", "SYS_RESOURCE"],
                }
            },
            "cgroup": {"autoMount": {"enabled": False}, "hostRoot": "/sys/fs/cgroup"},
            "k8sServiceHost": "localhost",
            "k8sServicePort": 7445,
            "operator": {"replicas": 1},
        },
    )


def local_path_release(chart_path: Path) -> ReleaseSpec:
    return ReleaseSpec(
        name="local-path-storage",
        chart=str(chart_path),
        namespace="local-path-provisioner",
        create_namespace=True,
        values={
            "nodePathMap": [
                {
                    "node": "DEFAULT_PATH_FOR_NON_LISTED_NODES",
                    "paths": ["/var/mnt/local-path-provisioner"],
                }
            ],
            "storageClass": {
                "defaultClass": True,
                "name": LOCAL_PATH_STORAGE_CLASS,
                "reclaimPolicy": "Delete",
                "volumeBindingMode": "WaitForFirstConsumer",
            },
            "helperPod": {"image": "busybox:latest"},
            "namespace": "local-path-provisioner",
        },
    )


def metallb_release(version: str) -> ReleaseSpec:
    return ReleaseSpec(
        name="metallb",
        chart="metallb/metallb",
        namespace="metallb",
        version=version,
        create_namespace=True,
        values={"speaker": {"ignoreExcludeLB": True}},
    )


class HelmAddons:
    """The standard add-on set, installed with Helm."""

    def __init__(self, helm: PackageInstaller, git: SourceFetcher):
        self.helm = helm
        self.git = git

    def specs(self, config: DeploymentConfig) -> list[AddonSpec]:
        """Build AddonSpecs for every known add-on with its configured version."""
        installers = {
            ADDON_TALOS_CCM: self.install_talos_ccm,
            ADDON_CILIUM: self.install_cilium,
            ADDON_LOCAL_PATH: self.install_local_path,
            ADDON_METALLB: self.install_metallb,
        }
        return [
            AddonSpec(name, config.addon_version(name), installers[name])
            for name in ADDON_PRIORITY
        ]

    def install_talos_ccm(self, config: DeploymentConfig) -> None:
        self.helm.upgrade_install(talos_ccm_release(config.addon_version(ADDON_TALOS_CCM)))

    def install_cilium(self, config: DeploymentConfig) -> None:
        self.helm.add_repo(*CILIUM_REPO)
        self.helm.update_repos()
        self.helm.upgrade_install(cilium_release(config.addon_version(ADDON_CILIUM)))

    def install_local_path(self, config: DeploymentConfig) -> None:
        """Install local-path-provisioner from its git repository.

        The chart is not published to a Helm repository, so it is cloned at
        the configured tag into a scratch directory and removed afterwards.
        """
        checkout_root = Path(tempfile.mkdtemp(prefix="talos-bootstrap-lpp-"))
        try:
            checkout = self.git.clone(
                LOCAL_PATH_REPO_URL,
                config.addon_version(ADDON_LOCAL_PATH),
                checkout_root / "local-path-provisioner",
            )
            self.helm.upgrade_install(local_path_release(checkout / LOCAL_PATH_CHART_DIR))
        finally:
            shutil.rmtree(checkout_root, ignore_errors=True)

    def install_metallb(self, config: DeploymentConfig) -> None:
        self.helm.add_repo(*METALLB_REPO)
        self.helm.update_repos()
        self.helm.upgrade_install(metallb_release(config.addon_version(ADDON_METALLB)))


def _priority(spec: AddonSpec) -> int:
    try:
        return ADDON_PRIORITY.index(spec.name)
    except ValueError:
        return len(ADDON_PRIORITY)


class AddonInstaller:
    """Install configured add-ons and apply resources that depend on their CRDs."""

    def __init__(
        self,
        kube: KubeTool,
        pods_ready_timeout_seconds: int = ALL_PODS_READY_TIMEOUT_SECONDS,
    ):
        """Initialize installer.

        Args:
            kube: Kubernetes access used for the readiness wait and the
                  load-balancer pool resources.
            pods_ready_timeout_seconds: Budget for the all-pods-ready wait.
        """
        self.kube = kube
        self.pods_ready_timeout_seconds = pods_ready_timeout_seconds

    def install_all(
        self,
        config: DeploymentConfig,
        addons: Sequence[AddonSpec],
        cancel_event: threading.Event | None = None,
    ) -> AddonReport:
        """Install every enabled add-on in priority order.

        Args:
            config: Deployment configuration.
            addons: Add-on specs; order is normalised to the fixed priority.
            cancel_event: When set, stops the run before the next tool call.

        Returns:
            AddonReport listing installed and skipped add-ons and warnings.

        Raises:
            AddonError: If any enabled add-on fails to install.
            CancelledError: If cancel_event is set.
        """
        report = AddonReport()

        for spec in sorted(addons, key=_priority):
            if not spec.enabled:
                logger.info("skipping add-on, no version configured", addon=spec.name)
                report.skipped.append(spec.name)
                continue

            raise_if_cancelled(cancel_event, f"installation of {spec.name}")
            logger.info("installing add-on", addon=spec.name, version=spec.version)
            try:
                spec.install(config)
            except (AddonError, CancelledError):
                raise
            except (BootstrapError, OSError) as e:
                # A signal also kills the running helm; report the cancellation
                raise_if_cancelled(cancel_event, f"installation of {spec.name}")
                raise AddonError(
                    message=f"Add-on '{spec.name}' {spec.version} failed: {e}",
                    addon=spec.name,
                ) from e
            report.installed.append(spec.name)

        raise_if_cancelled(cancel_event, "add-on installation")
        self._wait_for_pods(report, cancel_event)
        raise_if_cancelled(cancel_event, "add-on installation")
        self._apply_lb_pool(config, report)
        return report

    def _wait_for_pods(self, report: AddonReport, cancel_event: threading.Event | None) -> None:
        logger.info("waiting for all pods to be ready", timeout=self.pods_ready_timeout_seconds)
        try:
            self.kube.wait_all_pods_ready(self.pods_ready_timeout_seconds)
        except BootstrapError as e:
            raise_if_cancelled(cancel_event, "wait for pods")
            msg = f"Some pods may not be ready yet, continuing: {e}"
            logger.warning("pods not ready", error=str(e))
            report.warnings.append(msg)

    def _apply_lb_pool(self, config: DeploymentConfig, report: AddonReport) -> None:
        # The pool objects are MetalLB custom resources; without the release
        # their CRDs do not exist and the apply would fail
        if not config.lb_pool:
            return
        if ADDON_METALLB not in report.installed:
            msg = (
                f"Load-balancer pool {config.lb_pool} configured but {ADDON_METALLB} "
                "is not installed; skipping pool resources"
            )
            logger.warning("skipping load-balancer pool", pool=config.lb_pool)
            report.warnings.append(msg)
            return

        logger.info("applying load-balancer pool", pool=config.lb_pool)
        try:
            self.kube.apply_manifests(build_lb_pool_manifests(config.lb_pool), "metallb pool")
        except BootstrapError as e:
            raise AddonError(
                message=f"Applying load-balancer pool {config.lb_pool} failed: {e}",
                addon=ADDON_METALLB,
            ) from e
        report.lb_pool_applied = True
