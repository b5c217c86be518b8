"""Post-install verification.

Deploys a disposable nginx workload with a volume claim and a service into
a scratch namespace, waits for it to become available, records claim and
service status, and deletes everything again. Problems are reported as
warnings, since the cluster has already passed every readiness gate by the
time this runs. Only cancellation stops it early.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from ..config import ADDON_LOCAL_PATH, DeploymentConfig
from ..errors import BootstrapError, CancelledError
from ..shared.logging import get_logger
from .addons import LOCAL_PATH_STORAGE_CLASS
from .k8s import (
    VERIFY_CLAIM,
    VERIFY_DEPLOYMENT,
    VERIFY_NAMESPACE,
    VERIFY_SERVICE,
    build_verify_manifests,
)
from .poller import raise_if_cancelled
from .tools import KubeTool

logger = get_logger(__name__)

VERIFY_TIMEOUT_SECONDS = 600


@dataclass
class VerificationReport:
    """What the verification workload showed."""

    deployed: bool = False
    deployment_ready: bool = False
    claim_status: str = ""
    service_status: str = ""
    cleaned_up: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.deployed and self.deployment_ready


class PostInstallVerifier:
    """Confirm end-to-end scheduling, networking and storage."""

    def __init__(self, kube: KubeTool, timeout_seconds: int = VERIFY_TIMEOUT_SECONDS):
        self.kube = kube
        self.timeout_seconds = timeout_seconds

    def verify(
        self, config: DeploymentConfig, cancel_event: threading.Event | None = None
    ) -> VerificationReport:
        """Deploy, inspect and remove the verification workload.

        Args:
            config: Deployment configuration; the claim uses the local-path
                    storage class when that add-on was installed.
            cancel_event: When set, stops verification; the workload is
                          still deleted.

        Returns:
            VerificationReport. Failures are recorded as warnings.

        Raises:
            CancelledError: If cancel_event is set.
        """
        raise_if_cancelled(cancel_event, "verification")
        report = VerificationReport()
        storage_class = LOCAL_PATH_STORAGE_CLASS if config.addon_version(ADDON_LOCAL_PATH) else None
        manifests = build_verify_manifests(storage_class)

        try:
            logger.info("deploying verification workload", namespace=VERIFY_NAMESPACE)
            self.kube.apply_manifests(manifests, "verification workload")
            report.deployed = True

            try:
                self.kube.wait_deployment_available(
                    VERIFY_DEPLOYMENT, VERIFY_NAMESPACE, self.timeout_seconds
                )
                report.deployment_ready = True
            except BootstrapError as e:
                raise_if_cancelled(cancel_event, "verification")
                report.warnings.append(f"Deployment not fully ready within timeout: {e}")
                logger.warning("verification deployment not ready", error=str(e))
                self._capture(report, "deployment", VERIFY_DEPLOYMENT)
                self._capture(report, "pods", "-l", "app=nginx")

            report.claim_status = self._capture(report, "pvc", VERIFY_CLAIM)
            report.service_status = self._capture(report, "svc", VERIFY_SERVICE)
        except CancelledError:
            raise
        except BootstrapError as e:
            raise_if_cancelled(cancel_event, "verification")
            report.warnings.append(f"Verification workload could not be deployed: {e}")
            logger.warning("verification deploy failed", error=str(e))
        finally:
            self._cleanup(manifests, report)

        return report

    def _capture(self, report: VerificationReport, *args: str) -> str:
        try:
            output = self.kube.get(*args, "-n", VERIFY_NAMESPACE)
        except BootstrapError as e:
            report.warnings.append(f"Could not read {args[0]} status: {e}")
            return ""
        logger.info("verification status", resource=args[0], status=output.strip())
        return output

    def _cleanup(self, manifests: list[dict], report: VerificationReport) -> None:
        logger.info("deleting verification workload", namespace=VERIFY_NAMESPACE)
        try:
            self.kube.delete_manifests(manifests, "verification workload")
            report.cleaned_up = True
        except BootstrapError as e:
            report.warnings.append(f"Cleanup of verification workload failed: {e}")
            logger.warning("verification cleanup failed", error=str(e))
