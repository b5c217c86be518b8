"""Kubernetes access and manifest generation for the bootstrap pipeline.

KubectlClient implements the KubeTool interface on top of kubectl. The
manifest builders produce the load-balancer address pool and the disposable
verification workload as plain dicts, applied through kubectl on stdin.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .tools import CommandRunner

# Per-call timeout for readiness queries
QUERY_TIMEOUT_SECONDS = 15

# Load-balancer custom resources
METALLB_NAMESPACE = "metallb"
METALLB_POOL_NAME = "default-ip-pool"
METALLB_ADVERTISEMENT_NAME = "l2-ip"

# Verification workload
VERIFY_NAMESPACE = "talos-bootstrap-verify"
VERIFY_DEPLOYMENT = "nginx-deployment"
VERIFY_SERVICE = "nginx-service"
VERIFY_CLAIM = "nginx-pvc"
VERIFY_IMAGE = "nginx:stable"


def dump_manifests(manifests: list[dict[str, Any]]) -> str:
    """Serialize manifests as a multi-document YAML stream."""
    return yaml.dump_all(manifests, default_flow_style=False, sort_keys=False)


class KubectlClient:
    """Query and mutate the cluster with kubectl."""

    def __init__(self, kubeconfig: Path | str | None = None, runner: CommandRunner | None = None):
        """Initialize client.

        Args:
            kubeconfig: Path to kubeconfig file.
            runner: Command runner (default: a new CommandRunner).
        """
        self.kubeconfig = kubeconfig
        self.runner = runner or CommandRunner()

    def _kubectl_cmd(self) -> list[str]:
        """Build base kubectl command."""
        cmd = ["kubectl"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", str(self.kubeconfig)])
        return cmd

    def list_nodes(self) -> bool:
        """Whether the API server answers a list-nodes query."""
        return self.runner.succeeds(
            self._kubectl_cmd() + ["get", "nodes", "--request-timeout=5s"],
            timeout=QUERY_TIMEOUT_SECONDS,
        )

    def running_pod_count(self, namespace: str, selector: str) -> int:
        """Number of pods matching selector in phase Running."""
        result = self.runner.run(
            self._kubectl_cmd()
            + [
                "-n",
                namespace,
                "get",
                "pods",
                "-l",
                selector,
                "-o",
                "jsonpath={range .items[*]}{.status.phase}{\"\\n\"}{end}",
            ],
            operation="kubectl get pods",
            target=f"{namespace}/{selector}",
            timeout=QUERY_TIMEOUT_SECONDS,
        )
        return sum(1 for line in result.stdout.splitlines() if line.strip() == "Running")

    def has_api_resource(self, resource: str, api_group: str = "") -> bool:
        """Whether the API server lists ``resource`` in ``api_group``."""
        result = self.runner.run(
            self._kubectl_cmd() + ["api-resources", f"--api-group={api_group}", "-o", "name"],
            operation="kubectl api-resources",
            target=api_group or "core",
            timeout=QUERY_TIMEOUT_SECONDS,
        )
        names = {line.strip().split(".", 1)[0] for line in result.stdout.splitlines()}
        return resource in names

    def wait_all_pods_ready(self, timeout_seconds: int) -> None:
        """Block until every pod in every namespace is Ready."""
        self.runner.run(
            self._kubectl_cmd()
            + [
                "wait",
                "--for=condition=ready",
                "pods",
                "--all",
                "--all-namespaces",
                f"--timeout={timeout_seconds}s",
            ],
            operation="kubectl wait pods",
            target="all namespaces",
        )

    def wait_deployment_available(self, name: str, namespace: str, timeout_seconds: int) -> None:
        """Block until a deployment reports condition Available."""
        self.runner.run(
            self._kubectl_cmd()
            + [
                "-n",
                namespace,
                "wait",
                "--for=condition=available",
                f"deployment/{name}",
                f"--timeout={timeout_seconds}s",
            ],
            operation="kubectl wait deployment",
            target=f"{namespace}/{name}",
        )

    def apply_manifests(self, manifests: list[dict[str, Any]], label: str) -> None:
        """Apply manifests passed on stdin.

        Args:
            manifests: Kubernetes objects as dicts.
            label: Name used in error messages.
        """
        self.runner.run(
            self._kubectl_cmd() + ["apply", "-f", "-"],
            operation="kubectl apply",
            target=label,
            input=dump_manifests(manifests),
        )

    def delete_manifests(self, manifests: list[dict[str, Any]], label: str) -> None:
        """Delete the objects described by manifests, ignoring missing ones."""
        self.runner.run(
            self._kubectl_cmd() + ["delete", "--ignore-not-found", "--wait=false", "-f", "-"],
            operation="kubectl delete",
            target=label,
            input=dump_manifests(manifests),
        )

    def get(self, *args: str) -> str:
        """Run ``kubectl get`` and return its text output."""
        result = self.runner.run(
            self._kubectl_cmd() + ["get", *args],
            operation="kubectl get",
            target=" ".join(args),
            timeout=QUERY_TIMEOUT_SECONDS,
        )
        return result.stdout

    def api_resources(self) -> str:
        """Full ``kubectl api-resources`` listing, for diagnostics."""
        result = self.runner.run(
            self._kubectl_cmd() + ["api-resources"],
            operation="kubectl api-resources",
            timeout=QUERY_TIMEOUT_SECONDS,
        )
        return result.stdout


def build_lb_pool_manifests(pool: str) -> list[dict[str, Any]]:
    """Build the MetalLB address pool and its L2 advertisement."""
    advertisement = {
        "apiVersion": "metallb.io/v1beta1",
        "kind": "L2Advertisement",
        "metadata": {"name": METALLB_ADVERTISEMENT_NAME, "namespace": METALLB_NAMESPACE},
        "spec": {"ipAddressPools": [METALLB_POOL_NAME]},
    }

    address_pool = {
        "apiVersion": "metallb.io/v1beta1",
        "kind": "IPAddressPool",
        "metadata": {"name": METALLB_POOL_NAME, "namespace": METALLB_NAMESPACE},
        "spec": {"addresses": [pool]},
    }

    return [advertisement, address_pool]


def build_verify_manifests(storage_class: str | None = None) -> list[dict[str, Any]]:
    """Build the disposable nginx workload used to verify the cluster.

    The deployment mounts a claim so scheduling, networking and volume
    provisioning are all exercised.

    Args:
        storage_class: StorageClass for the claim (None = cluster default).
    """
    labels = {"app": "nginx"}

    namespace = {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": VERIFY_NAMESPACE},
    }

    claim_spec: dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": "128Mi"}},
    }
    if storage_class:
        claim_spec["storageClassName"] = storage_class

    claim = {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": VERIFY_CLAIM, "namespace": VERIFY_NAMESPACE},
        "spec": claim_spec,
    }

    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": VERIFY_DEPLOYMENT, "namespace": VERIFY_NAMESPACE},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [
                        {
                            "name": "nginx",
                            "image": VERIFY_IMAGE,
                            "ports": [{"containerPort": 80}],
                            "volumeMounts": [
                                {"name": "data", "mountPath": "/usr/share/nginx/html"}
                            ],
                            "readinessProbe": {
                                "tcpSocket": {"port": 80},
                                "initialDelaySeconds": 5,
                                "periodSeconds": 5,
                            },
                        }
                    ],
                    "volumes": [
                        {"name": "data", "persistentVolumeClaim": {"claimName": VERIFY_CLAIM}}
                    ],
                },
            },
        },
    }

    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": VERIFY_SERVICE, "namespace": VERIFY_NAMESPACE},
        "spec": {
            "type": "LoadBalancer",
            "selector": labels,
            "ports": [{"port": 80, "targetPort": 80}],
        },
    }

    return [namespace, claim, deployment, service]
