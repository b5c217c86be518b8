"""Shared test fixtures for talos-bootstrap tests.

This module provides fakes for every external tool interface:
- FakeClusterTool: talosctl operations (secrets, config, bootstrap, kubeconfig)
- FakeKubeTool: kubectl queries, waits and manifest apply/delete
- FakePackageInstaller: helm repositories and releases
- FakeGit: chart source checkout

All fakes record into one shared CallLog so tests can assert ordering
across tools.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from talos_bootstrap.bootstrap import (
    AddonInstaller,
    BootstrapSequencer,
    BootstrapTimings,
    ConfigRenderer,
    HelmAddons,
    PostInstallVerifier,
    PreflightValidator,
    ReadinessPoller,
    RetryPolicy,
    ToolDetector,
    load_templates,
)
from talos_bootstrap.config import (
    ADDON_CILIUM,
    DeploymentConfig,
)
from talos_bootstrap.errors import tool_error
from talos_bootstrap.shared.paths import ArtifactPaths

# Operations that change the node or cluster
MUTATING_CALLS = {
    "gen_secrets",
    "gen_config",
    "configure_endpoint",
    "apply_config",
    "bootstrap",
    "kubeconfig",
    "apply_manifests",
    "delete_manifests",
    "add_repo",
    "update_repos",
    "upgrade_install",
    "clone",
}


# =============================================================================
# Call log
# =============================================================================


@dataclass
class CallLog:
    """Ordered record of every fake tool call."""

    calls: list[tuple[Any, ...]] = field(default_factory=list)

    def record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def count(self, name: str) -> int:
        return self.names().count(name)

    def index(self, name: str, *args: Any) -> int:
        """Position of the first call matching name (and leading args)."""
        for i, call in enumerate(self.calls):
            if call[0] == name and call[1 : 1 + len(args)] == args:
                return i
        raise ValueError(f"{name}{args} was never called")

    def mutating(self) -> list[str]:
        return [name for name in self.names() if name in MUTATING_CALLS]


def _maybe_fail(fail_on: set[str], name: str, target: str | None = None) -> None:
    if name in fail_on:
        raise tool_error(name, target, 1, f"simulated {name} failure")


# =============================================================================
# Fake tools
# =============================================================================


class FakeClusterTool:
    """In-memory stand-in for talosctl."""

    def __init__(self, log: CallLog, reachable: bool = True, bootstrapped: bool = False):
        self.log = log
        self.reachable = reachable
        self.bootstrapped = bootstrapped
        self.kubeconfig_existed = False
        self.fail_on: set[str] = set()

    def gen_secrets(self, secrets_path: Path) -> None:
        self.log.record("gen_secrets", secrets_path)
        _maybe_fail(self.fail_on, "gen_secrets")
        secrets_path.write_text("cluster: {}\n")

    def gen_config(
        self,
        cluster_name: str,
        endpoint: str,
        secrets_path: Path,
        output_dir: Path,
        patch: Path,
        controlplane_patch: Path,
        kubernetes_version: str,
    ) -> None:
        self.log.record("gen_config", cluster_name, endpoint, patch, controlplane_patch)
        _maybe_fail(self.fail_on, "gen_config")
        (output_dir / "controlplane.yaml").write_text("machine: {}\n")
        (output_dir / "talosconfig").write_text("context: talos1\n")

    def configure_endpoint(self, node: str) -> None:
        self.log.record("configure_endpoint", node)

    def apply_config(self, node: str, config_file: Path) -> None:
        self.log.record("apply_config", node, config_file)
        _maybe_fail(self.fail_on, "apply_config", node)

    def version(self, node: str) -> bool:
        self.log.record("version", node)
        return self.reachable

    def is_bootstrapped(self, node: str) -> bool:
        self.log.record("is_bootstrapped", node)
        return self.bootstrapped

    def bootstrap(self, node: str) -> None:
        self.log.record("bootstrap", node)
        _maybe_fail(self.fail_on, "bootstrap", node)
        self.bootstrapped = True

    def kubeconfig(self, node: str, output_dir: Path) -> None:
        self.log.record("kubeconfig", node, output_dir)
        self.kubeconfig_existed = (output_dir / "kubeconfig").exists()
        (output_dir / "kubeconfig").write_text("apiVersion: v1\n")


class FakeKubeTool:
    """In-memory stand-in for kubectl."""

    def __init__(self, log: CallLog):
        self.log = log
        self.api_ready = True
        self.control_plane_running = True
        self.resources = {"serviceaccounts", "pods", "services"}
        self.fail_on: set[str] = set()
        self.applied: list[tuple[str, list[dict[str, Any]]]] = []

    def list_nodes(self) -> bool:
        self.log.record("list_nodes")
        return self.api_ready

    def running_pod_count(self, namespace: str, selector: str) -> int:
        self.log.record("running_pod_count", namespace, selector)
        return 1 if self.control_plane_running else 0

    def has_api_resource(self, resource: str, api_group: str = "") -> bool:
        self.log.record("has_api_resource", resource, api_group)
        return resource in self.resources

    def wait_all_pods_ready(self, timeout_seconds: int) -> None:
        self.log.record("wait_all_pods_ready", timeout_seconds)
        _maybe_fail(self.fail_on, "wait_all_pods_ready")

    def wait_deployment_available(self, name: str, namespace: str, timeout_seconds: int) -> None:
        self.log.record("wait_deployment_available", name, namespace)
        _maybe_fail(self.fail_on, "wait_deployment_available", name)

    def apply_manifests(self, manifests: list[dict[str, Any]], label: str) -> None:
        self.log.record("apply_manifests", label)
        _maybe_fail(self.fail_on, "apply_manifests", label)
        self.applied.append((label, manifests))

    def delete_manifests(self, manifests: list[dict[str, Any]], label: str) -> None:
        self.log.record("delete_manifests", label)
        _maybe_fail(self.fail_on, "delete_manifests", label)

    def get(self, *args: str) -> str:
        self.log.record("get", *args)
        _maybe_fail(self.fail_on, "get")
        return f"{args[0]} status"

    def api_resources(self) -> str:
        self.log.record("api_resources")
        return "\n".join(sorted(self.resources))


class FakePackageInstaller:
    """In-memory stand-in for helm."""

    def __init__(self, log: CallLog):
        self.log = log
        self.fail_releases: set[str] = set()
        self.releases = []

    def add_repo(self, name: str, url: str) -> None:
        self.log.record("add_repo", name)

    def update_repos(self) -> None:
        self.log.record("update_repos")

    def upgrade_install(self, release) -> None:
        self.log.record("upgrade_install", release.name)
        if release.name in self.fail_releases:
            raise tool_error("helm upgrade --install", release.name, 1, "chart not found")
        self.releases.append(release)


class FakeGit:
    """In-memory stand-in for git."""

    def __init__(self, log: CallLog):
        self.log = log

    def clone(self, url: str, ref: str, dest: Path) -> Path:
        self.log.record("clone", url, ref)
        return dest


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def call_log() -> CallLog:
    return CallLog()


@pytest.fixture
def cluster_tool(call_log) -> FakeClusterTool:
    return FakeClusterTool(call_log)


@pytest.fixture
def kube_tool(call_log) -> FakeKubeTool:
    return FakeKubeTool(call_log)


@pytest.fixture
def helm_tool(call_log) -> FakePackageInstaller:
    return FakePackageInstaller(call_log)


@pytest.fixture
def git_tool(call_log) -> FakeGit:
    return FakeGit(call_log)


@pytest.fixture
def deployment_config() -> DeploymentConfig:
    """A complete config with only the CNI add-on enabled."""
    return DeploymentConfig(
        node_address="10.0.0.5",
        kubernetes_version="1.31.0",
        registry_username="robot",
        registry_password="s3cret",
        registry_host="harbor.example.com",
        install_image="ghcr.io/siderolabs/installer:v1.8.0",
        local_cidr="10.0.0.0/24",
        addons={ADDON_CILIUM: "1.18.0"},
    )


@pytest.fixture
def all_tools_detector() -> ToolDetector:
    """Detector that finds every tool on PATH."""
    return ToolDetector(which=lambda name: f"/usr/local/bin/{name}")


@pytest.fixture
def fast_timings() -> BootstrapTimings:
    """Timings with short budgets and no sleeping."""
    return BootstrapTimings(
        node_reachable=RetryPolicy(5, 0, "node reachable"),
        kubernetes_api=RetryPolicy(5, 0, "Kubernetes API"),
        control_plane=RetryPolicy(5, 0, "control plane components"),
        api_resources=RetryPolicy(5, 0, "API resources"),
        settle_seconds=0,
        stabilization_seconds=0,
    )


@pytest.fixture
def make_sequencer(
    tmp_path,
    call_log,
    cluster_tool,
    kube_tool,
    helm_tool,
    git_tool,
    all_tools_detector,
    fast_timings,
):
    """Factory building a sequencer wired to the fakes.

    Keyword arguments override the sequencer's constructor arguments.
    """

    def _make(config: DeploymentConfig, **overrides) -> BootstrapSequencer:
        kwargs = {
            "config": config,
            "cluster": cluster_tool,
            "kube": kube_tool,
            "paths": ArtifactPaths(tmp_path / "work"),
            "templates": load_templates(),
            "addons": HelmAddons(helm_tool, git_tool).specs(config),
            "poller": ReadinessPoller(),
            "renderer": ConfigRenderer(tmp_path / "rendered"),
            "validator": PreflightValidator(all_tools_detector),
            "installer": AddonInstaller(kube_tool, pods_ready_timeout_seconds=1),
            "verifier": PostInstallVerifier(kube_tool, timeout_seconds=1),
            "timings": fast_timings,
        }
        kwargs.update(overrides)
        return BootstrapSequencer(**kwargs)

    return _make
