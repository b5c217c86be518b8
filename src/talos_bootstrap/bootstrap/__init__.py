"""Bootstrap pipeline for a single-node Talos Kubernetes cluster.

This package provides the pieces behind `talos-bootstrap deploy`:
1. Validates tools and configuration before touching the node
2. Renders machine-config patches and applies the generated config
3. Bootstraps etcd and waits for the control plane
4. Installs the configured add-ons
5. Verifies the cluster with a disposable workload
"""

from .addons import AddonInstaller, AddonReport, AddonSpec, HelmAddons
from .helm import HelmClient, ReleaseSpec
from .k8s import KubectlClient, build_lb_pool_manifests, build_verify_manifests
from .poller import PollResult, ReadinessPoller, RetryPolicy
from .prerequisites import (
    PreflightValidator,
    ToolDetector,
    ToolInfo,
    is_ipv4,
    required_tools,
)
from .render import ConfigRenderer, RawTemplate, RenderedDocument, load_templates
from .sequencer import (
    STAGE_DESCRIPTIONS,
    BootstrapResult,
    BootstrapSequencer,
    BootstrapStage,
    BootstrapTimings,
)
from .talos import TalosctlClient
from .tools import (
    ClusterTool,
    CommandRunner,
    GitClient,
    KubeTool,
    PackageInstaller,
    SourceFetcher,
)
from .verify import PostInstallVerifier, VerificationReport

__all__ = [
    # Prerequisites
    "PreflightValidator",
    "ToolDetector",
    "ToolInfo",
    "is_ipv4",
    "required_tools",
    # Polling
    "ReadinessPoller",
    "RetryPolicy",
    "PollResult",
    # Rendering
    "ConfigRenderer",
    "RawTemplate",
    "RenderedDocument",
    "load_templates",
    # Sequencer
    "BootstrapSequencer",
    "BootstrapStage",
    "BootstrapResult",
    "BootstrapTimings",
    "STAGE_DESCRIPTIONS",
    # Add-ons
    "AddonInstaller",
    "AddonReport",
    "AddonSpec",
    "HelmAddons",
    # Verification
    "PostInstallVerifier",
    "VerificationReport",
    # Tool adapters
    "CommandRunner",
    "ClusterTool",
    "KubeTool",
    "PackageInstaller",
    "SourceFetcher",
    "TalosctlClient",
    "KubectlClient",
    "HelmClient",
    "GitClient",
    "ReleaseSpec",
    "build_lb_pool_manifests",
    "build_verify_manifests",
]
