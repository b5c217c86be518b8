"""Integration tests for the talos-bootstrap CLI.

Tests the full CLI flow with the sequencer wired to fake tools.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from talos_bootstrap import __version__
from talos_bootstrap.config import ADDON_ENV_VARS, ENV_VARS
from talos_bootstrap.errors import EXIT_CANCELLED, EXIT_FAILURE
from talos_bootstrap.main import cli

COMPLETE_ENV = {
    "MASTER_IP": "10.0.0.5",
    "HARBOR_CONTAINERD_USERNAME": "robot",
    "HARBOR_CONTAINERD_PASSWORD": "s3cret",
    "HARBOR_REGISTRY_HOST": "harbor.example.com",
    "TALOS_INSTALL_IMAGE": "ghcr.io/siderolabs/installer:v1.8.0",
    "LOCAL_CIDR": "10.0.0.0/24",
    "CILIUM_VERSION": "1.18.0",
}


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Remove deployment variables inherited from the developer's shell."""
    for env in [*ENV_VARS.values(), *ADDON_ENV_VARS.values()]:
        monkeypatch.delenv(env, raising=False)


@pytest.fixture
def invoke(tmp_path):
    """Invoke the CLI with logs sent to a file."""
    runner = CliRunner()

    def _invoke(args, env=None):
        return runner.invoke(
            cli,
            ["--log-file", str(tmp_path / "bootstrap.log"), *args],
            env=env or {},
        )

    return _invoke


@pytest.fixture
def fake_sequencer(make_sequencer):
    """Patch build_sequencer so deploy drives the fakes.

    Yields a dict of hooks; set "before_run" to a callable taking the
    poller to act on it before the pipeline starts.
    """
    hooks = {}

    def build(config, workdir, templates_dir=None, force_bootstrap=False, poller=None, progress=None):
        if hooks.get("before_run"):
            hooks["before_run"](poller)
        return make_sequencer(
            config,
            poller=poller,
            force_bootstrap=force_bootstrap,
            on_stage=progress.on_stage,
            on_attempt=progress.on_attempt,
        )

    with patch("talos_bootstrap.commands.deploy.build_sequencer", side_effect=build):
        yield hooks


class TestCli:
    """Tests for the command group."""

    def test_help(self, invoke):
        """Test the group lists its commands."""
        result = invoke(["--help"])
        assert result.exit_code == 0
        for command in ("deploy", "preflight", "render"):
            assert command in result.output

    def test_version(self):
        """Test --version prints the package version."""
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestDeployCommand:
    """Tests for talos-bootstrap deploy."""

    def test_success(self, invoke, fake_sequencer, call_log):
        """Test a healthy run exits zero and prints the summary."""
        result = invoke(["deploy"], env=COMPLETE_ENV)

        assert result.exit_code == 0, result.output
        assert "✓ Talos secrets generated" in result.output
        assert "✓ Verification finished" in result.output
        assert "cilium" in result.output
        assert "✓ Cluster ready" in result.output
        assert call_log.count("bootstrap") == 1

    def test_preflight_failure(self, invoke, fake_sequencer, call_log):
        """Test a missing node address fails at preflight with one error line."""
        env = {k: v for k, v in COMPLETE_ENV.items() if k != "MASTER_IP"}

        result = invoke(["deploy"], env=env)

        assert result.exit_code == EXIT_FAILURE
        assert "✗ Stage 'preflight' failed: MASTER_IP is not set" in result.output
        assert call_log.mutating() == []

    def test_unfilled_template_value(self, invoke, fake_sequencer, call_log):
        """Test a template value left empty fails at preflight before secrets exist."""
        env = {k: v for k, v in COMPLETE_ENV.items() if k != "TALOS_INSTALL_IMAGE"}

        result = invoke(["deploy"], env=env)

        assert result.exit_code == EXIT_FAILURE
        assert "✗ Stage 'preflight' failed: patch.yaml needs values for:" in result.output
        assert "TALOS_INSTALL_IMAGE" in result.output
        assert call_log.calls == []

    def test_node_unreachable(self, invoke, fake_sequencer, cluster_tool, call_log):
        """Test a timeout exits non-zero naming the node stage."""
        cluster_tool.reachable = False

        result = invoke(["deploy"], env=COMPLETE_ENV)

        assert result.exit_code == EXIT_FAILURE
        assert "✗ Stage 'node_reachable' failed:" in result.output
        assert "bootstrap" not in call_log.names()

    def test_cancelled(self, invoke, fake_sequencer, call_log):
        """Test cancellation exits with the interrupt status."""
        fake_sequencer["before_run"] = lambda poller: poller.cancel()

        result = invoke(["deploy"], env=COMPLETE_ENV)

        assert result.exit_code == EXIT_CANCELLED
        assert "Stage 'preflight' failed: Cancelled" in result.output
        assert call_log.mutating() == []

    def test_force_bootstrap_flag(self, invoke, fake_sequencer, cluster_tool, call_log):
        """Test --force-bootstrap reaches the sequencer."""
        cluster_tool.bootstrapped = True

        result = invoke(["deploy", "--force-bootstrap"], env=COMPLETE_ENV)

        assert result.exit_code == 0, result.output
        assert call_log.count("bootstrap") == 1

    def test_config_file(self, tmp_path, invoke, fake_sequencer, call_log):
        """Test values from a config file, overridden by the environment."""
        config_file = tmp_path / "cluster.yaml"
        config_file.write_text(
            yaml.safe_dump(
                {
                    "node_address": "10.0.0.9",
                    "registry_password": "from-file",
                    "install_image": "ghcr.io/siderolabs/installer:v1.8.0",
                    "registry_host": "harbor.example.com",
                    "registry_username": "robot",
                    "addons": {"metallb": "0.14.8"},
                }
            )
        )

        result = invoke(
            ["deploy", "--config", str(config_file)], env={"MASTER_IP": "10.0.0.5"}
        )

        assert result.exit_code == 0, result.output
        assert ("apply_config", "10.0.0.5") == call_log.calls[call_log.index("apply_config")][:2]
        assert call_log.index("upgrade_install", "metallb") > 0

    def test_invalid_config_file(self, tmp_path, invoke, fake_sequencer):
        """Test a malformed config file is a preflight failure."""
        config_file = tmp_path / "cluster.yaml"
        config_file.write_text("- not\n- a mapping\n")

        result = invoke(["deploy", "--config", str(config_file)])

        assert result.exit_code == EXIT_FAILURE
        assert "✗ Stage 'preflight' failed:" in result.output

    def test_warnings_printed(self, invoke, fake_sequencer, kube_tool):
        """Test verifier warnings appear in the final report."""
        kube_tool.fail_on.add("wait_deployment_available")

        result = invoke(["deploy"], env=COMPLETE_ENV)

        assert result.exit_code == 0, result.output
        assert "⚠" in result.output


class TestPreflightCommand:
    """Tests for talos-bootstrap preflight."""

    def test_passes(self, invoke):
        """Test a complete environment with every tool installed."""
        with patch("shutil.which", return_value="/usr/local/bin/tool"):
            with patch("subprocess.run", return_value=MagicMock(returncode=0, stdout="v1.0\n")):
                result = invoke(["preflight"], env=COMPLETE_ENV)

        assert result.exit_code == 0, result.output
        assert "✓ talosctl: v1.0" in result.output
        assert "✓ Preflight checks passed" in result.output
        assert "s3cret" not in result.output

    def test_missing_tool(self, invoke):
        """Test a missing tool fails with a non-zero exit."""
        with patch("shutil.which", side_effect=lambda name: None if name == "helm" else "/bin/x"):
            with patch("subprocess.run", return_value=MagicMock(returncode=0, stdout="v1.0\n")):
                result = invoke(["preflight"], env=COMPLETE_ENV)

        assert result.exit_code == EXIT_FAILURE
        assert "✗ helm" in result.output
        assert "helm is not installed" in result.output

    def test_unfilled_template_value(self, invoke):
        """Test a template placeholder without a value fails preflight."""
        env = {k: v for k, v in COMPLETE_ENV.items() if k != "HARBOR_REGISTRY_HOST"}

        with patch("shutil.which", return_value="/usr/local/bin/tool"):
            with patch("subprocess.run", return_value=MagicMock(returncode=0, stdout="v1.0\n")):
                result = invoke(["preflight"], env=env)

        assert result.exit_code == EXIT_FAILURE
        assert "HARBOR_REGISTRY_HOST" in result.output
        assert "✓ Preflight checks passed" not in result.output


class TestRenderCommand:
    """Tests for talos-bootstrap render."""

    def test_render(self, tmp_path, invoke):
        """Test patches are written to the output directory."""
        out = tmp_path / "rendered"

        result = invoke(["render", "--output-dir", str(out), "--show"], env=COMPLETE_ENV)

        assert result.exit_code == 0, result.output
        assert (out / "patch.yaml").exists()
        assert (out / "patch_controlplane.yaml").exists()
        assert "10.0.0.0/24" in result.output

    def test_render_missing_value(self, tmp_path, invoke):
        """Test an unresolved placeholder fails at the render stage."""
        env = {k: v for k, v in COMPLETE_ENV.items() if k != "TALOS_INSTALL_IMAGE"}

        result = invoke(["render", "--output-dir", str(tmp_path / "out")], env=env)

        assert result.exit_code == EXIT_FAILURE
        assert "✗ Stage 'config_rendered' failed:" in result.output
        assert "TALOS_INSTALL_IMAGE" in result.output
