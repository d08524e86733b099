"""Smoke tests for the CLI.

These tests verify CLI behaviour without a cluster: the kubectl backend
is replaced by the scripted FakeBackend, or, for the termination test,
by a shell script standing in for kubectl.
"""

import json
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from podbuild import __version__
from podbuild.cli import app
from podbuild.errors import BackendUnavailable
from tests.conftest import FAILED, FakeBackend

runner = CliRunner()


class DeployingBackend(FakeBackend):
    """FakeBackend that also records deployment updates."""

    def __init__(self) -> None:
        super().__init__()
        self.deployed: list[tuple[str, str, str]] = []

    def set_image(self, deployment, container, image_ref, namespace=None):
        self.deployed.append((deployment, container, image_ref))

    def rollout_status(self, deployment, timeout, namespace=None):
        return "rolled out"


class InterruptingBackend(FakeBackend):
    """FakeBackend whose output stream is interrupted after one line."""

    def stream_logs(self, handle, timeout=None):
        self.calls.append("stream_logs")
        yield "step 1"
        raise KeyboardInterrupt


# Stand-in kubectl: records each call, then blocks in "logs" like a live build
FAKE_KUBECTL = """#!/bin/sh
echo "$*" >> "$FAKE_KUBECTL_LOG"
for arg in "$@"; do
  case "$arg" in
    create)
      cat > /dev/null
      echo '{"kind": "Pod", "metadata": {"name": "build-42", "namespace": "ci"}}'
      exit 0 ;;
    get)
      echo '{"status": {"phase": "Running", "initContainerStatuses": '\\
        '[{"name": "context-receiver", "state": {"running": {}}}]}}'
      exit 0 ;;
    cp)
      exit 0 ;;
    logs)
      echo "step 1"
      exec sleep 30 ;;
    delete)
      echo 'pod "build-42" deleted'
      exit 0 ;;
  esac
done
"""


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path):
    """Point podbuild at a temporary work directory with default settings."""
    monkeypatch.setenv("PODBUILD_WORK_DIR", str(tmp_path / "work"))
    monkeypatch.setenv("PODBUILD_NAMESPACE", "ci")
    monkeypatch.setenv("PODBUILD_POLL_INTERVAL", "0.01")
    monkeypatch.setenv("PODBUILD_LOG_LEVEL", "ERROR")
    monkeypatch.delenv("BUILD_NUMBER", raising=False)
    monkeypatch.chdir(tmp_path)


def _run_args(context_dir: Path, *extra: str) -> list[str]:
    return [
        "run",
        "--image",
        "registry.example.com/web/frontend",
        "--tag",
        "1.4.2",
        "--name",
        "build-42",
        "--dockerfile",
        str(context_dir / "Dockerfile"),
        "--output-dir",
        str(context_dir / "dist"),
        *extra,
    ]


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "run" in result.stdout
        assert "render" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self) -> None:
        """CLI config should show all sections."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Cluster:" in result.stdout
        assert "Build job:" in result.stdout
        assert "Timeouts" in result.stdout

    def test_config_json(self) -> None:
        """CLI config --json should output valid JSON."""
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["namespace"] == "ci"


class TestCLILocate:
    """Test CLI locate command."""

    def test_configured_path(self, monkeypatch, tmp_path: Path) -> None:
        """locate should print the configured kubectl."""
        kubectl = tmp_path / "kubectl"
        kubectl.write_text("")
        monkeypatch.setenv("PODBUILD_KUBECTL_PATH", str(kubectl))

        result = runner.invoke(app, ["locate"])

        assert result.exit_code == 0
        assert "kubectl" in result.stdout

    def test_missing(self, monkeypatch, tmp_path: Path) -> None:
        """locate should exit 3 when kubectl is missing."""
        monkeypatch.setenv("PODBUILD_KUBECTL_PATH", str(tmp_path / "nope"))

        result = runner.invoke(app, ["locate"])

        assert result.exit_code == 3


class TestCLIRender:
    """Test CLI render command."""

    def test_render(self) -> None:
        """render should print the manifest."""
        result = runner.invoke(
            app,
            ["render", "-i", "registry.example.com/web", "-t", "2.0", "--name", "b-1"],
        )

        assert result.exit_code == 0
        pod = yaml.safe_load(result.stdout)
        assert pod["metadata"]["name"] == "b-1"
        assert pod["metadata"]["namespace"] == "ci"

    def test_render_build_number(self, monkeypatch) -> None:
        """render should name the job from BUILD_NUMBER."""
        monkeypatch.setenv("BUILD_NUMBER", "77")

        result = runner.invoke(app, ["render", "-i", "r/web", "-t", "1"])

        assert result.exit_code == 0
        assert yaml.safe_load(result.stdout)["metadata"]["name"] == "podbuild-77"

    def test_render_skip_tls(self) -> None:
        """render --skip-tls-verify should add the builder flags."""
        result = runner.invoke(
            app, ["render", "-i", "r/web", "-t", "1", "--skip-tls-verify"]
        )

        assert result.exit_code == 0
        assert "--skip-tls-verify-pull" in result.stdout

    def test_render_invalid_tag(self) -> None:
        """render should exit 2 for an invalid tag."""
        result = runner.invoke(app, ["render", "-i", "r/web", "-t", "bad tag"])

        assert result.exit_code == 2


class TestCLIPackage:
    """Test CLI package command."""

    def test_package_json(self, context_dir: Path, tmp_path: Path) -> None:
        """package --json should describe the archive."""
        dest = tmp_path / "ctx.tar.gz"

        result = runner.invoke(
            app,
            [
                "package",
                "-f",
                str(context_dir / "Dockerfile"),
                "-o",
                str(context_dir / "dist"),
                "-d",
                str(dest),
                "--json",
            ],
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["path"] == str(dest)
        assert "dist/index.html" in data["members"]
        assert len(data["sha256"]) == 64

    def test_package_missing_descriptor(self, tmp_path: Path) -> None:
        """package should exit 10 without a descriptor."""
        result = runner.invoke(app, ["package", "-f", str(tmp_path / "Dockerfile")])

        assert result.exit_code == 10


class TestCLIRun:
    """Test CLI run command."""

    def test_run_success(self, context_dir: Path) -> None:
        """run should stream output and exit 0."""
        backend = FakeBackend()
        with patch("podbuild.backend.kubectl.KubectlBackend", return_value=backend):
            result = runner.invoke(app, _run_args(context_dir))

        assert result.exit_code == 0
        assert "step 1" in result.stdout
        assert "Built and pushed" in result.stdout
        assert backend.delete_calls == 1
        assert backend.copies[0][1] == "/workspace/context.tar.gz"

    def test_run_json(self, context_dir: Path) -> None:
        """run --json should print the invocation result."""
        backend = FakeBackend()
        with patch("podbuild.backend.kubectl.KubectlBackend", return_value=backend):
            result = runner.invoke(app, _run_args(context_dir, "--json"))

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["state"] == "done"
        assert data["success"] is True
        assert data["output_line_count"] == 2

    def test_run_failed_job(self, context_dir: Path) -> None:
        """run should exit 8 when the job ends unsuccessfully."""
        backend = FakeBackend()
        backend.final_statuses = [FAILED]
        with patch("podbuild.backend.kubectl.KubectlBackend", return_value=backend):
            result = runner.invoke(app, _run_args(context_dir))

        assert result.exit_code == 8
        assert backend.delete_calls == 1

    def test_run_backend_unavailable(self, context_dir: Path) -> None:
        """run should exit 3 when kubectl is missing."""
        with patch(
            "podbuild.backend.kubectl.KubectlBackend",
            side_effect=BackendUnavailable("kubectl not found"),
        ):
            result = runner.invoke(app, _run_args(context_dir))

        assert result.exit_code == 3

    def test_run_and_deploy(self, context_dir: Path) -> None:
        """run --deploy should roll the new image out after a successful build."""
        backend = DeployingBackend()
        with patch("podbuild.backend.kubectl.KubectlBackend", return_value=backend):
            result = runner.invoke(
                app,
                _run_args(context_dir, "--deploy", "frontend", "--container", "web"),
            )

        assert result.exit_code == 0
        assert backend.deployed == [
            ("frontend", "web", "registry.example.com/web/frontend:1.4.2")
        ]

    def test_run_does_not_deploy_failed_build(self, context_dir: Path) -> None:
        """run --deploy should leave the deployment alone when the build fails."""
        backend = DeployingBackend()
        backend.final_statuses = [FAILED]
        with patch("podbuild.backend.kubectl.KubectlBackend", return_value=backend):
            result = runner.invoke(app, _run_args(context_dir, "--deploy", "frontend"))

        assert result.exit_code == 8
        assert backend.deployed == []

    def test_run_invalid_name(self, context_dir: Path) -> None:
        """run should exit 2 for an invalid job name."""
        args = _run_args(context_dir)
        args[args.index("build-42")] = "Build_42"

        result = runner.invoke(app, args)

        assert result.exit_code == 2

    def test_run_interrupted(self, context_dir: Path) -> None:
        """run should clean up and exit 130 when interrupted."""
        backend = InterruptingBackend()
        with patch("podbuild.backend.kubectl.KubectlBackend", return_value=backend):
            result = runner.invoke(app, _run_args(context_dir))

        assert result.exit_code == 130
        assert "Interrupted" in result.stdout
        assert backend.delete_calls == 1

    def test_run_interrupted_json(self, context_dir: Path) -> None:
        """run --json should still print the result when interrupted."""
        backend = InterruptingBackend()
        with patch("podbuild.backend.kubectl.KubectlBackend", return_value=backend):
            result = runner.invoke(app, _run_args(context_dir, "--json"))

        assert result.exit_code == 130
        data = json.loads(result.stdout)
        assert data["error_code"] == "interrupted"
        assert data["exit_code"] == 130
        assert data["state"] == "streaming"
        assert data["cleanup_attempted"] is True
        assert data["cleanup_ok"] is True

    def test_sigterm_handler_restored(self, context_dir: Path) -> None:
        """run should leave the SIGTERM handler as it found it."""
        before = signal.getsignal(signal.SIGTERM)
        backend = FakeBackend()
        with patch("podbuild.backend.kubectl.KubectlBackend", return_value=backend):
            runner.invoke(app, _run_args(context_dir))

        assert signal.getsignal(signal.SIGTERM) is before


@pytest.mark.skipif(sys.platform == "win32", reason="needs /bin/sh and SIGTERM")
class TestCLITerminate:
    """Test that a terminated run removes its build pod."""

    def test_sigterm_deletes_pod(self, context_dir: Path, tmp_path: Path) -> None:
        """run should delete the pod and exit 130 on SIGTERM mid-stream."""
        kubectl = tmp_path / "kubectl"
        kubectl.write_text(FAKE_KUBECTL)
        kubectl.chmod(0o755)
        calls = tmp_path / "kubectl.log"
        calls.touch()
        env = dict(
            os.environ,
            FAKE_KUBECTL_LOG=str(calls),
            PODBUILD_KUBECTL_PATH=str(kubectl),
            PYTHONPATH=str(Path(__file__).resolve().parents[1]),
        )

        proc = subprocess.Popen(
            [sys.executable, "-m", "podbuild.cli", *_run_args(context_dir)],
            env=env,
            cwd=tmp_path,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        try:
            deadline = time.monotonic() + 20
            while "logs" not in calls.read_text():
                assert proc.poll() is None, "run exited before streaming"
                assert time.monotonic() < deadline, "run never started streaming"
                time.sleep(0.05)
            time.sleep(0.3)

            proc.send_signal(signal.SIGTERM)
            returncode = proc.wait(timeout=20)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

        assert returncode == 130
        assert "delete pod build-42" in calls.read_text()


class TestCLIDeploy:
    """Test CLI deploy command."""

    def test_deploy(self) -> None:
        """deploy should update the deployment."""
        backend = DeployingBackend()
        with patch("podbuild.backend.kubectl.KubectlBackend", return_value=backend):
            result = runner.invoke(app, ["deploy", "frontend", "r/web:2", "-c", "web"])

        assert result.exit_code == 0
        assert backend.deployed == [("frontend", "web", "r/web:2")]
