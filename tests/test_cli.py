"""Tests for the phase commands and their exit codes."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner, Result

from orchestrator import cli as cli_module
from orchestrator.cli import (
    EXIT_DEPLOY_FAILED,
    EXIT_HEALTH_BELOW_THRESHOLD,
    EXIT_SUCCESS,
    EXIT_VALIDATION_FAILED,
    cli,
)

RUN_ID = "demo"
APPROVER = "alice@example.com"


@pytest.fixture(autouse=True)
def no_logging_setup(monkeypatch: pytest.MonkeyPatch) -> None:
    # The runner swaps stdout per invocation; keep handlers off it
    monkeypatch.setattr(cli_module, "setup_logging", lambda *args, **kwargs: None)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def graph_file(tmp_path: Path, landing_zone_yaml: str) -> Path:
    path = tmp_path / "graph.yaml"
    path.write_text(landing_zone_yaml)
    return path


def invoke(state_dir: Path, *args: str) -> Result:
    return CliRunner().invoke(cli, ["--state-dir", str(state_dir), *args])


def run_until_approved(state_dir: Path, graph_file: Path) -> None:
    assert invoke(state_dir, "plan", RUN_ID, "--graph", str(graph_file)).exit_code == EXIT_SUCCESS
    assert invoke(state_dir, "validate", RUN_ID).exit_code == EXIT_SUCCESS
    assert invoke(state_dir, "approve", RUN_ID, "--approver", APPROVER).exit_code == EXIT_SUCCESS


class TestPhases:
    """Tests for a complete run through the CLI."""

    def test_full_run(self, state_dir: Path, graph_file: Path) -> None:
        """Test every phase exits zero with the dry-run provider."""
        result = invoke(state_dir, "plan", RUN_ID, "--graph", str(graph_file))
        assert result.exit_code == EXIT_SUCCESS
        assert "level 0: vnet" in result.output
        assert "level 1: dns, kv" in result.output
        assert "level 2: kv-endpoint" in result.output

        result = invoke(state_dir, "validate", RUN_ID)
        assert result.exit_code == EXIT_SUCCESS
        assert "Verdict: pass" in result.output

        result = invoke(state_dir, "approve", RUN_ID, "--approver", APPROVER)
        assert result.exit_code == EXIT_SUCCESS
        assert f"approved by {APPROVER}" in result.output

        result = invoke(state_dir, "deploy", RUN_ID)
        assert result.exit_code == EXIT_SUCCESS
        assert "Run status: succeeded" in result.output

        result = invoke(state_dir, "confirm", RUN_ID)
        assert result.exit_code == EXIT_SUCCESS
        assert "Health score: 100.0" in result.output

    def test_artifacts_written(self, state_dir: Path, graph_file: Path) -> None:
        """Test each phase leaves a JSON artifact under the run directory."""
        run_until_approved(state_dir, graph_file)
        invoke(state_dir, "deploy", RUN_ID)

        for phase in ("plan", "validate", "approve", "deploy"):
            assert (state_dir / RUN_ID / f"{phase}.json").exists()
        deployed = json.loads((state_dir / RUN_ID / "deploy.json").read_text())
        assert deployed["result"]["status"] == "succeeded"

    def test_version(self) -> None:
        """Test the version option."""
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestExitCodes:
    """Tests for non-zero exit codes."""

    def test_validation_failure(self, state_dir: Path, graph_file: Path) -> None:
        """Test a Fail verdict exits 1 and names the finding."""
        graph_file.write_text(graph_file.read_text().replace("publicAccess: disabled", "publicAccess: enabled"))
        invoke(state_dir, "plan", RUN_ID, "--graph", str(graph_file))

        result = invoke(state_dir, "validate", RUN_ID)

        assert result.exit_code == EXIT_VALIDATION_FAILED
        assert "public-access-disabled/kv" in result.output
        assert "Verdict: fail" in result.output

    def test_approval_refused_after_failure(self, state_dir: Path, graph_file: Path) -> None:
        """Test approving a failing plan exits 1."""
        graph_file.write_text(graph_file.read_text().replace("publicAccess: disabled", "publicAccess: enabled"))
        invoke(state_dir, "plan", RUN_ID, "--graph", str(graph_file))
        invoke(state_dir, "validate", RUN_ID)

        result = invoke(state_dir, "approve", RUN_ID, "--approver", APPROVER)

        assert result.exit_code == EXIT_VALIDATION_FAILED
        assert "recompile" in result.output

    def test_rejection(self, state_dir: Path, graph_file: Path) -> None:
        """Test a rejection exits 1 and blocks deployment."""
        invoke(state_dir, "plan", RUN_ID, "--graph", str(graph_file))
        invoke(state_dir, "validate", RUN_ID)

        result = invoke(state_dir, "approve", RUN_ID, "--approver", "bob", "--reject", "--reason", "freeze")
        assert result.exit_code == EXIT_VALIDATION_FAILED

        result = invoke(state_dir, "deploy", RUN_ID)
        assert result.exit_code == EXIT_VALIDATION_FAILED

    def test_deploy_failure(self, state_dir: Path, graph_file: Path) -> None:
        """Test a failed deployment exits 2."""
        run_until_approved(state_dir, graph_file)

        result = invoke(state_dir, "deploy", RUN_ID, "--provider", "provider_mock:FailingProvisioner")

        assert result.exit_code == EXIT_DEPLOY_FAILED
        assert "Failed:    vnet" in result.output
        assert "Run status: failed" in result.output

    def test_health_below_threshold(self, state_dir: Path, graph_file: Path) -> None:
        """Test an unhealthy deployment exits 3."""
        run_until_approved(state_dir, graph_file)
        invoke(state_dir, "deploy", RUN_ID)

        result = invoke(state_dir, "confirm", RUN_ID, "--probe", "provider_mock:UnhealthyProbe")

        assert result.exit_code == EXIT_HEALTH_BELOW_THRESHOLD
        assert "vnet: degraded" in result.output
        assert "Health score: 0.0" in result.output

    def test_cycle(self, state_dir: Path, tmp_path: Path) -> None:
        """Test a cyclic graph is reported and nothing is stored."""
        path = tmp_path / "cycle.yaml"
        path.write_text(
            "resources:\n"
            "  - {id: a, type: network, dependsOn: [b]}\n"
            "  - {id: b, type: network, dependsOn: [a]}\n"
        )

        result = invoke(state_dir, "plan", RUN_ID, "--graph", str(path))

        assert result.exit_code == 1
        assert "circular dependency" in result.output.lower()
        assert not (state_dir / RUN_ID / "plan.json").exists()

    def test_phase_out_of_order(self, state_dir: Path) -> None:
        """Test a phase without its predecessor's artifact is refused."""
        result = invoke(state_dir, "validate", RUN_ID)
        assert result.exit_code == 1

    def test_unknown_provider(self, state_dir: Path, graph_file: Path) -> None:
        """Test an unresolvable provider reference is reported."""
        run_until_approved(state_dir, graph_file)
        result = invoke(state_dir, "deploy", RUN_ID, "--provider", "no_such_module:Provider")
        assert result.exit_code == 1
        assert "no_such_module" in result.output

    def test_invalid_weight(self, state_dir: Path, graph_file: Path) -> None:
        """Test a malformed weight override is reported."""
        run_until_approved(state_dir, graph_file)
        invoke(state_dir, "deploy", RUN_ID)
        result = invoke(state_dir, "confirm", RUN_ID, "--weight", "network")
        assert result.exit_code == 1
        assert "category=weight" in result.output


class TestWarnings:
    """Tests for warning acknowledgement through the CLI."""

    @pytest.fixture
    def warning_graph(self, graph_file: Path) -> Path:
        graph_file.write_text(
            graph_file.read_text()
            + "  - id: spoke\n"
            "    type: network\n"
            "    config:\n"
            "      addressSpace: 10.0.2.0/24\n"
            "      tags: {costCenter: platform}\n"
        )
        return graph_file

    def test_ack_required(self, state_dir: Path, warning_graph: Path) -> None:
        """Test an approval without acknowledgements exits 1 and names the warning."""
        invoke(state_dir, "plan", RUN_ID, "--graph", str(warning_graph))
        result = invoke(state_dir, "validate", RUN_ID)
        assert result.exit_code == EXIT_SUCCESS
        assert "Verdict: pass_with_warnings" in result.output

        result = invoke(state_dir, "approve", RUN_ID, "--approver", APPROVER)
        assert result.exit_code == EXIT_VALIDATION_FAILED
        assert "overlapping-address-spaces/spoke" in result.output

        result = invoke(
            state_dir, "approve", RUN_ID, "--approver", APPROVER,
            "--ack", "overlapping-address-spaces/spoke",
        )
        assert result.exit_code == EXIT_SUCCESS
