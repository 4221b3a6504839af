"""
Tests for the Keystone command line interface.
"""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from keystone.cli import EXIT_APPLY_FAILED, EXIT_OK, EXIT_PLAN_ERROR, app

EXAMPLE_DIR = str(Path(__file__).parent.parent / "examples" / "serverless-site")

runner = CliRunner()


@pytest.fixture
def state_file(temp_dir):
    return str(temp_dir / "state.joblib")


class TestCLI:
    """Test commands and exit codes."""

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == EXIT_OK
        assert "Keystone version" in result.output

    def test_plan(self, state_file):
        result = runner.invoke(app, ["plan", EXAMPLE_DIR, "--state", state_file])

        assert result.exit_code == EXIT_OK, result.output
        assert "Plan:" in result.output
        assert "to add" in result.output

    def test_plan_error_exits_2(self, temp_dir, state_file):
        document = temp_dir / "main.hcl"
        document.write_text('resource "network" "main" {\n  enable_dns = true\n}\n')

        result = runner.invoke(app, ["plan", str(document), "--state", state_file])

        assert result.exit_code == EXIT_PLAN_ERROR
        assert "cidr_block" in result.output

    def test_missing_document_exits_2(self, temp_dir, state_file):
        result = runner.invoke(app, ["plan", str(temp_dir / "nope.hcl"), "--state", state_file])
        assert result.exit_code == EXIT_PLAN_ERROR

    def test_malformed_var_is_rejected(self, state_file):
        result = runner.invoke(app, ["plan", EXAMPLE_DIR, "--state", state_file, "--var", "novalue"])
        assert result.exit_code == 2

    def test_apply_state_output_destroy(self, state_file):
        result = runner.invoke(app, ["apply", EXAMPLE_DIR, "--state", state_file, "--parallelism", "4"])
        assert result.exit_code == EXIT_OK, result.output
        assert "Apply complete!" in result.output
        assert "(sensitive)" in result.output

        result = runner.invoke(app, ["plan", EXAMPLE_DIR, "--state", state_file])
        assert result.exit_code == EXIT_OK
        assert "No changes" in result.output

        result = runner.invoke(app, ["state", "--state", state_file])
        assert result.exit_code == EXIT_OK
        assert "function.api" in result.output

        result = runner.invoke(app, ["output", "api_endpoint", "--state", state_file])
        assert result.exit_code == EXIT_OK
        assert "https://" in result.output

        result = runner.invoke(app, ["output", "--state", state_file])
        assert result.exit_code == EXIT_OK
        assert "function_role = (sensitive)" in result.output
        assert "arn:sim:role" not in result.output

        result = runner.invoke(app, ["output", "missing", "--state", state_file])
        assert result.exit_code == EXIT_APPLY_FAILED

        result = runner.invoke(app, ["destroy", "--state", state_file])
        assert result.exit_code == EXIT_OK, result.output
        assert "Destroy complete!" in result.output
        assert "Apply complete!" not in result.output

        result = runner.invoke(app, ["state", "--state", state_file])
        assert "No resources in state" in result.output

    def test_apply_failure_exits_1(self, temp_dir, state_file):
        result = runner.invoke(app, ["apply", EXAMPLE_DIR, "--state", state_file])
        assert result.exit_code == EXIT_OK, result.output

        # Forget every simulated object so that in-place updates fail
        (temp_dir / "simulated_cloud.joblib").unlink()

        result = runner.invoke(app, ["apply", EXAMPLE_DIR, "--state", state_file, "--var", "environment=prod"])

        assert result.exit_code == EXIT_APPLY_FAILED
        assert "does not exist" in result.output
