"""Tests for the command line interface."""

import pytest
from click.testing import CliRunner

from pipewright.cli import cli
from pipewright.config import get_settings

PIPELINE = """
name: Demo
jobs:
  check:
    steps:
      - run: echo checking
  test:
    needs: [check]
    strategy:
      matrix:
        os: [linux, macos]
    steps:
      - run: echo testing on ${{ matrix.os }}
  release:
    needs: [test]
    if: startsWith(github.ref, 'refs/tags/v')
    steps:
      - run: echo releasing ${{ github.ref_name }}
"""


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("GITHUB_REF", "GITHUB_EVENT_NAME", "GITHUB_EVENT_PATH", "PIPEWRIGHT_REF", "PIPEWRIGHT_EVENT"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    (tmp_path / "pipewright.yml").write_text(PIPELINE)
    yield tmp_path
    get_settings.cache_clear()


def test_validate_ok(project):
    result = CliRunner().invoke(cli, ["validate"])
    assert result.exit_code == 0
    assert "OK (3 job(s), 4 instance(s))" in result.output


def test_validate_reports_config_error(project):
    (project / "pipewright.yml").write_text("jobs:\n  a:\n    needs: [nope]\n    steps:\n      - run: x\n")
    result = CliRunner().invoke(cli, ["validate"])
    assert result.exit_code == 2
    assert "missing job 'nope'" in result.output
    assert "jobs.a.needs" in result.output


def test_plan_prints_stages(project):
    result = CliRunner().invoke(cli, ["plan", "--ref", "refs/tags/v1.0.0"])
    assert result.exit_code == 0
    assert "=== Stage 1: check ===" in result.output
    assert "=== Stage 2: test[os=linux], test[os=macos] ===" in result.output
    assert "=== Stage 3: release ===" in result.output
    assert "check -> test[os=linux]" in result.output


def test_run_on_branch_skips_release(project):
    result = CliRunner().invoke(cli, ["run", "--ref", "refs/heads/main"])
    assert result.exit_code == 0
    assert "release: SKIPPED [ConditionFalse]" in result.output
    assert "RUN SUCCEEDED (exit 0)" in result.output


def test_run_on_tag_releases(project):
    result = CliRunner().invoke(cli, ["run", "pipewright.yml", "--ref", "refs/tags/v1.0.0", "--workers", "2"])
    assert result.exit_code == 0
    assert "release: SUCCEEDED" in result.output
    assert "Trigger: push refs/tags/v1.0.0" in result.output


def test_run_failure_exit_code(project):
    (project / "failing.yml").write_text("jobs:\n  a:\n    steps:\n      - run: exit 7\n  b:\n    needs: a\n    steps:\n      - run: 'true'\n")
    result = CliRunner().invoke(cli, ["run", "failing.yml", "--ref", "refs/heads/main", "--quiet"])
    assert result.exit_code == 1
    assert "a: FAILED [StepError]" in result.output
    assert "b: SKIPPED [StepError]" in result.output
    assert "RUN FAILED (exit 1)" in result.output


def test_run_config_error_exit_code(project):
    (project / "bad.yml").write_text("jobs:\n  a:\n    steps: []\n")
    result = CliRunner().invoke(cli, ["run", "bad.yml", "--ref", "refs/heads/main"])
    assert result.exit_code == 2
    assert "at least one step" in result.output


def test_missing_workflow(project):
    (project / "pipewright.yml").unlink()
    result = CliRunner().invoke(cli, ["validate"])
    assert result.exit_code == 2
    assert "No workflow file found" in result.output


def test_multiple_workflows_need_explicit_choice(project):
    (project / "other_workflow.py").write_text("JOBS = []\n")
    result = CliRunner().invoke(cli, ["validate"])
    assert result.exit_code == 2
    assert "Multiple workflow files found" in result.output
