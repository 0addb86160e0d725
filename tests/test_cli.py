from __future__ import annotations

import json
import os
import textwrap

import pytest
from click.testing import CliRunner

from relayci.cache import CacheStore
from relayci.cli import cli
from relayci.report import EXIT_FAILURE, EXIT_INVALID, EXIT_SUCCESS

posix_only = pytest.mark.skipif(os.name == "nt", reason="runs real POSIX shell commands")

PASSING = """
name: smoke
jobs:
  build:
    steps:
      - run: echo built
  test:
    needs: build
    matrix:
      py: ["3.11", "3.12"]
    steps:
      - run: echo testing ${{ matrix.py }}
"""

FAILING = """
name: smoke
jobs:
  build:
    steps:
      - run: exit 1
  test:
    needs: build
    steps:
      - run: echo never
"""


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return CliRunner()


def _workflow(tmp_path, content, name="relayci.yml"):
    (tmp_path / name).write_text(textwrap.dedent(content))
    return name


class TestRun:
    @posix_only
    def test_passing_pipeline_exits_zero(self, runner, tmp_path):
        _workflow(tmp_path, PASSING)
        result = runner.invoke(cli, ["--quiet", "run", "--run-id", "r1"])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert "VERDICT: SUCCESS" in result.output
        assert "test (py=3.12): SUCCEEDED" in result.output

    @posix_only
    def test_failing_pipeline_exits_one_and_writes_report(self, runner, tmp_path):
        _workflow(tmp_path, FAILING)
        result = runner.invoke(cli, ["run", "--report-json", "out/report.json"])
        assert result.exit_code == EXIT_FAILURE, result.output

        data = json.loads((tmp_path / "out" / "report.json").read_text())
        statuses = {j["id"]: j["status"] for j in data["jobs"]}
        assert statuses == {"build": "failed", "test": "cancelled"}
        assert data["verdict"] == "failure"

    def test_filtered_event_exits_zero_without_running(self, runner, tmp_path):
        _workflow(tmp_path, "on:\n  push:\n    branches: [main]\n" + PASSING)
        result = runner.invoke(cli, ["run", "--ref", "refs/heads/feature"])
        assert result.exit_code == 0
        assert "filtered" in result.output
        assert "VERDICT" not in result.output

    def test_invalid_workflow_exits_invalid(self, runner, tmp_path):
        _workflow(tmp_path, "jobs:\n  a:\n    steps:\n      - run: x\n    needs: [ghost]\n")
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == EXIT_INVALID
        assert "needs missing job 'ghost'" in result.output

    def test_cycle_is_rejected_before_running(self, runner, tmp_path):
        _workflow(tmp_path, """
            jobs:
              a:
                needs: b
                steps:
                  - run: touch ran-a
              b:
                needs: a
                steps:
                  - run: touch ran-b
        """)
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == EXIT_INVALID
        assert "dependency cycle" in result.output
        assert not (tmp_path / "ran-a").exists()

    def test_missing_workflow(self, runner):
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == EXIT_INVALID
        assert "No workflow file found" in result.output

    def test_multiple_workflows_need_explicit_choice(self, runner, tmp_path):
        _workflow(tmp_path, PASSING, "relayci.yml")
        _workflow(tmp_path, "def workflow():\n    return []\n", "nightly_workflow.py")
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == EXIT_INVALID
        assert "Multiple workflow files found" in result.output


def test_plan_prints_stages(runner, tmp_path):
    _workflow(tmp_path, PASSING)
    result = runner.invoke(cli, ["plan"])
    assert result.exit_code == 0, result.output
    assert "3 job instance(s)" in result.output
    stage1, stage2 = result.output.split("=== Stage 2 ===")
    assert "build" in stage1
    assert "test (py=3.11)" in stage2
    assert "test (py=3.12)" in stage2


class TestCacheCommands:
    def test_ls_empty(self, runner):
        result = runner.invoke(cli, ["cache", "ls"])
        assert result.exit_code == 0
        assert "cache is empty" in result.output

    def test_ls_and_prune(self, runner, tmp_path):
        store = CacheStore(tmp_path / ".relayci" / "cache")
        for n in range(4):
            store.store(f"Linux-cargo-{n}", b"blob")

        listed = runner.invoke(cli, ["cache", "ls"])
        assert listed.exit_code == 0
        for n in range(4):
            assert f"Linux-cargo-{n}" in listed.output

        pruned = runner.invoke(cli, ["cache", "prune", "--keep", "1", "--prefix", "Linux-"])
        assert pruned.exit_code == 0
        assert "removed 3 cache entries" in pruned.output
        assert len(store.entries()) == 1
