from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from gateci.cli import (
    EXIT_DEFINITION,
    EXIT_GATED,
    EXIT_INFRASTRUCTURE,
    EXIT_INTERRUPTED,
    EXIT_SUCCESS,
    bind_secrets,
    cli,
    exit_code_for,
)
from gateci.model import FailureKind, RunStatus, StageResult, StageState, Verdict
from helpers import finding, py, report_cmd


def stage_doc(id, command, **extra):
    return {"id": id, "job": {"command": command, **extra.pop("job", {})}, **extra}


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Run every command from a scratch directory with its own state home."""
    workdir = tmp_path / "repo"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    runner = CliRunner()

    def invoke(*args, env=None):
        return runner.invoke(cli, ["--home", str(tmp_path / "state"), *args], env=env)

    def write(doc, name="gateci.json"):
        (workdir / name).write_text(json.dumps(doc))

    invoke.write = write
    return invoke


def test_successful_run_exits_zero(cli_env):
    cli_env.write({"name": "ok", "stages": [stage_doc("a", py("print('hello')")), stage_doc("b", "true", needs=["a"])]})
    result = cli_env("run", "--no-print-plan", "--revision", "abc123")
    assert result.exit_code == EXIT_SUCCESS, result.output
    assert "STAGE PASSED: a" in result.stdout
    assert "VERDICT: SUCCESS" in result.stdout


def test_gated_run_exits_one(cli_env):
    cli_env.write({"name": "gated", "stages": [stage_doc("sast", report_cmd([finding("critical")]), job={"report": True})]})
    result = cli_env("run", "--no-print-plan")
    assert result.exit_code == EXIT_GATED, result.output
    assert "GateRejected" in result.stdout


def test_crash_exits_two(cli_env):
    cli_env.write({"name": "crash", "stages": [stage_doc("build", "exit 3"), stage_doc("scan", "true", needs=["build"])]})
    result = cli_env("run", "--no-print-plan")
    assert result.exit_code == EXIT_INFRASTRUCTURE, result.output
    assert "STAGE SKIPPED: scan" in result.stdout


def test_crash_wins_over_gate(cli_env):
    cli_env.write(
        {
            "name": "both",
            "stages": [
                stage_doc("sast", report_cmd([finding("critical")]), job={"report": True}),
                stage_doc("build", "exit 3"),
            ],
        }
    )
    assert cli_env("run", "--no-print-plan").exit_code == EXIT_INFRASTRUCTURE


def test_invalid_definition_exits_three(cli_env):
    cli_env.write({"name": "cyclic", "stages": [stage_doc("a", "true", needs=["b"]), stage_doc("b", "true", needs=["a"])]})
    result = cli_env("run")
    assert result.exit_code == EXIT_DEFINITION
    assert "Invalid pipeline definition" in result.output


def test_schema_error_exits_three(cli_env):
    cli_env.write({"name": "broken", "stages": [{"id": "a"}]})
    result = cli_env("run")
    assert result.exit_code == EXIT_DEFINITION
    assert "stages.0.job" in result.output


def test_missing_pipeline_exits_three(cli_env):
    result = cli_env("run")
    assert result.exit_code == EXIT_DEFINITION
    assert "No pipeline file found" in result.output
    assert cli_env("run", "--pipeline", "nope.yml").exit_code == EXIT_DEFINITION


def test_ambiguous_pipeline_exits_three(cli_env):
    cli_env.write({"name": "one", "stages": [stage_doc("a", "true")]})
    cli_env.write({"name": "two", "stages": [stage_doc("a", "true")]}, name="gateci.yml")
    result = cli_env("run")
    assert result.exit_code == EXIT_DEFINITION
    assert "Multiple pipeline files found" in result.output
    assert cli_env("run", "--pipeline", "gateci.yml", "--no-print-plan").exit_code == EXIT_SUCCESS


def test_secrets_are_bound_from_the_environment(cli_env):
    check = py(
        """
        import os, sys
        sys.exit(0 if os.environ.get("TOKEN") == "s3cret" else 1)
        """
    )
    cli_env.write({"name": "s", "secrets": ["TOKEN"], "stages": [stage_doc("a", check, job={"secrets": ["TOKEN"]})]})
    assert cli_env("run", "--no-print-plan", env={"TOKEN": "s3cret"}).exit_code == EXIT_SUCCESS
    assert cli_env("run", "--no-print-plan", "--secret", "TOKEN=VAULT_TOKEN", env={"VAULT_TOKEN": "s3cret"}).exit_code == EXIT_SUCCESS

    unbound = cli_env("run", "--no-print-plan", env={"TOKEN": None})
    assert unbound.exit_code == EXIT_DEFINITION
    assert "TOKEN" in unbound.output


def test_json_status_and_artifacts(cli_env):
    cli_env.write({"name": "ok", "stages": [stage_doc("a", py("print('hi')"))]})
    result = cli_env("run", "--json")
    assert result.exit_code == EXIT_SUCCESS, result.output
    status = json.loads(result.stdout)
    run_id = status["run_id"]
    assert status["verdict"] == "success"

    shown = cli_env("status", run_id, "--json")
    assert shown.exit_code == 0
    assert json.loads(shown.stdout)["stages"][0]["state"] == "passed"

    listed = cli_env("status", "--json")
    assert [r["run_id"] for r in json.loads(listed.stdout)] == [run_id]

    arts = cli_env("artifacts", "list", run_id, "--json")
    assert "log" in [a["name"] for a in json.loads(arts.stdout)]

    log = cli_env("artifacts", "get", run_id, "a", "log")
    assert "hi" in log.stdout

    evicted = cli_env("artifacts", "evict", run_id)
    assert "evicted" in evicted.stdout
    assert json.loads(cli_env("artifacts", "list", run_id, "--json").stdout) == []


def test_status_of_unknown_run(cli_env):
    result = cli_env("status", "does-not-exist")
    assert result.exit_code == EXIT_DEFINITION
    assert "Unknown run" in result.output


def test_validate_and_plan(cli_env):
    cli_env.write(
        {
            "name": "p",
            "secrets": ["TOKEN"],
            "stages": [stage_doc("build", "true"), stage_doc("scan", "true", needs=["build"], job={"secrets": ["TOKEN"]})],
        }
    )
    ok = cli_env("validate")
    assert ok.exit_code == 0
    assert "OK (2 stage(s): build, scan)" in ok.stdout

    assert cli_env("validate", "--check-secrets", env={"TOKEN": None}).exit_code == EXIT_DEFINITION
    assert cli_env("validate", "--check-secrets", env={"TOKEN": "x"}).exit_code == 0

    planned = cli_env("plan")
    assert planned.exit_code == 0
    assert "wave 2:" in planned.stdout
    assert "scan (needs: build)" in planned.stdout


def _status(*results, verdict=Verdict.FAILURE):
    return RunStatus(run_id="r", pipeline="p", verdict=verdict, stages=list(results))


def _failed(stage_id, kind):
    return StageResult(stage_id=stage_id, state=StageState.FAILED, kind=kind)


def test_exit_code_for():
    assert exit_code_for(_status(verdict=Verdict.SUCCESS)) == EXIT_SUCCESS
    assert exit_code_for(_status(verdict=Verdict.CANCELLED)) == EXIT_INTERRUPTED
    assert exit_code_for(_status(_failed("a", FailureKind.GATE_REJECTED))) == EXIT_GATED
    assert exit_code_for(_status(_failed("a", FailureKind.TIMEOUT))) == EXIT_INFRASTRUCTURE
    assert (
        exit_code_for(_status(_failed("a", FailureKind.GATE_REJECTED), _failed("b", FailureKind.SERVICE_UNAVAILABLE)))
        == EXIT_INFRASTRUCTURE
    )


def test_bind_secrets():
    environ = {"CI_A": "1", "OTHER": "2", "B": "ignored"}
    bound = bind_secrets(["A", "B", "C"], ["B=OTHER"], prefix="CI_", environ=environ)
    assert bound == {"A": "1", "B": "2"}


def test_stage_without_secrets_cannot_read_bound_ones(cli_env):
    leak_check = py(
        """
        import os, sys
        sys.exit(1 if "API_TOKEN" in os.environ or "VAULT_TOKEN" in os.environ else 0)
        """
    )
    cli_env.write(
        {
            "name": "s",
            "secrets": ["API_TOKEN"],
            "stages": [
                stage_doc("dast", "true", job={"secrets": ["API_TOKEN"]}),
                stage_doc("untrusted", leak_check),
            ],
        }
    )
    direct = cli_env("run", "--no-print-plan", env={"API_TOKEN": "super-secret-value"})
    assert direct.exit_code == EXIT_SUCCESS, direct.output

    renamed = cli_env(
        "run", "--no-print-plan", "--secret", "API_TOKEN=VAULT_TOKEN", env={"VAULT_TOKEN": "super-secret-value"}
    )
    assert renamed.exit_code == EXIT_SUCCESS, renamed.output
