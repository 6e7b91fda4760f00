import json
import re
from pathlib import Path

from click.testing import CliRunner

from milhouse.cli import cli
from milhouse.logging import LOG_FILENAME, teardown_logging
from milhouse.state import RunRegistry, StateStore, ValidationIndex
from milhouse.state.models import RunPhase, Task


def _invoke(args: list[str], input_text: str | None = None):
    runner = CliRunner()
    try:
        return runner.invoke(cli, args, input=input_text)
    finally:
        teardown_logging()


def _create_run(*args: str) -> str:
    result = _invoke(["runs", "create", *args])
    assert result.exit_code == 0, result.output
    match = re.search(r"Created run: (\S+)", result.output)
    assert match is not None
    return match.group(1)


def _seed_tasks(repo: Path, run_id: str, tasks: list[Task], phase: RunPhase) -> None:
    registry = RunRegistry(repo)
    registry.update_phase(run_id, phase)
    StateStore(registry).save_tasks(run_id, tasks)


def test_init_writes_config_and_state_dir(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = _invoke(["init"])

    assert result.exit_code == 0, result.output
    assert "Initialized Milhouse" in result.output
    assert (tmp_path / "milhouse.toml").exists()
    assert (tmp_path / ".milhouse" / "runs").is_dir()


def test_runs_create_list_switch_and_delete(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    first = _create_run("--name", "alpha")
    second = _create_run("--scope", "beta flows")

    listing = _invoke(["runs", "list"])
    assert listing.exit_code == 0, listing.output
    assert f"* {second} [scan] beta flows" in listing.output
    assert f"  {first} [scan]" in listing.output

    switched = _invoke(["runs", "switch", first.split("-", 2)[2]])
    assert switched.exit_code == 0, switched.output
    assert f"Switched to run: {first}" in switched.output

    as_json = json.loads(_invoke(["runs", "list", "--json"]).output)
    assert {entry["id"]: entry["is_current"] for entry in as_json} == {
        first: True,
        second: False,
    }

    deleted = _invoke(["runs", "delete", second, "--yes"])
    assert deleted.exit_code == 0, deleted.output
    assert RunRegistry(tmp_path).run_ids() == [first]


def test_runs_list_without_runs(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = _invoke(["runs", "list"])

    assert result.exit_code == 0
    assert "No runs found" in result.output


def test_unknown_run_id_is_reported(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _create_run("--name", "alpha")

    result = _invoke(["runs", "switch", "nope"])

    assert result.exit_code == 1
    assert "Run not found" in result.output


def test_create_imports_legacy_plans_and_links_view(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    legacy = tmp_path / ".milhouse" / "plans"
    legacy.mkdir(parents=True)
    (legacy / "plan_P-1.md").write_text("# legacy plan\n", encoding="utf-8")

    result = _invoke(["runs", "create", "--name", "imported"])

    assert result.exit_code == 0, result.output
    assert "Imported 1 legacy plan file(s)" in result.output
    assert legacy.is_symlink()
    assert (legacy / "plan_P-1.md").read_text(encoding="utf-8") == "# legacy plan\n"


def test_exec_dispatches_tasks_with_dry_run(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    run_id = _create_run("--name", "exec")
    _seed_tasks(
        tmp_path,
        run_id,
        [
            Task(id="T1", title="first", parallel_group=1),
            Task(id="T2", title="second", parallel_group=2, depends_on=["T1"]),
        ],
        RunPhase.PLAN,
    )

    result = _invoke(["exec", "--run-id", run_id, "--max-concurrency", "2"])

    assert result.exit_code == 0, result.output
    assert f"Run ID: {run_id}" in result.output
    assert "Tasks: 2 completed, 0 failed, 0 skipped" in result.output
    assert "Run phase: verify" in result.output
    assert RunRegistry(tmp_path).load_meta(run_id).phase == RunPhase.VERIFY


def test_exec_requires_a_run_in_an_exec_phase(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    run_id = _create_run("--name", "early")

    no_eligible = _invoke(["exec"])
    assert no_eligible.exit_code == 1
    assert "No eligible runs found" in no_eligible.output

    wrong_phase = _invoke(["exec", "--run-id", run_id])
    assert wrong_phase.exit_code == 1
    assert 'is in phase "scan"' in wrong_phase.output


def test_tasks_validate_reports_cycles(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    run_id = _create_run("--name", "cycle")
    _seed_tasks(
        tmp_path,
        run_id,
        [
            Task(id="A", title="a", depends_on=["B"]),
            Task(id="B", title="b", depends_on=["A"]),
        ],
        RunPhase.PLAN,
    )

    result = _invoke(["tasks", "validate", "--run-id", run_id])

    assert result.exit_code == 1
    assert "Circular dependency detected involving tasks: A, B" in result.output


def test_tasks_ready_lists_unblocked_tasks(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    run_id = _create_run("--name", "ready")
    _seed_tasks(
        tmp_path,
        run_id,
        [
            Task(id="T1", title="schema", status="done"),
            Task(id="T2", title="api", depends_on=["T1"], parallel_group=1),
            Task(id="T3", title="ui", depends_on=["T2"], parallel_group=2),
        ],
        RunPhase.PLAN,
    )

    validate = _invoke(["tasks", "validate", "--run-id", run_id])
    ready = _invoke(["tasks", "ready", "--run-id", run_id])

    assert f"Run {run_id}: 1 executable, 1 blocked" in validate.output
    assert ready.output.strip() == "T2 [group 1] api"


def test_run_selection_prompts_when_several_runs_qualify(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _create_run("--name", "first")
    second = _create_run("--name", "second")

    result = _invoke(["runs", "show"], input_text="2\n")

    assert result.exit_code == 0, result.output
    assert "Multiple runs match" in result.output
    assert f'"id": "{second}"' in result.output


def test_plans_sync_points_view_at_selected_run(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    first = _create_run("--name", "first")
    _create_run("--name", "second")

    result = _invoke(["plans", "sync", "--run-id", first])

    assert result.exit_code == 0, result.output
    legacy = tmp_path / ".milhouse" / "plans"
    assert legacy.resolve() == RunRegistry(tmp_path).run_plans_dir(first).resolve()


def test_validation_rebuild_and_summary(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    run_id = _create_run("--name", "validate")
    registry = RunRegistry(tmp_path)
    store = StateStore(registry)
    confirmed = store.create_issue(run_id, "timeouts", "pool exhausted")
    pending = store.create_issue(run_id, "stale cache", "no invalidation")
    reports_dir = ValidationIndex(registry).reports_dir(run_id)
    reports_dir.mkdir(parents=True)
    (reports_dir / f"{confirmed.id}.json").write_text(
        json.dumps({"verdict": "CONFIRMED"}), encoding="utf-8"
    )

    rebuilt = _invoke(["validation", "rebuild", "--run-id", run_id])
    summary = _invoke(["validation", "summary", "--run-id", run_id])

    assert "Indexed 1 validation report(s)" in rebuilt.output
    payload = json.loads(summary.output)
    assert payload["counts"] == {"valid": 1, "invalid": 0, "partial": 0, "total": 1}
    assert payload["unvalidated_issue_ids"] == [pending.id]


def test_cleanup_requires_a_criterion(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    missing = _invoke(["runs", "cleanup"])
    bad_duration = _invoke(["runs", "cleanup", "--older-than", "soon"])

    assert missing.exit_code == 2
    assert bad_duration.exit_code == 2
    assert "Invalid duration format" in bad_duration.output


def test_cleanup_dry_run_keeps_everything(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("one", "two", "three"):
        _create_run("--name", name)

    result = _invoke(["runs", "cleanup", "--keep-last", "2", "--include-current", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "Would delete 1 run(s), kept 2" in result.output
    assert len(RunRegistry(tmp_path).run_ids()) == 3


def test_invalid_config_is_reported(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    config_text = '[views]\nlegacy_plans = "hardlink"\n'
    (tmp_path / "milhouse.toml").write_text(config_text, encoding="utf-8")

    result = _invoke(["runs", "list"])

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_commands_write_jsonl_log(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    run_id = _create_run("--name", "logged")

    lines = (tmp_path / ".milhouse" / LOG_FILENAME).read_text(encoding="utf-8").splitlines()
    entries = [json.loads(line) for line in lines]

    assert any(entry["msg"] == f"Created run {run_id}" for entry in entries)
    assert all(entry["logger"].startswith("milhouse") for entry in entries)
