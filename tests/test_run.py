import json
from pathlib import Path

from plan_engine import run

PLAN_FILE = Path(__file__).resolve().parent.parent / "examples" / "plan.json"


def test_cli_executes_plan_with_mock_provider(tmp_path):
    code = run.main([str(PLAN_FILE), "--store-dir", str(tmp_path), "--run-id", "cli-run", "--provider", "mock"])

    assert code == 0
    snapshot = json.loads((tmp_path / "runs" / "cli-run" / "snapshot.json").read_text(encoding="utf-8"))
    assert snapshot["runId"] == "cli-run"
    assert snapshot["status"] == "completed"
    assert snapshot["iterationCount"] == 3


def test_cli_nonzero_exit_when_stopped(tmp_path):
    code = run.main(
        [str(PLAN_FILE), "--store-dir", str(tmp_path), "--run-id", "cli-stop", "--max-iterations", "1", "--show-logs"]
    )

    assert code == 1
    snapshot = json.loads((tmp_path / "runs" / "cli-stop" / "snapshot.json").read_text(encoding="utf-8"))
    assert snapshot["stopReason"] == "max_iterations"


def test_cli_rejects_bad_budget(tmp_path):
    assert run.main([str(PLAN_FILE), "--store-dir", str(tmp_path), "--max-tokens", "0"]) == 2


def test_cli_missing_plan_file(tmp_path):
    assert run.main([str(tmp_path / "missing.json"), "--store-dir", str(tmp_path)]) == 2
