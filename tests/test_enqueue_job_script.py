from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SCRIPT_PATH = REPO_ROOT / "scripts" / "enqueue_job.py"


def _run_script(*args: str) -> subprocess.CompletedProcess[str]:
    env = {key: value for key, value in os.environ.items() if key != "HH_DATABASE_URL"}
    env.update({"PYTHONPATH": str(REPO_ROOT), "HH_OTEL_ENABLED": "false"})
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        capture_output=True,
        text=True,
        env=env,
    )


def test_dry_run_prints_normalized_job() -> None:
    completed = _run_script(
        "--type",
        "PURCHASE_RECONCILE",
        "--payload",
        '{"payment_intent_id": "pi_123"}',
        "--run-at",
        "2026-03-01T12:00:00",
        "--max-attempts",
        "3",
        "--dry-run",
    )

    assert completed.returncode == 0, completed.stderr
    assert json.loads(completed.stdout) == {
        "max_attempts": 3,
        "payload": {"payment_intent_id": "pi_123"},
        "run_at": "2026-03-01T12:00:00+00:00",
        "type": "PURCHASE_RECONCILE",
    }


def test_rejects_unknown_type_and_non_object_payload() -> None:
    unknown = _run_script("--type", "NOT_A_JOB", "--dry-run")
    bad_payload = _run_script("--type", "PAYMENT_INTENT_SWEEP", "--payload", "[1, 2]", "--dry-run")

    assert unknown.returncode == 2
    assert "invalid choice" in unknown.stderr
    assert bad_payload.returncode == 2
    assert "JSON object" in bad_payload.stderr


def test_enqueue_without_database_fails_cleanly() -> None:
    completed = _run_script("--type", "PAYMENT_INTENT_SWEEP")

    assert completed.returncode == 1
    assert "enqueue failed" in completed.stderr
