"""
Automated smoke test for optqueue
---------------------------------
Validates:
1. Job enqueue and status
2. Failed delivery with exponential backoff
3. Duplicate subject rejection and cancel
4. Persistence and configuration

The endpoint points at a closed local port, so every send is a network error.

Run:
    python test.py
"""

import os
import subprocess
import json

DB = "smoke.db"


def run(cmd: str, expect_fail: bool = False) -> str:
    """Run CLI command and return stdout."""
    print(f"\n$ {cmd}")
    res = subprocess.run(f"optqueue --db {DB} {cmd}", shell=True, capture_output=True, text=True)
    if (res.returncode != 0) != expect_fail:
        print(res.stderr)
        raise RuntimeError(f"Unexpected exit code {res.returncode}: {cmd}")
    print(res.stdout.strip())
    return res.stdout.strip()


def test_basic_flow():
    if os.path.exists(DB):
        os.remove(DB)

    run("config set endpoint http://127.0.0.1:9/webhook")
    run("config set secret smoke-secret")
    run("config set base_delay_ms 1000")
    config = json.loads(run("config get"))
    assert config["secret"] == "***"
    assert os.path.exists(DB), "Database not created!"

    out = run("enqueue --subject post-1 --payload '{\"title\": \"Hello\"}' --priority high")
    job_id = out.split()[1]
    run("enqueue --subject post-1 --payload '{\"title\": \"again\"}'", expect_fail=True)
    other = run("enqueue --subject post-2 --payload '{\"title\": \"Other\"}'").split()[1]

    # Endpoint is unreachable: the job fails and gets a backoff
    report = json.loads(run("tick"))
    assert report["dispatched"] == 2, report
    status = json.loads(run(f"status {job_id}"))
    assert status["status"] == "failed"
    assert status["attempts"] == 1
    assert status["nextAttemptAt"] is not None

    run(f"cancel {other}")
    counts = json.loads(run("stats"))
    assert counts["failed"] == 1 and counts["abandoned"] == 1, counts

    run("stats --detailed")
    run("list")

    print("\n All tests executed successfully.")


if __name__ == "__main__":
    test_basic_flow()
