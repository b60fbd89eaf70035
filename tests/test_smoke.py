import json
import os
import subprocess
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def test_run_agent_smoke(tmp_path):
    outputs = tmp_path / "outputs"
    result = subprocess.run(
        [sys.executable, "src/run_agent.py", "--outputs", str(outputs), "--db", str(tmp_path / "state.db")],
        capture_output=True, text=True, cwd=ROOT,
    )
    assert result.returncode == 0, result.stderr
    assert os.path.exists(outputs / "recon_summary.json")
    assert os.path.exists(outputs / "anomalies.csv")

    with open(outputs / "recon_summary.json") as f:
        summary = json.load(f)
    assert summary["status"] == "done"
    assert summary["total_anomalies"] > 0
    assert summary["summary_text"].startswith("Analysis complete.")
