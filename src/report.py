import os
import json
from typing import List

import pandas as pd

from models import AnomalyRecord, RunSummary

ANOMALY_COLUMNS = [
    "anomaly_id", "category", "customer_key", "confidence", "monthly_impact_minor",
    "annual_impact_minor", "description", "root_cause", "recommendation", "reference",
    "evidence", "detected_at",
]


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def anomalies_frame(run_id: str, anomalies: List[AnomalyRecord]) -> pd.DataFrame:
    rows = []
    for a in anomalies:
        row = a.to_dict()
        row["anomaly_id"] = a.anomaly_id(run_id)
        row["evidence"] = json.dumps(a.evidence, sort_keys=True, default=str)
        rows.append(row)
    return pd.DataFrame(rows, columns=ANOMALY_COLUMNS)


def write_outputs(outputs_dir: str, summary: RunSummary, anomalies: List[AnomalyRecord]) -> None:
    ensure_dir(outputs_dir)

    frame = anomalies_frame(summary.run_id, anomalies)
    frame.to_csv(os.path.join(outputs_dir, "anomalies.csv"), index=False)

    out = summary.to_dict()
    out["category_breakdown"] = frame["category"].value_counts().to_dict() if len(frame) else {}
    out["impact_by_category_minor"] = (
        {k: int(v) for k, v in frame.groupby("category")["annual_impact_minor"].sum().items()}
        if len(frame) else {}
    )

    with open(os.path.join(outputs_dir, "recon_summary.json"), "w") as f:
        json.dump(out, f, indent=2, default=str)
