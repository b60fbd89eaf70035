import argparse
import logging
import os

from config import ReconConfig
from models import RunStatus
from report import write_outputs
from rules import load_rules
from scheduler import reconcile_files
from store import ReconStore
from utils import format_minor


def parse_args() -> argparse.Namespace:
    cfg = ReconConfig()
    parser = argparse.ArgumentParser(description="Reconcile an internal ledger against a processor export.")
    parser.add_argument("--ledger", default=cfg.ledger_path, help="internal ledger or usage-event CSV")
    parser.add_argument("--processor", default=cfg.processor_path, help="payment processor export CSV")
    parser.add_argument("--outputs", default=cfg.outputs_dir)
    parser.add_argument("--rules", default=cfg.rules_path, help="JSON file with reconciliation settings")
    parser.add_argument("--db", default=cfg.db_path, help="SQLite file holding run state")
    parser.add_argument("--run-id", default=cfg.run_id)
    parser.add_argument("--chunk-size", type=int, default=cfg.chunk_size)
    parser.add_argument("--direct-limit", type=int, default=cfg.direct_processing_limit,
                        help="ledgers up to this many rows run as a single chunk")
    return parser.parse_args()


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("RECON_LOG_LEVEL", "INFO").upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    args = parse_args()
    cfg = ReconConfig(
        ledger_path=args.ledger,
        processor_path=args.processor,
        outputs_dir=args.outputs,
        rules_path=args.rules,
        db_path=args.db,
        run_id=args.run_id,
        chunk_size=args.chunk_size,
        direct_processing_limit=args.direct_limit,
    )
    rules = load_rules(cfg.rules_path)

    store = ReconStore(cfg.db_path)
    store.initialize()
    summary = reconcile_files(store, cfg, rules)
    anomalies = store.list_anomalies(cfg.run_id)

    write_outputs(cfg.outputs_dir, summary, anomalies)

    print(f"Wrote outputs to {cfg.outputs_dir}/")
    print(f"Run {summary.run_id}: {summary.status.value} | schema: {summary.schema} | "
          f"chunks: {summary.chunks_completed}/{summary.chunks_total}")
    if summary.status == RunStatus.FAILED:
        print(f"Error: {summary.error_message}")
        raise SystemExit(1)
    print(f"Anomalies: {summary.total_anomalies} | Annual revenue at risk: "
          f"{format_minor(summary.annual_revenue_at_risk_minor, rules.currency_code)}")
    print(f"Period: {summary.period_start} to {summary.period_end}")
    print(summary.summary_text)


if __name__ == "__main__":
    main()
