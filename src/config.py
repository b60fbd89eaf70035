from dataclasses import dataclass

@dataclass(frozen=True)
class ReconConfig:
    ledger_path: str = "data/raw/ledger.csv"
    processor_path: str = "data/raw/processor.csv"
    outputs_dir: str = "outputs"
    rules_path: str = "config/recon_config.json"
    db_path: str = "outputs/recon_state.db"
    run_id: str = "local"

    chunk_size: int = 1000                # ledger rows per chunk
    direct_processing_limit: int = 3000   # at or below this many rows, run as one pass
    stale_after_seconds: int = 600        # a processing chunk older than this can be re-claimed
    max_attempts: int = 3
