import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from errors import StateError
from models import ChunkStatus, Match, RunStatus
from store import ReconStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def planned(store, run_id="r1", ranges=((0, 10), (10, 20), (20, 25))):
    store.reset_run(run_id, "ledger.csv", "processor.csv", {})
    store.create_chunks(run_id, list(ranges))


def test_chunks_claimed_in_strict_order(store):
    planned(store)
    first = store.claim_next_chunk("r1", 600, now=T0)
    assert first.index == 0
    assert first.status == ChunkStatus.PROCESSING
    # chunk 1 waits until chunk 0 completes
    assert store.claim_next_chunk("r1", 600, now=T0) is None

    store.complete_chunk(first, [], [], now=T0)
    second = store.claim_next_chunk("r1", 600, now=T0)
    assert second.index == 1
    assert store.get_run("r1").chunks_completed == 1


def test_claim_race_and_stale_reclaim(tmp_path):
    path = str(tmp_path / "shared.db")
    a, b = ReconStore(path), ReconStore(path)
    a.initialize()
    planned(a)

    claimed = a.claim_next_chunk("r1", 600, now=T0)
    assert claimed is not None
    assert b.claim_next_chunk("r1", 600, now=T0 + timedelta(seconds=30)) is None

    stolen = b.claim_next_chunk("r1", 600, now=T0 + timedelta(seconds=601))
    assert stolen.index == claimed.index
    assert stolen.attempts == 2

    # the first worker lost ownership and must not complete the chunk
    with pytest.raises(StateError):
        a.complete_chunk(claimed, [], [], now=T0)
    b.complete_chunk(stolen, [], [], now=T0)


def test_completion_is_atomic(store):
    planned(store)
    chunk = store.claim_next_chunk("r1", 600, now=T0)
    duplicate = [Match(0, "t0", "ch_1", "primary", 0.0), Match(1, "t1", "ch_1", "primary", 0.0)]
    with pytest.raises(sqlite3.IntegrityError):
        store.complete_chunk(chunk, duplicate, [], now=T0)
    assert store.load_consumed("r1") == set()
    assert store.get_chunks("r1")[0].status == ChunkStatus.PROCESSING


def test_release_then_error_after_max_attempts(store):
    planned(store, ranges=((0, 5),))
    chunk = store.claim_next_chunk("r1", 600, now=T0)
    assert store.release_chunk(chunk, "boom", max_attempts=2) == ChunkStatus.PENDING
    chunk = store.claim_next_chunk("r1", 600, now=T0)
    assert chunk.attempts == 2
    assert store.release_chunk(chunk, "boom", max_attempts=2) == ChunkStatus.ERROR
    assert store.claim_next_chunk("r1", 600, now=T0) is None


def test_finalize_transition_happens_once(store):
    planned(store, ranges=((0, 5),))
    assert not store.begin_finalize("r1")
    chunk = store.claim_next_chunk("r1", 600, now=T0)
    store.complete_chunk(chunk, [Match(0, "t0", "ch_1", "primary", 0.0)], [], now=T0)
    assert store.begin_finalize("r1")
    assert not store.begin_finalize("r1")
    assert store.get_run("r1").status == RunStatus.FINALIZING
    assert store.load_matches("r1")[0].external_id == "ch_1"


def test_unknown_run_is_not_claimable(store):
    assert store.claim_next_chunk("ghost", 600) is None
    assert store.get_run("ghost") is None
