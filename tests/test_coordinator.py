"""Tests for the consistency coordinator."""

import threading
import time
from datetime import UTC, datetime
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from slipsight.analysis.aggregator import aggregate_stats, resolve_outcome
from slipsight.core.config import CoordinatorConfig
from slipsight.core.decoder import decode_replay
from slipsight.core.errors import PersistenceError
from slipsight.infra.database import DatabaseManager
from slipsight.pipeline.coordinator import (
    ConsistencyCoordinator,
    KeyedLock,
    Producer,
    merge_match_fields,
)
from slipsight.pipeline.payloads import (
    MatchPayload,
    PlayerStatsPayload,
    full_payload,
    skeleton_payload,
)
from slp_builder import combo_replay

REPLAY_PATH = "/replays/Game_20240101T120000.slp"
VIDEO_PATH = "/videos/Game_20240101T120000.mp4"

VOLATILE = ("created_at", "updated_at", "version")


def _locked() -> OperationalError:
    return OperationalError("UPDATE match_records", {}, Exception("database is locked"))


def _stable(details: dict) -> dict:
    return {k: v for k, v in details.items() if k not in VOLATILE}


def _player(index: int, **fields) -> PlayerStatsPayload:
    return PlayerStatsPayload(
        player_index=index, port=index + 1, character_id=2, character_color=0, **fields
    )


@pytest.fixture
def replay():
    return decode_replay(combo_replay().build())


@pytest.fixture
def skeleton(replay):
    winner, loser = resolve_outcome(replay)
    return skeleton_payload(replay, REPLAY_PATH, winner, loser)


@pytest.fixture
def full(replay):
    return full_payload(replay, aggregate_stats(replay), REPLAY_PATH, VIDEO_PATH)


def _store(tmp_path, name: str = "matches.db", **config) -> ConsistencyCoordinator:
    db = DatabaseManager(tmp_path / name)
    return ConsistencyCoordinator(db, CoordinatorConfig(**config), sleep=Mock())


class TestMergeFields:
    """Tests for the pure merge rules."""

    def test_absent_record_takes_everything(self):
        """With no record, every non-null supplied field is written."""
        changes = merge_match_fields(None, {"stage_id": 31, "winner_index": None}, Producer.INDEXER)
        assert changes == {"stage_id": 31}

    def test_indexer_only_fills_nulls(self):
        """Indexer values never replace existing ones."""
        current = {"stage_id": 8, "winner_index": None}
        changes = merge_match_fields(current, {"stage_id": 31, "winner_index": 0}, Producer.INDEXER)
        assert changes == {"winner_index": 0}

    def test_scorer_overwrites(self):
        """Scorer values replace differing existing ones."""
        current = {"stage_id": 8, "winner_index": 1}
        changes = merge_match_fields(current, {"stage_id": 31, "winner_index": 1}, Producer.SCORER)
        assert changes == {"stage_id": 31}

    def test_explicit_null_needs_recompute(self):
        """Explicit None only clears during a recompute."""
        current = {"winner_index": 1}
        assert merge_match_fields(current, {"winner_index": None}, Producer.SCORER) == {}
        assert merge_match_fields(
            current, {"winner_index": None}, Producer.SCORER, recompute=True
        ) == {"winner_index": None}

    def test_omitted_fields_untouched(self):
        """Fields not supplied are not part of the change set."""
        assert merge_match_fields({"stage_id": 8}, {}, Producer.SCORER) == {}

    def test_datetime_against_stored_string(self):
        """Stored ISO timestamps compare equal to the same datetime."""
        current = {"started_at": "2024-01-01T12:00:00"}
        supplied = {"started_at": datetime(2024, 1, 1, 12, 0, tzinfo=UTC)}
        assert merge_match_fields(current, supplied, Producer.SCORER) == {}


class TestSubmit:
    """Tests for submits against a real store."""

    def test_indexer_creates_skeleton(self, tmp_path, skeleton):
        """An Indexer submit on an absent record creates a skeleton."""
        coordinator = _store(tmp_path)
        result = coordinator.submit("r1", skeleton, Producer.INDEXER)

        assert result.created is True
        assert result.state == "skeleton"
        assert result.record["stage_id"] == 31
        assert coordinator.gateway.get_player_stats("r1") == []

    def test_scorer_creates_complete(self, tmp_path, full):
        """A Scorer submit with players creates a complete record."""
        coordinator = _store(tmp_path)
        result = coordinator.submit("r1", full, Producer.SCORER)

        assert result.state == "complete"
        rows = coordinator.gateway.get_player_stats("r1")
        assert [r["player_index"] for r in rows] == [0, 1]
        assert rows[0]["kill_count"] == 1
        assert rows[1]["openings_per_kill"] is None

    def test_indexer_then_scorer_example(self, tmp_path):
        """Coarse fields from the Indexer survive the Scorer's submit."""
        coordinator = _store(tmp_path)
        coordinator.submit(
            "r1", MatchPayload(stage_id=31, game_duration_frames=5400), Producer.INDEXER
        )
        coordinator.submit(
            "r1", MatchPayload(winner_index=0, players=[_player(0), _player(1)]), Producer.SCORER
        )

        record = coordinator.gateway.get_match_record("r1")
        assert record["stage_id"] == 31
        assert record["game_duration_frames"] == 5400
        assert record["winner_index"] == 0
        assert record["state"] == "complete"

    def test_idempotent_full_submit(self, tmp_path, full):
        """Submitting the same payload twice leaves the same state."""
        coordinator = _store(tmp_path)
        coordinator.submit("r1", full, Producer.SCORER)
        first = coordinator.gateway.get_match_details("r1")

        coordinator.submit("r1", full, Producer.SCORER)
        second = coordinator.gateway.get_match_details("r1")

        assert first == second

    def test_idempotent_skeleton_submit(self, tmp_path, skeleton):
        """A repeated Indexer submit is a no-op."""
        coordinator = _store(tmp_path)
        coordinator.submit("r1", skeleton, Producer.INDEXER)
        first = coordinator.gateway.get_match_record("r1")

        result = coordinator.submit("r1", skeleton, Producer.INDEXER)
        assert result.created is False
        assert coordinator.gateway.get_match_record("r1") == first

    def test_commutative(self, tmp_path, skeleton, full):
        """Skeleton then full equals full then skeleton."""
        a = _store(tmp_path, "a.db")
        a.submit("r1", skeleton, Producer.INDEXER)
        a.submit("r1", full, Producer.SCORER)

        b = _store(tmp_path, "b.db")
        b.submit("r1", full, Producer.SCORER)
        b.submit("r1", skeleton, Producer.INDEXER)

        details_a = a.gateway.get_match_details("r1")
        details_b = b.gateway.get_match_details("r1")
        assert _stable(details_a) == _stable(details_b)
        assert details_a["state"] == "complete"

    def test_complete_never_regresses(self, tmp_path, skeleton, full):
        """A later Indexer submit keeps the record complete."""
        coordinator = _store(tmp_path)
        coordinator.submit("r1", full, Producer.SCORER)
        result = coordinator.submit("r1", skeleton, Producer.INDEXER)
        assert result.state == "complete"

    def test_indexer_does_not_overwrite_scorer(self, tmp_path):
        """Indexer values lose against Scorer values regardless of order."""
        coordinator = _store(tmp_path)
        coordinator.submit("r1", MatchPayload(winner_index=1), Producer.SCORER)
        coordinator.submit("r1", MatchPayload(winner_index=0), Producer.INDEXER)
        assert coordinator.gateway.get_match_record("r1")["winner_index"] == 1

    def test_partial_null_does_not_clobber(self, tmp_path):
        """An explicit null without recompute keeps the stored value."""
        coordinator = _store(tmp_path)
        coordinator.submit("r1", MatchPayload(stage_id=31), Producer.INDEXER)
        coordinator.submit("r1", MatchPayload(stage_id=None), Producer.SCORER)
        assert coordinator.gateway.get_match_record("r1")["stage_id"] == 31

        coordinator.submit("r1", MatchPayload(stage_id=None), Producer.SCORER, recompute=True)
        assert coordinator.gateway.get_match_record("r1")["stage_id"] is None

    def test_recompute_replaces_players(self, tmp_path):
        """Player rows are replaced wholesale and stale indices removed."""
        coordinator = _store(tmp_path)
        coordinator.submit(
            "r1",
            MatchPayload(players=[_player(0, kill_count=3), _player(1, kill_count=1)]),
            Producer.SCORER,
        )
        coordinator.submit(
            "r1", MatchPayload(players=[_player(0, kill_count=2)]), Producer.SCORER, recompute=True
        )

        rows = coordinator.gateway.get_player_stats("r1")
        assert [(r["player_index"], r["kill_count"]) for r in rows] == [(0, 2)]

    def test_indexer_cannot_send_players(self, tmp_path):
        """Player stats are Scorer-only."""
        coordinator = _store(tmp_path)
        with pytest.raises(ValueError, match="Indexer"):
            coordinator.submit("r1", MatchPayload(players=[_player(0)]), Producer.INDEXER)


class TestRetries:
    """Tests for transient failure handling."""

    def test_retries_then_succeeds(self, tmp_path):
        """Transient errors are retried with exponential backoff."""
        coordinator = _store(tmp_path, max_attempts=4, base_delay=0.1, max_delay=0.25)
        real_get = coordinator.gateway.get_match_record
        failures = iter([_locked(), _locked()])

        def flaky(recording_id):
            error = next(failures, None)
            if error is not None:
                raise error
            return real_get(recording_id)

        with patch.object(coordinator.gateway, "get_match_record", side_effect=flaky):
            result = coordinator.submit("r1", MatchPayload(stage_id=31), Producer.INDEXER)

        assert result.attempts == 3
        assert [c.args[0] for c in coordinator._sleep.call_args_list] == [0.1, 0.2]
        assert coordinator.gateway.get_match_record("r1")["stage_id"] == 31

    def test_gives_up_with_persistence_error(self, tmp_path):
        """After max_attempts the coordinator raises and nothing is written."""
        coordinator = _store(tmp_path, max_attempts=4, base_delay=0.1, max_delay=0.25)

        with patch.object(coordinator.gateway, "get_match_record", side_effect=_locked()):
            with pytest.raises(PersistenceError) as exc_info:
                coordinator.submit("r1", MatchPayload(stage_id=31), Producer.INDEXER)

        assert exc_info.value.attempts == 4
        assert exc_info.value.recording_id == "r1"
        assert [c.args[0] for c in coordinator._sleep.call_args_list] == [0.1, 0.2, 0.25]
        assert coordinator.gateway.get_match_record("r1") is None

    def test_failed_full_submit_rolls_back(self, tmp_path, full):
        """A failure while writing player rows leaves no partial record."""
        coordinator = _store(tmp_path, max_attempts=2)

        with patch.object(
            coordinator.gateway, "replace_player_stats", side_effect=_locked()
        ):
            with pytest.raises(PersistenceError):
                coordinator.submit("r1", full, Producer.SCORER)

        assert coordinator.gateway.get_match_record("r1") is None
        assert coordinator.gateway.get_player_stats("r1") == []

    def test_constraint_violation_is_not_retried(self, tmp_path):
        """A permanent constraint failure raises on the first attempt."""
        coordinator = _store(tmp_path, max_attempts=4)
        violation = IntegrityError("INSERT INTO match_records", {}, Exception("CHECK failed"))

        with patch.object(
            coordinator.gateway, "create_or_merge_match_record", side_effect=violation
        ):
            with pytest.raises(PersistenceError) as exc_info:
                coordinator.submit("r1", MatchPayload(stage_id=31), Producer.INDEXER)

        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.__cause__, IntegrityError)
        coordinator._sleep.assert_not_called()
        assert coordinator.gateway.get_match_record("r1") is None

    def test_lost_create_race_is_retried(self, tmp_path):
        """A duplicate-key insert after another writer created the record merges on retry."""
        coordinator = _store(tmp_path, max_attempts=4)
        other_writer = DatabaseManager(tmp_path / "matches.db")
        real_create = coordinator.gateway.create_or_merge_match_record
        calls = []

        def racing_create(recording_id, fields, state=None):
            calls.append(recording_id)
            if len(calls) == 1:
                other_writer.create_or_merge_match_record(recording_id, {"stage_id": 8})
                raise IntegrityError(
                    "INSERT INTO match_records", {}, Exception("UNIQUE constraint failed")
                )
            return real_create(recording_id, fields, state)

        with patch.object(
            coordinator.gateway, "create_or_merge_match_record", side_effect=racing_create
        ):
            result = coordinator.submit("r1", MatchPayload(stage_id=31), Producer.SCORER)

        assert result.attempts == 2
        assert result.created is False
        assert coordinator._sleep.call_count == 1
        assert coordinator.gateway.get_match_record("r1")["stage_id"] == 31

    def test_other_errors_are_not_retried(self, tmp_path):
        """Programming errors propagate on the first attempt."""
        coordinator = _store(tmp_path)
        with patch.object(
            coordinator.gateway, "get_match_record", side_effect=RuntimeError("boom")
        ):
            with pytest.raises(RuntimeError):
                coordinator.submit("r1", MatchPayload(stage_id=31), Producer.INDEXER)
        coordinator._sleep.assert_not_called()

    def test_lock_released_between_attempts(self, tmp_path):
        """The per-key lock is not held while backing off."""
        coordinator = _store(tmp_path, max_attempts=2)
        held_during_sleep = []

        def sleep(_delay):
            held_during_sleep.append(len(coordinator._locks))

        coordinator._sleep = sleep
        with patch.object(coordinator.gateway, "get_match_record", side_effect=_locked()):
            with pytest.raises(PersistenceError):
                coordinator.submit("r1", MatchPayload(stage_id=31), Producer.INDEXER)

        assert held_during_sleep == [0]


class TestConcurrency:
    """Tests for concurrent producers."""

    def test_concurrent_producers_same_key(self, tmp_path, skeleton, full):
        """Interleaved submits from both producers converge on one complete record."""
        coordinator = _store(tmp_path)
        errors = []

        def run(payload, source):
            try:
                coordinator.submit("r1", payload, source)
            except Exception as e:  # collected for the assertion below
                errors.append(e)

        threads = []
        for i in range(8):
            if i % 2:
                threads.append(threading.Thread(target=run, args=(full, Producer.SCORER)))
            else:
                threads.append(threading.Thread(target=run, args=(skeleton, Producer.INDEXER)))
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        details = coordinator.gateway.get_match_details("r1")
        assert details["state"] == "complete"
        assert details["video_path"] is not None
        assert [p["player_index"] for p in details["players"]] == [0, 1]
        assert len(coordinator.gateway.list_match_records()) == 1


class TestKeyedLock:
    """Tests for the per-key lock map."""

    def test_entries_are_dropped(self):
        """Unused keys do not accumulate."""
        locks = KeyedLock()
        with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_mutual_exclusion(self):
        """Two holders of the same key never overlap."""
        locks = KeyedLock()
        inside = []
        overlaps = []

        def worker():
            with locks.hold("k"):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlaps == []

    def test_different_keys_do_not_block(self):
        """Holding one key does not block another."""
        locks = KeyedLock()
        acquired = threading.Event()

        def other():
            with locks.hold("b"):
                acquired.set()

        with locks.hold("a"):
            thread = threading.Thread(target=other)
            thread.start()
            assert acquired.wait(timeout=2)
            thread.join()


class TestRecordingIds:
    """Tests for recording id assignment."""

    def test_first_claim_wins(self, tmp_path):
        """The first producer to claim a path fixes its recording id."""
        coordinator = _store(tmp_path)
        assert coordinator.resolve_recording_id(REPLAY_PATH, "session-1") == "session-1"
        assert coordinator.resolve_recording_id(REPLAY_PATH, "slp-abc") == "session-1"
