"""
Consistency Coordinator - Single write path for match records.

Two producers write to the same MatchRecord without knowing about each
other:

- the Indexer, which sweeps replay folders and submits coarse metadata
- the Scorer, which runs when a recording session ends and submits full
  statistics

Every submit reads the current record, merges field by field and writes
the result inside one transaction, while holding a lock for that
recording id. The merge is arranged so that the end state does not depend
on which producer arrives first:

- omitted fields are never touched
- explicit nulls only clear a field during a recompute
- Scorer values overwrite, Indexer values only fill empty fields
- a complete record never goes back to skeleton
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from slipsight.core.config import CoordinatorConfig
from slipsight.core.errors import PersistenceError
from slipsight.infra.database import DatabaseManager, RecordState
from slipsight.pipeline.payloads import MatchPayload

logger = logging.getLogger(__name__)


class CreateRace(Exception):
    """Another writer created the record between our read and our insert."""


# Store failures worth retrying: lock contention, version conflicts,
# a lost create race and plain I/O errors. Other constraint violations
# are permanent.
TRANSIENT_ERRORS = (OperationalError, StaleDataError, CreateRace, OSError)


class Producer(StrEnum):
    INDEXER = "indexer"
    SCORER = "scorer"


@dataclass
class SubmitResult:
    recording_id: str
    record: dict[str, Any]
    created: bool
    attempts: int = 1

    @property
    def state(self) -> str:
        return self.record["state"]


class KeyedLock:
    """
    One mutex per key, created on demand.

    Entries are reference counted and dropped once no thread holds or
    waits on them, so the map does not grow with every recording ever seen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, users]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1

        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def _same_value(existing: Any, value: Any) -> bool:
    """Compare a stored field with a supplied one; stored datetimes are ISO strings."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return existing == value.isoformat()
    return existing == value


def merge_match_fields(
    current: dict[str, Any] | None,
    supplied: dict[str, Any],
    source: Producer,
    recompute: bool = False,
) -> dict[str, Any]:
    """
    Compute the fields to write for one submit.

    Args:
        current: Existing record fields, or None if the record is absent
        supplied: Fields the producer set (explicit None included)
        source: Which producer is submitting
        recompute: Whether explicit None values should clear fields

    Returns:
        Mapping of field name to new value; empty when nothing changes
    """
    changes: dict[str, Any] = {}
    for key, value in supplied.items():
        existing = current.get(key) if current else None

        if value is None:
            if recompute and existing is not None:
                changes[key] = None
            continue

        if existing is None:
            changes[key] = value
        elif source is Producer.SCORER and not _same_value(existing, value):
            changes[key] = value

    return changes


class ConsistencyCoordinator:
    """
    Serializes and merges producer submissions per recording id.

    Example usage:
        coordinator = ConsistencyCoordinator(DatabaseManager())
        coordinator.submit("r1", MatchPayload(stage_id=31), Producer.INDEXER)
        coordinator.submit("r1", full_payload(replay, stats), Producer.SCORER)
    """

    def __init__(
        self,
        gateway: DatabaseManager,
        config: CoordinatorConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.config = config or CoordinatorConfig()
        self._locks = KeyedLock()
        self._sleep = sleep

    def submit(
        self,
        recording_id: str,
        payload: MatchPayload,
        source: Producer,
        recompute: bool = False,
    ) -> SubmitResult:
        """
        Merge a producer payload into the record for ``recording_id``.

        Transient store failures are retried with exponential backoff. The
        per-key lock is released between attempts so a struggling submit
        never holds up the other producer.

        Raises:
            ValueError: If an Indexer payload carries player stats
            PersistenceError: If the store keeps failing or a constraint is
                violated; nothing was written
        """
        if source is Producer.INDEXER and payload.has_players:
            raise ValueError("Indexer payloads cannot carry player stats")

        max_attempts = max(self.config.max_attempts, 1)
        last_error: BaseException | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                with self._locks.hold(recording_id):
                    result = self._apply(recording_id, payload, source, recompute)
                result.attempts = attempt
                return result
            except TRANSIENT_ERRORS as e:
                last_error = e
                if attempt == max_attempts:
                    break
                delay = min(self.config.base_delay * 2 ** (attempt - 1), self.config.max_delay)
                logger.warning(
                    f"Submit for {recording_id} failed (attempt {attempt}/{max_attempts}): "
                    f"{e}; retrying in {delay:.2f}s"
                )
                self._sleep(delay)
            except IntegrityError as e:
                logger.error(f"Submit for {recording_id} violates a constraint: {e}")
                raise PersistenceError(recording_id, attempt, e) from e

        logger.error(f"Giving up on {recording_id} after {max_attempts} attempts: {last_error}")
        raise PersistenceError(recording_id, max_attempts, last_error) from last_error

    def _apply(
        self,
        recording_id: str,
        payload: MatchPayload,
        source: Producer,
        recompute: bool,
    ) -> SubmitResult:
        full = payload.has_players
        state = RecordState.COMPLETE if full else RecordState.SKELETON

        current = None
        try:
            with self.gateway.transaction():
                current = self.gateway.get_match_record(recording_id)
                changes = merge_match_fields(current, payload.supplied_fields(), source, recompute)

                if current is None or changes or (full and current["state"] != state):
                    record = self.gateway.create_or_merge_match_record(
                        recording_id, changes, state
                    )
                else:
                    record = current

                if full:
                    keep = []
                    for player in payload.players or []:
                        self.gateway.replace_player_stats(
                            recording_id,
                            player.player_index,
                            player.model_dump(exclude={"player_index"}),
                        )
                        keep.append(player.player_index)
                    removed = self.gateway.delete_stale_player_stats(recording_id, keep)
                    if removed:
                        logger.info(f"Removed {removed} stale player rows for {recording_id}")
        except IntegrityError as e:
            if current is None and self.gateway.get_match_record(recording_id) is not None:
                raise CreateRace(recording_id) from e
            raise

        created = current is None
        logger.info(
            f"{source.value} submit for {recording_id}: "
            f"{'created' if created else 'merged'} {len(changes)} fields, state={record['state']}"
        )
        return SubmitResult(recording_id=recording_id, record=record, created=created)

    def resolve_recording_id(self, replay_path: str, proposed_id: str) -> str:
        """
        Recording id for a replay path; the first producer to ask fixes it.

        Store failures here are retried like submits.
        """
        max_attempts = max(self.config.max_attempts, 1)
        last_error: BaseException | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                return self.gateway.claim_recording_id(replay_path, proposed_id)
            except (OperationalError, OSError) as e:
                last_error = e
                if attempt < max_attempts:
                    self._sleep(
                        min(self.config.base_delay * 2 ** (attempt - 1), self.config.max_delay)
                    )
        raise PersistenceError(proposed_id, max_attempts, last_error) from last_error
