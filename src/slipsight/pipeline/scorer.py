"""
Scorer - computes full statistics when a recording session ends.

The recorder only knows the video it wrote and, usually, where the game
wrote its replay. The Scorer finds that replay, decodes it, aggregates the
stats and submits a full payload. When the replay cannot be found or read
the match still gets a skeleton record pointing at the video, so that it
shows up in listings without made-up numbers.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from slipsight.analysis.aggregator import StatAggregator
from slipsight.core.config import IndexerConfig, ScorerConfig, StatsConfig
from slipsight.core.decoder import ReplayDecoder
from slipsight.core.errors import DecodeError, ResolutionError
from slipsight.core.paths import normalize_path, recording_id_for_path
from slipsight.infra.watcher import find_replay_files, get_default_replays_folder
from slipsight.pipeline.coordinator import ConsistencyCoordinator, Producer, SubmitResult
from slipsight.pipeline.payloads import MatchPayload, full_payload

logger = logging.getLogger(__name__)


@dataclass
class SessionEnded:
    """Signal emitted by the recorder when a session finishes."""

    video_path: str
    replay_path_hint: str | None = None
    session_id: str | None = None


class ScoreOutcome(StrEnum):
    SCORED = "scored"
    UNRESOLVED = "unresolved"
    DECODE_FAILED = "decode_failed"


@dataclass
class ScoreResult:
    outcome: ScoreOutcome
    recording_id: str
    replay_path: str | None = None
    submit: SubmitResult | None = None


class Scorer:
    """
    Handles session-ended signals.

    Example usage:
        scorer = Scorer(coordinator)
        result = scorer.handle_session_ended(
            SessionEnded("C:/Videos/game.mp4", "C:/Slippi/Game_20240101T120000.slp")
        )
    """

    def __init__(
        self,
        coordinator: ConsistencyCoordinator,
        config: ScorerConfig | None = None,
        stats_config: StatsConfig | None = None,
        indexer_config: IndexerConfig | None = None,
        decoder: ReplayDecoder | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.coordinator = coordinator
        self.config = config or ScorerConfig()
        self.aggregator = StatAggregator(stats_config)
        self.indexer_config = indexer_config or IndexerConfig()
        self.decoder = decoder or ReplayDecoder()
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Replay resolution
    # -------------------------------------------------------------------------

    def _candidates(self) -> list[Path]:
        folders = self.indexer_config.replay_folders or [str(get_default_replays_folder())]
        return find_replay_files(folders, self.indexer_config.max_depth)

    def _stored_replay(self, video_path: str) -> Path | None:
        """Replay of a record already pointing at this video."""
        record = self.coordinator.gateway.find_match_by_video_path(normalize_path(video_path))
        if record is None or not record["replay_path"]:
            return None
        stored = Path(record["replay_path"])
        return stored if stored.is_file() else None

    def _find_once(self, video_path: str, hint: str | None) -> Path | None:
        stored = self._stored_replay(video_path)
        if stored is not None:
            return stored

        if hint:
            hinted = Path(normalize_path(hint))
            if hinted.is_file():
                return hinted

        video_stem = Path(video_path.replace("\\", "/")).stem
        for candidate in self._candidates():
            if candidate.stem == video_stem:
                return candidate
        return None

    def resolve_replay(self, video_path: str, hint: str | None = None) -> Path:
        """
        Locate the replay for a recording.

        A record that already links this video to a replay wins. Otherwise
        the normalized hint is tried, then the replay folders are scanned
        for a file sharing the video's stem. The game may still be flushing
        the replay, so a miss is retried once after a delay.

        Raises:
            ResolutionError: If no replay is found after the retry
        """
        found = self._find_once(video_path, hint)
        if found is None:
            logger.debug(
                f"Replay for {video_path} not found, retrying in "
                f"{self.config.resolution_retry_delay}s"
            )
            self._sleep(self.config.resolution_retry_delay)
            found = self._find_once(video_path, hint)

        if found is None:
            raise ResolutionError(video_path, hint)
        return found

    # -------------------------------------------------------------------------
    # Session handling
    # -------------------------------------------------------------------------

    def handle_session_ended(self, signal: SessionEnded) -> ScoreResult:
        """
        Score the match behind a finished recording.

        Raises:
            PersistenceError: If the store keeps failing
        """
        video_path = normalize_path(signal.video_path)

        try:
            replay_file = self.resolve_replay(signal.video_path, signal.replay_path_hint)
        except ResolutionError as e:
            logger.warning(str(e))
            return self._submit_unresolved(signal, video_path)

        replay_path = normalize_path(replay_file)
        recording_id = self.coordinator.resolve_recording_id(
            replay_path, signal.session_id or recording_id_for_path(replay_file)
        )

        try:
            replay = self.decoder.decode_file(replay_file)
        except (DecodeError, OSError) as e:
            logger.error(f"Failed to decode {replay_file.name}: {e}")
            submit = self.coordinator.submit(
                recording_id,
                MatchPayload(video_path=video_path, replay_path=replay_path),
                Producer.SCORER,
            )
            return ScoreResult(ScoreOutcome.DECODE_FAILED, recording_id, replay_path, submit)

        stats = self.aggregator.aggregate(replay)
        submit = self.coordinator.submit(
            recording_id,
            full_payload(replay, stats, replay_path=replay_path, video_path=video_path),
            Producer.SCORER,
        )
        logger.info(f"Scored {replay_file.name} as {recording_id}")
        return ScoreResult(ScoreOutcome.SCORED, recording_id, replay_path, submit)

    def _submit_unresolved(self, signal: SessionEnded, video_path: str) -> ScoreResult:
        proposed = signal.session_id or recording_id_for_path(signal.video_path)
        recording_id = proposed
        if signal.replay_path_hint:
            # Bind the hinted path so a later sweep lands on this record
            recording_id = self.coordinator.resolve_recording_id(
                normalize_path(signal.replay_path_hint), proposed
            )

        submit = self.coordinator.submit(
            recording_id, MatchPayload(video_path=video_path), Producer.SCORER
        )
        return ScoreResult(ScoreOutcome.UNRESOLVED, recording_id, None, submit)

    def recompute(self, recording_id: str) -> ScoreResult:
        """
        Re-derive a stored match from its replay and overwrite it.

        Unlike a normal submit, values the replay no longer backs are
        cleared and player rows are replaced wholesale.

        Raises:
            KeyError: If there is no record for ``recording_id``
            ResolutionError: If the record has no readable replay
            DecodeError: If the replay cannot be decoded
            PersistenceError: If the store keeps failing
        """
        record = self.coordinator.gateway.get_match_record(recording_id)
        if record is None:
            raise KeyError(recording_id)

        replay_path = record["replay_path"]
        if not replay_path or not Path(replay_path).is_file():
            raise ResolutionError(record["video_path"] or recording_id, replay_path)

        replay = self.decoder.decode_file(Path(replay_path))
        stats = self.aggregator.aggregate(replay)
        payload = full_payload(
            replay,
            stats,
            replay_path=replay_path,
            video_path=record["video_path"],
            include_nulls=True,
        )
        submit = self.coordinator.submit(recording_id, payload, Producer.SCORER, recompute=True)
        logger.info(f"Recomputed {recording_id} from {Path(replay_path).name}")
        return ScoreResult(ScoreOutcome.SCORED, recording_id, replay_path, submit)
