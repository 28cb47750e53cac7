"""
Indexer - filesystem reconciliation sweep.

Walks the configured replay folders, decodes every replay that is not yet
fingerprinted as indexed and submits its coarse metadata as a skeleton
record. A sweep never aborts on a single bad file: failures are logged and
collected in the report.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from slipsight.analysis.aggregator import resolve_outcome
from slipsight.core.config import IndexerConfig
from slipsight.core.decoder import ReplayDecoder
from slipsight.core.errors import DecodeError, PersistenceError
from slipsight.core.paths import normalize_path, recording_id_for_path
from slipsight.infra.watcher import ReplayIndexCache, find_replay_files, get_default_replays_folder
from slipsight.pipeline.coordinator import ConsistencyCoordinator, Producer
from slipsight.pipeline.payloads import skeleton_payload

logger = logging.getLogger(__name__)

# Failures isolated to a single file
ITEM_ERRORS = (DecodeError, PersistenceError, OSError, ValidationError)


@dataclass
class SweepReport:
    """What one sweep did, per file."""

    indexed: dict[str, str] = field(default_factory=dict)  # path -> recording id
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)  # path -> error
    pending: list[str] = field(default_factory=list)  # still being written

    @property
    def total(self) -> int:
        return len(self.indexed) + len(self.skipped) + len(self.failed) + len(self.pending)

    def summary(self) -> str:
        text = (
            f"{len(self.indexed)} indexed, {len(self.skipped)} skipped, "
            f"{len(self.failed)} failed"
        )
        if self.pending:
            text += f", {len(self.pending)} in progress"
        return text


class Indexer:
    """
    Submits skeleton records for replays found on disk.

    Example usage:
        indexer = Indexer(coordinator, IndexerConfig(replay_folders=["~/Slippi"]))
        report = indexer.sweep()
        print(report.summary())
    """

    def __init__(
        self,
        coordinator: ConsistencyCoordinator,
        config: IndexerConfig | None = None,
        cache: ReplayIndexCache | None = None,
        decoder: ReplayDecoder | None = None,
    ):
        self.coordinator = coordinator
        self.config = config or IndexerConfig()
        if cache is None and self.config.use_cache:
            cache_dir = Path(self.config.cache_directory) if self.config.cache_directory else None
            cache = ReplayIndexCache(cache_dir)
        self.cache = cache
        self.decoder = decoder or ReplayDecoder()

    def candidates(self) -> list[Path]:
        """Replay files in the configured folders, bounded by max_depth."""
        folders = self.config.replay_folders or [str(get_default_replays_folder())]
        return find_replay_files(folders, self.config.max_depth)

    def sweep(self, paths: list[Path] | None = None) -> SweepReport:
        """
        Index the given files, or every candidate when ``paths`` is None.

        Files the cache already knows are skipped unless they changed.
        """
        if paths is None:
            paths = self.candidates()

        report = SweepReport()
        logger.info(f"Sweeping {len(paths)} replay files")

        for path in paths:
            path = Path(path)
            key = normalize_path(path)

            if self.cache is not None and self.cache.is_indexed(path):
                report.skipped.append(key)
                continue

            try:
                recording_id = self.index_file(path)
            except ITEM_ERRORS as e:
                logger.warning(f"Failed to index {path.name}: {e}")
                report.failed[key] = str(e)
                continue

            if recording_id is None:
                report.pending.append(key)
            else:
                report.indexed[key] = recording_id

        logger.info(f"Sweep finished: {report.summary()}")
        return report

    def index_file(self, path: Path) -> str | None:
        """
        Decode one replay and submit its skeleton.

        Returns the recording id, or None for a replay Slippi is still
        writing. Such a file is neither submitted nor cached: its duration
        and outcome are not final yet, and the finished file gets indexed
        by a later sweep.
        """
        replay = self.decoder.decode_file(path)
        if replay.in_progress:
            logger.debug(f"Skipping in-progress replay {path.name}")
            return None

        replay_path = normalize_path(path)
        recording_id = self.coordinator.resolve_recording_id(
            replay_path, recording_id_for_path(path)
        )

        winner, loser = resolve_outcome(replay)
        payload = skeleton_payload(replay, replay_path, winner, loser)
        self.coordinator.submit(recording_id, payload, Producer.INDEXER)

        if self.cache is not None:
            self.cache.mark_indexed(path, recording_id)

        logger.debug(f"Indexed {path.name} as {recording_id}")
        return recording_id
