"""
SlipSight Match Store.

One MatchRecord per recording and one PlayerMatch row per participant,
kept in SQLite through the SQLAlchemy ORM.

Each public operation is its own unit of work. Wrapping several calls in
``with db.transaction():`` makes them share one session so they commit or
roll back together. MatchRecord updates carry a version column, so a
concurrent writer in another process turns into a StaleDataError instead
of a lost update.
"""

import logging
import os
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    and_,
    create_engine,
    func,
    or_,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, declarative_base, relationship, sessionmaker


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def _naive_utc(value: datetime | None) -> datetime | None:
    """SQLite stores naive datetimes; compare in naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".slipsight" / "matches.db"
Base = declarative_base()


class RecordState(StrEnum):
    SKELETON = "skeleton"
    COMPLETE = "complete"


# =============================================================================
# Database Models
# =============================================================================


class MatchRecord(Base):
    """One recorded match."""

    __tablename__ = "match_records"

    recording_id = Column(String(64), primary_key=True)
    state = Column(String(16), nullable=False, default=RecordState.SKELETON.value)

    # Files
    replay_path = Column(String(1024), index=True)
    video_path = Column(String(1024))

    # Game info
    stage_id = Column(Integer, index=True)
    game_duration_frames = Column(Integer)
    total_frames = Column(Integer)
    is_pal = Column(Boolean)
    played_on = Column(String(32))
    started_at = Column(DateTime, index=True)

    # Set linkage
    match_id = Column(String(64))
    game_number = Column(Integer)

    # Outcome
    winner_index = Column(Integer)
    loser_index = Column(Integer)
    game_end_method = Column(String(32))

    created_at = Column(DateTime, default=_utc_now)
    updated_at = Column(DateTime, default=_utc_now, onupdate=_utc_now)
    version = Column(Integer, nullable=False)

    player_stats = relationship(
        "PlayerMatch",
        back_populates="match",
        cascade="all, delete-orphan",
        order_by="PlayerMatch.player_index",
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict[str, Any]:
        data = {name: getattr(self, name) for name in MATCH_FIELDS}
        if self.started_at:
            data["started_at"] = self.started_at.isoformat()
        data.update(
            {
                "recording_id": self.recording_id,
                "state": self.state,
                "created_at": self.created_at.isoformat() if self.created_at else None,
                "updated_at": self.updated_at.isoformat() if self.updated_at else None,
                "version": self.version,
            }
        )
        return data


# Fields a producer may supply for a MatchRecord
MATCH_FIELDS = (
    "replay_path",
    "video_path",
    "stage_id",
    "game_duration_frames",
    "total_frames",
    "is_pal",
    "played_on",
    "started_at",
    "match_id",
    "game_number",
    "winner_index",
    "loser_index",
    "game_end_method",
)


class PlayerMatch(Base):
    """Statistics for one participant in one match."""

    __tablename__ = "player_match_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    recording_id = Column(
        String(64), ForeignKey("match_records.recording_id"), nullable=False, index=True
    )
    player_index = Column(Integer, nullable=False)
    port = Column(Integer)
    character_id = Column(Integer, index=True)
    character_color = Column(Integer)
    connect_code = Column(String(16), index=True)
    display_name = Column(String(64))
    tag = Column(String(64))

    # Damage and kills
    damage_dealt = Column(Float)
    damage_taken = Column(Float)
    kill_count = Column(Integer)
    avg_kill_percent = Column(Float)

    # Openings
    conversion_count = Column(Integer)
    successful_conversions = Column(Integer)
    openings_per_kill = Column(Float)
    damage_per_opening = Column(Float)
    neutral_win_ratio = Column(Float)
    counter_hit_ratio = Column(Float)
    beneficial_trade_ratio = Column(Float)

    # Inputs
    inputs_total = Column(Integer)
    inputs_per_minute = Column(Float)

    # Techniques
    wavedash_count = Column(Integer)
    waveland_count = Column(Integer)
    airdodge_count = Column(Integer)
    dashdance_count = Column(Integer)
    spotdodge_count = Column(Integer)
    ledgegrab_count = Column(Integer)
    roll_count = Column(Integer)
    grab_count = Column(Integer)
    throw_count = Column(Integer)
    ground_tech_count = Column(Integer)
    wall_tech_count = Column(Integer)
    missed_tech_count = Column(Integer)
    l_cancel_success_count = Column(Integer)
    l_cancel_fail_count = Column(Integer)
    l_cancel_ratio = Column(Float)

    # End state
    stocks_remaining = Column(Integer)
    final_percent = Column(Float)

    match = relationship("MatchRecord", back_populates="player_stats")

    __table_args__ = (
        UniqueConstraint("recording_id", "player_index", name="uq_player_match"),
        Index("idx_player_match_code_char", "connect_code", "character_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        data = {name: getattr(self, name) for name in PLAYER_STAT_FIELDS}
        data["recording_id"] = self.recording_id
        data["player_index"] = self.player_index
        return data


PLAYER_STAT_FIELDS = tuple(
    c.name
    for c in PlayerMatch.__table__.columns
    if c.name not in ("id", "recording_id", "player_index")
)


class RecordingAlias(Base):
    """Which recording id a replay path was first claimed under."""

    __tablename__ = "recording_aliases"

    replay_path = Column(String(1024), primary_key=True)
    recording_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, default=_utc_now)


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """Manages database connections and match store operations."""

    def __init__(self, db_path: Path | str | None = None, echo: bool = False):
        """Initialize database connection."""
        if db_path is None:
            db_path = os.environ.get("SLIPSIGHT_DB_PATH", DEFAULT_DB_PATH)

        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=echo,
            connect_args={"check_same_thread": False},
        )
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._local = threading.local()

        Base.metadata.create_all(self.engine)

        logger.info(f"Database initialized at: {self.db_path}")

    def get_session(self) -> Session:
        """Get a database session."""
        return self.SessionLocal()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Unit of work shared by every gateway call made inside the block.

        Nested use joins the outer transaction. The outermost block commits
        on success and rolls back on any exception, which is re-raised.
        """
        current = getattr(self._local, "session", None)
        if current is not None:
            yield current
            return

        session = self.get_session()
        self._local.session = session
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.warning(f"Transaction rolled back: {e}")
            raise
        finally:
            self._local.session = None
            session.close()

    # =========================================================================
    # Match Records
    # =========================================================================

    def get_match_record(self, recording_id: str) -> dict[str, Any] | None:
        """Get a match record by recording id, or None if absent."""
        with self.transaction() as session:
            record = session.get(MatchRecord, recording_id)
            return record.to_dict() if record else None

    def create_or_merge_match_record(
        self,
        recording_id: str,
        fields: dict[str, Any],
        state: RecordState | None = None,
    ) -> dict[str, Any]:
        """
        Create the record, or write the given fields onto the existing one.

        Only keys present in ``fields`` are written. A record never moves
        from complete back to skeleton.

        Raises:
            ValueError: If ``fields`` names an unknown column
        """
        unknown = set(fields) - set(MATCH_FIELDS)
        if unknown:
            raise ValueError(f"Unknown match fields: {sorted(unknown)}")

        values = dict(fields)
        if "started_at" in values:
            values["started_at"] = _naive_utc(values["started_at"])

        with self.transaction() as session:
            record = session.get(MatchRecord, recording_id)
            if record is None:
                record = MatchRecord(
                    recording_id=recording_id,
                    state=(state or RecordState.SKELETON).value,
                    **values,
                )
                session.add(record)
                logger.debug(f"Created {record.state} record {recording_id}")
            else:
                for key, value in values.items():
                    if getattr(record, key) != value:
                        setattr(record, key, value)
                if state == RecordState.COMPLETE:
                    record.state = RecordState.COMPLETE.value
            session.flush()
            return record.to_dict()

    def delete_match(self, recording_id: str) -> bool:
        """Delete a match, its player stats and its path aliases."""
        with self.transaction() as session:
            record = session.get(MatchRecord, recording_id)
            if record is None:
                return False
            session.delete(record)
            session.query(RecordingAlias).filter(
                RecordingAlias.recording_id == recording_id
            ).delete(synchronize_session=False)
            logger.info(f"Deleted match {recording_id}")
            return True

    def list_match_records(
        self,
        limit: int = 50,
        offset: int = 0,
        state: RecordState | None = None,
        stage_id: int | None = None,
    ) -> list[dict[str, Any]]:
        """Match records, most recently played first."""
        with self.transaction() as session:
            query = session.query(MatchRecord)
            if state:
                query = query.filter(MatchRecord.state == state.value)
            if stage_id is not None:
                query = query.filter(MatchRecord.stage_id == stage_id)
            records = (
                query.order_by(MatchRecord.started_at.desc(), MatchRecord.created_at.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [r.to_dict() for r in records]

    # =========================================================================
    # Player Stats
    # =========================================================================

    def replace_player_stats(
        self, recording_id: str, player_index: int, stats: dict[str, Any]
    ) -> None:
        """
        Replace the stats row for one participant wholesale.

        Columns missing from ``stats`` end up NULL rather than keeping
        values from a previous computation.
        """
        with self.transaction() as session:
            if session.get(MatchRecord, recording_id) is None:
                raise ValueError(f"No match record {recording_id} for player stats")

            session.query(PlayerMatch).filter(
                PlayerMatch.recording_id == recording_id,
                PlayerMatch.player_index == player_index,
            ).delete(synchronize_session=False)
            session.flush()

            session.add(
                PlayerMatch(
                    recording_id=recording_id,
                    player_index=player_index,
                    **{k: stats.get(k) for k in PLAYER_STAT_FIELDS},
                )
            )
            session.flush()

    def delete_stale_player_stats(self, recording_id: str, keep: Iterable[int]) -> int:
        """Remove rows for player indices not in ``keep``."""
        keep = list(keep)
        with self.transaction() as session:
            query = session.query(PlayerMatch).filter(PlayerMatch.recording_id == recording_id)
            if keep:
                query = query.filter(PlayerMatch.player_index.notin_(keep))
            return query.delete(synchronize_session=False)

    def get_player_stats(self, recording_id: str) -> list[dict[str, Any]]:
        with self.transaction() as session:
            rows = (
                session.query(PlayerMatch)
                .filter(PlayerMatch.recording_id == recording_id)
                .order_by(PlayerMatch.player_index)
                .all()
            )
            return [r.to_dict() for r in rows]

    def get_match_details(self, recording_id: str) -> dict[str, Any] | None:
        """Match record plus its player rows."""
        with self.transaction() as session:
            record = session.get(MatchRecord, recording_id)
            if record is None:
                return None
            details = record.to_dict()
            details["players"] = [p.to_dict() for p in record.player_stats]
            return details

    # =========================================================================
    # Recording Ids
    # =========================================================================

    def claim_recording_id(self, replay_path: str, recording_id: str) -> str:
        """
        Bind a replay path to a recording id, first claim wins.

        Returns the id the path is bound to, which is ``recording_id`` only
        if nobody claimed the path before.
        """
        session = self.get_session()
        try:
            existing = session.get(RecordingAlias, replay_path)
            if existing is not None:
                return existing.recording_id
            session.add(RecordingAlias(replay_path=replay_path, recording_id=recording_id))
            session.commit()
            return recording_id
        except IntegrityError:
            # A concurrent claim landed first
            session.rollback()
            existing = session.get(RecordingAlias, replay_path)
            if existing is None:
                raise
            return existing.recording_id
        finally:
            session.close()

    def find_recording_id(self, replay_path: str) -> str | None:
        with self.transaction() as session:
            alias = session.get(RecordingAlias, replay_path)
            return alias.recording_id if alias else None

    def find_match_by_video_path(self, video_path: str) -> dict[str, Any] | None:
        """Most recently updated record pointing at ``video_path``, if any."""
        with self.transaction() as session:
            record = (
                session.query(MatchRecord)
                .filter(MatchRecord.video_path == video_path)
                .order_by(MatchRecord.updated_at.desc())
                .first()
            )
            return record.to_dict() if record else None

    # =========================================================================
    # Reporting
    # =========================================================================

    def query_player_stats(
        self,
        tag: str | None = None,
        opponent_character: int | None = None,
        player_character: int | None = None,
        stage_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """
        Player rows joined with their match, for aggregate reporting.

        Args:
            tag: Connect code or display tag of the player (case-insensitive)
            opponent_character: Only games against this character id
            player_character: Only games where the player used this character id
            stage_id: Only games on this stage
            start: Only games started at or after this time
            end: Only games started before this time

        Returns:
            One dict per (recording, player) with match fields, ``won``
            (True/False/None) and ``opponent_character_id``
        """
        opponent = aliased(PlayerMatch)
        with self.transaction() as session:
            query = (
                session.query(PlayerMatch, MatchRecord, opponent.character_id)
                .join(MatchRecord, PlayerMatch.recording_id == MatchRecord.recording_id)
                .outerjoin(
                    opponent,
                    and_(
                        opponent.recording_id == PlayerMatch.recording_id,
                        opponent.player_index != PlayerMatch.player_index,
                    ),
                )
            )

            if tag:
                needle = tag.upper()
                query = query.filter(
                    or_(
                        func.upper(PlayerMatch.connect_code) == needle,
                        func.upper(PlayerMatch.tag) == needle,
                    )
                )
            if opponent_character is not None:
                query = query.filter(opponent.character_id == opponent_character)
            if player_character is not None:
                query = query.filter(PlayerMatch.character_id == player_character)
            if stage_id is not None:
                query = query.filter(MatchRecord.stage_id == stage_id)
            if start is not None:
                query = query.filter(MatchRecord.started_at >= _naive_utc(start))
            if end is not None:
                query = query.filter(MatchRecord.started_at < _naive_utc(end))

            rows: list[dict[str, Any]] = []
            seen: set[tuple[str, int]] = set()
            for player, match, opponent_char in query.order_by(
                MatchRecord.started_at, PlayerMatch.recording_id, PlayerMatch.player_index
            ):
                key = (player.recording_id, player.player_index)
                if key in seen:
                    continue
                seen.add(key)

                row = player.to_dict()
                row.update(
                    {
                        "stage_id": match.stage_id,
                        "started_at": match.started_at,
                        "winner_index": match.winner_index,
                        "game_duration_frames": match.game_duration_frames,
                        "opponent_character_id": opponent_char,
                        "won": (
                            None
                            if match.winner_index is None
                            else match.winner_index == player.player_index
                        ),
                    }
                )
                rows.append(row)
            return rows

