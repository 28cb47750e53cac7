"""
Producer payloads for the consistency coordinator.

Payloads are pydantic models so that an omitted field and a field
explicitly set to None stay distinguishable: ``model_fields_set`` only
contains what the producer actually supplied.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from slipsight.analysis.models import MatchStats
from slipsight.core.decoder import DecodedReplay
from slipsight.core.paths import normalize_path


class PlayerStatsPayload(BaseModel):
    """Full statistics for one participant."""

    model_config = ConfigDict(extra="forbid")

    player_index: int
    port: int
    character_id: int
    character_color: int
    connect_code: str = ""
    display_name: str = ""
    tag: str = ""

    damage_dealt: float = 0.0
    damage_taken: float = 0.0
    kill_count: int = 0
    avg_kill_percent: float | None = None

    conversion_count: int = 0
    successful_conversions: int = 0
    openings_per_kill: float | None = None
    damage_per_opening: float | None = None
    neutral_win_ratio: float | None = None
    counter_hit_ratio: float | None = None
    beneficial_trade_ratio: float | None = None

    inputs_total: int = 0
    inputs_per_minute: float | None = None

    wavedash_count: int = 0
    waveland_count: int = 0
    airdodge_count: int = 0
    dashdance_count: int = 0
    spotdodge_count: int = 0
    ledgegrab_count: int = 0
    roll_count: int = 0
    grab_count: int = 0
    throw_count: int = 0
    ground_tech_count: int = 0
    wall_tech_count: int = 0
    missed_tech_count: int = 0
    l_cancel_success_count: int = 0
    l_cancel_fail_count: int = 0
    l_cancel_ratio: float | None = None

    stocks_remaining: int = 0
    final_percent: float | None = None


class MatchPayload(BaseModel):
    """Partial MatchRecord fields plus, from the Scorer, player stats."""

    model_config = ConfigDict(extra="forbid")

    replay_path: str | None = None
    video_path: str | None = None
    stage_id: int | None = None
    game_duration_frames: int | None = None
    total_frames: int | None = None
    is_pal: bool | None = None
    played_on: str | None = None
    started_at: datetime | None = None
    match_id: str | None = None
    game_number: int | None = None
    winner_index: int | None = None
    loser_index: int | None = None
    game_end_method: str | None = None

    players: list[PlayerStatsPayload] | None = None

    def supplied_fields(self) -> dict[str, Any]:
        """Match fields the producer set, including explicit None values."""
        return self.model_dump(exclude_unset=True, exclude={"players"})

    @property
    def has_players(self) -> bool:
        return "players" in self.model_fields_set and self.players is not None


def _parse_start(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _coarse_fields(replay: DecodedReplay, include_nulls: bool = False) -> dict[str, Any]:
    settings = replay.settings
    fields: dict[str, Any] = {
        "stage_id": settings.stage_id,
        "game_duration_frames": replay.duration_frames,
        "total_frames": replay.total_frames,
        "is_pal": settings.is_pal,
        "played_on": replay.metadata.played_on,
        "started_at": _parse_start(replay.metadata.start_at),
        "match_id": settings.match_id,
        "game_number": settings.game_number,
        "game_end_method": replay.game_end.method_name if replay.game_end else None,
    }
    if include_nulls:
        return fields
    # Unknown values are omitted, not sent as explicit nulls
    return {k: v for k, v in fields.items() if v is not None}


def skeleton_payload(
    replay: DecodedReplay,
    replay_path: Path | str | None = None,
    winner_index: int | None = None,
    loser_index: int | None = None,
) -> MatchPayload:
    """Coarse, filesystem-derivable metadata for the Indexer."""
    fields = _coarse_fields(replay)
    if replay_path is not None:
        fields["replay_path"] = normalize_path(replay_path)
    if winner_index is not None:
        fields["winner_index"] = winner_index
    if loser_index is not None:
        fields["loser_index"] = loser_index
    return MatchPayload(**fields)


def full_payload(
    replay: DecodedReplay,
    stats: MatchStats,
    replay_path: Path | str | None = None,
    video_path: Path | str | None = None,
    include_nulls: bool = False,
) -> MatchPayload:
    """
    Everything the Scorer knows about a match.

    With ``include_nulls`` unknown match fields are sent as explicit None,
    which a recompute submit uses to clear values the replay no longer backs.
    """
    fields = _coarse_fields(replay, include_nulls)
    if replay_path is not None:
        fields["replay_path"] = normalize_path(replay_path)
    if video_path is not None:
        fields["video_path"] = normalize_path(video_path)
    # A null outcome is a real result here, so it is sent explicitly
    fields["winner_index"] = stats.winner_index
    fields["loser_index"] = stats.loser_index
    fields["players"] = [PlayerStatsPayload(**p.to_dict()) for p in stats.players]
    return MatchPayload(**fields)
