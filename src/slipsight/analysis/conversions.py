"""
Conversion Extractor

Groups hits into conversions (punish sequences) and classifies how each
one opened. Conversions are cheap to rebuild, so nothing here is cached
or persisted; callers re-derive them from the replay bytes on demand.
"""

import logging
from dataclasses import dataclass
from typing import Any

from slipsight.analysis.events import Hit, StockLoss, find_hits, find_stock_losses, state_at
from slipsight.core.config import StatsConfig
from slipsight.core.constants import (
    FIRST_PLAYABLE_FRAME,
    FRAMES_PER_SECOND,
    OpeningType,
    is_attacking,
    is_damaged,
    is_shielding,
)
from slipsight.core.decoder import DecodedReplay, decode_replay

logger = logging.getLogger(__name__)


def format_frame_time(frame: int) -> str:
    """Game clock for a frame as M:SS, counting from the end of the countdown."""
    seconds = max((frame - FIRST_PLAYABLE_FRAME) // FRAMES_PER_SECOND, 0)
    return f"{seconds // 60}:{seconds % 60:02d}"


@dataclass
class Conversion:
    """A grouped run of hits by one player on one opponent."""

    player_index: int
    recipient_index: int
    start_frame: int
    end_frame: int
    start_percent: float
    end_percent: float
    move_count: int
    opening_type: OpeningType
    did_kill: bool

    @property
    def damage(self) -> float:
        return max(self.end_percent - self.start_percent, 0.0)

    def to_display(self) -> dict[str, Any]:
        return {
            "player_index": self.player_index,
            "recipient_index": self.recipient_index,
            "start_frame": self.start_frame,
            "end_frame": self.end_frame,
            "start_time": format_frame_time(self.start_frame),
            "end_time": format_frame_time(self.end_frame),
            "damage": f"{round(self.damage)}%",
            "damage_range": f"{round(self.start_percent)}% -> {round(self.end_percent)}%",
            "moves": self.move_count,
            "opening_type": self.opening_type.value,
            "did_kill": self.did_kill,
        }


def _group_hits(hits: list[Hit], losses: list[StockLoss], gap: int) -> list[list[Hit]]:
    """Split one attacker/recipient hit stream wherever the gap or a stock loss breaks it."""
    loss_frames = [s.frame for s in losses]
    groups: list[list[Hit]] = []
    for hit in hits:
        if groups:
            last = groups[-1][-1]
            died_between = any(last.frame < f <= hit.frame for f in loss_frames)
            if hit.frame - last.frame <= gap and not died_between:
                groups[-1].append(hit)
                continue
        groups.append([hit])
    return groups


def _classify(
    replay: DecodedReplay,
    group: list[Hit],
    all_hits: list[Hit],
    trade_window: int,
) -> OpeningType:
    first = group[0]
    attacker, recipient = first.attacker_index, first.recipient_index

    for other in all_hits:
        if (
            other.attacker_index == recipient
            and other.recipient_index == attacker
            and abs(other.frame - first.frame) <= trade_window
        ):
            return OpeningType.TRADE

    before = state_at(replay, recipient, first.frame - 1)
    if before is None:
        return OpeningType.UNKNOWN

    state = before.action_state
    if is_attacking(state) or is_shielding(state) or is_damaged(state):
        return OpeningType.COUNTER
    return OpeningType.NEUTRAL


def build_conversions(replay: DecodedReplay, config: StatsConfig | None = None) -> list[Conversion]:
    """All conversions in the match, ordered by start frame then attacker."""
    config = config or StatsConfig()
    hits = find_hits(replay)
    losses = find_stock_losses(replay)
    gap = config.conversion_gap_frames

    streams: dict[tuple[int, int], list[Hit]] = {}
    for hit in hits:
        streams.setdefault((hit.attacker_index, hit.recipient_index), []).append(hit)

    conversions: list[Conversion] = []
    for (attacker, recipient), stream in sorted(streams.items()):
        recipient_losses = [s for s in losses if s.player_index == recipient]
        for group in _group_hits(stream, recipient_losses, gap):
            first, last = group[0], group[-1]
            did_kill = any(last.frame <= s.frame <= last.frame + gap for s in recipient_losses)
            conversions.append(
                Conversion(
                    player_index=attacker,
                    recipient_index=recipient,
                    start_frame=first.frame,
                    end_frame=last.frame,
                    start_percent=first.percent_before,
                    end_percent=last.percent_after,
                    move_count=len(group),
                    opening_type=_classify(replay, group, hits, config.trade_window_frames),
                    did_kill=did_kill,
                )
            )

    conversions.sort(key=lambda c: (c.start_frame, c.player_index, c.recipient_index))
    return conversions


def extract_conversions(
    replay_bytes: bytes, config: StatsConfig | None = None
) -> dict[int, list[Conversion]]:
    """
    Conversions per attacking player for display.

    Pure: decodes the bytes, derives conversions and returns them keyed by
    player index. Every player in the match gets an entry, possibly empty.

    Raises:
        DecodeError: If the replay is malformed
    """
    replay = decode_replay(replay_bytes)
    result: dict[int, list[Conversion]] = {i: [] for i in replay.player_indices}
    for conversion in build_conversions(replay, config):
        result[conversion.player_index].append(conversion)
    logger.debug(
        f"Extracted {sum(len(v) for v in result.values())} conversions "
        f"for {len(result)} players"
    )
    return result
