"""
Derived frame events.

Hits and stock losses are read off the post-frame tables. Both the stat
aggregator and the conversion extractor build on these, so the two views
of a match always agree on who hit whom and when.
"""

from dataclasses import dataclass

from slipsight.core.constants import is_dead
from slipsight.core.decoder import DecodedReplay, PostFrame


@dataclass
class Hit:
    """A frame on which the recipient's percent went up."""

    attacker_index: int
    recipient_index: int
    frame: int
    percent_before: float
    percent_after: float

    @property
    def damage(self) -> float:
        return self.percent_after - self.percent_before


@dataclass
class StockLoss:
    player_index: int
    frame: int
    # Percent on the last frame before the death animation
    percent: float
    killer_index: int | None = None


def _attacker(replay: DecodedReplay, victim: int, last_hit_by: int) -> int | None:
    """Resolve who is responsible for damage to victim."""
    if last_hit_by != victim and last_hit_by in replay.settings.players:
        return last_hit_by
    opponents = replay.opponents_of(victim)
    if len(opponents) == 1:
        return opponents[0]
    return None


def find_hits(replay: DecodedReplay) -> list[Hit]:
    """All hits in the match, ordered by frame then recipient."""
    hits: list[Hit] = []
    for victim, frames in replay.post_frames.items():
        prev: PostFrame | None = None
        for cur in frames:
            if prev is not None and cur.percent > prev.percent:
                attacker = _attacker(replay, victim, cur.last_hit_by)
                if attacker is not None:
                    hits.append(
                        Hit(
                            attacker_index=attacker,
                            recipient_index=victim,
                            frame=cur.frame,
                            percent_before=prev.percent,
                            percent_after=cur.percent,
                        )
                    )
            prev = cur
    hits.sort(key=lambda h: (h.frame, h.recipient_index))
    return hits


def find_stock_losses(replay: DecodedReplay) -> list[StockLoss]:
    """Stock losses ordered by frame. One per entry into the death animation."""
    losses: list[StockLoss] = []
    for victim, frames in replay.post_frames.items():
        prev: PostFrame | None = None
        for cur in frames:
            if (
                prev is not None
                and is_dead(cur.action_state)
                and not is_dead(prev.action_state)
            ):
                losses.append(
                    StockLoss(
                        player_index=victim,
                        frame=cur.frame,
                        percent=prev.percent,
                        killer_index=_attacker(replay, victim, prev.last_hit_by),
                    )
                )
            prev = cur
    losses.sort(key=lambda s: (s.frame, s.player_index))
    return losses


def state_at(replay: DecodedReplay, player_index: int, frame: int) -> PostFrame | None:
    """Post-frame for a player at an exact frame, if recorded."""
    frames = replay.post_frames.get(player_index, [])
    lo, hi = 0, len(frames)
    while lo < hi:
        mid = (lo + hi) // 2
        if frames[mid].frame < frame:
            lo = mid + 1
        else:
            hi = mid
    if lo < len(frames) and frames[lo].frame == frame:
        return frames[lo]
    return None
