"""
Stat Aggregator

Turns a decoded replay into one PlayerMatchStats per participant and
resolves the match outcome.

Every ratio uses the same convention: when the denominator is zero the
ratio is None, never 0, NaN or infinity. Downstream reporting skips None
values instead of averaging them in as zeros.
"""

import logging

from slipsight.analysis.conversions import Conversion, build_conversions
from slipsight.analysis.events import Hit, StockLoss, find_hits, find_stock_losses
from slipsight.analysis.models import MatchStats, PlayerMatchStats
from slipsight.analysis.techniques import count_inputs, count_techniques
from slipsight.core.config import StatsConfig
from slipsight.core.constants import FRAMES_PER_SECOND, OpeningType
from slipsight.core.decoder import DecodedReplay

logger = logging.getLogger(__name__)


def safe_ratio(numerator: float, denominator: float) -> float | None:
    """numerator / denominator, or None when the denominator is zero."""
    if not denominator:
        return None
    return numerator / denominator


def _opening_ratio(conversions: list[Conversion], player_index: int, kind: OpeningType) -> float | None:
    """Share of openings of one kind, between player_index and their opponents, won by the player."""
    won = sum(1 for c in conversions if c.opening_type == kind and c.player_index == player_index)
    lost = sum(
        1 for c in conversions if c.opening_type == kind and c.recipient_index == player_index
    )
    return safe_ratio(won, won + lost)


def _beneficial_trade_ratio(
    conversions: list[Conversion], player_index: int, window: int
) -> float | None:
    trades = [
        c
        for c in conversions
        if c.opening_type == OpeningType.TRADE and c.player_index == player_index
    ]
    beneficial = 0
    for trade in trades:
        counterpart = next(
            (
                c
                for c in conversions
                if c.opening_type == OpeningType.TRADE
                and c.player_index == trade.recipient_index
                and c.recipient_index == player_index
                and abs(c.start_frame - trade.start_frame) <= window
            ),
            None,
        )
        other_damage = counterpart.damage if counterpart else 0.0
        if trade.damage > other_damage:
            beneficial += 1
    return safe_ratio(beneficial, len(trades))


def resolve_winner(
    replay: DecodedReplay, stocks_remaining: dict[int, int]
) -> tuple[int | None, int | None]:
    """
    Decide winner and loser indices.

    Priority:
        1. Placements from the game end event, when both a first and a
           second place are present
        2. Withdrawal (LRAS): the player who did not quit wins
        3. Unique most stocks remaining

    Returns (None, None) when nothing resolves the outcome, e.g. a tie.
    """
    game_end = replay.game_end
    players = replay.player_indices

    if game_end and game_end.placements:
        first = [p.player_index for p in game_end.placements if p.position == 0]
        second = [p.player_index for p in game_end.placements if p.position == 1]
        if len(first) == 1 and len(second) == 1:
            return first[0], second[0]

    if game_end and game_end.lras_initiator in players:
        others = [i for i in players if i != game_end.lras_initiator]
        if len(others) == 1:
            return others[0], game_end.lras_initiator

    if stocks_remaining:
        ranked = sorted(stocks_remaining.items(), key=lambda kv: kv[1], reverse=True)
        if len(ranked) >= 2 and ranked[0][1] > ranked[1][1]:
            winner = ranked[0][0]
            lowest = ranked[-1][1]
            losers = [i for i, stocks in ranked if stocks == lowest]
            loser = losers[0] if len(losers) == 1 else None
            return winner, loser

    return None, None


def resolve_outcome(replay: DecodedReplay) -> tuple[int | None, int | None]:
    """Winner and loser from the replay alone, without full aggregation."""
    losses = find_stock_losses(replay)
    stocks = {
        index: max(player.start_stocks - sum(1 for s in losses if s.player_index == index), 0)
        for index, player in replay.settings.players.items()
    }
    return resolve_winner(replay, stocks)


class StatAggregator:
    """
    Computes per-player statistics for a decoded replay.

    Example usage:
        stats = StatAggregator().aggregate(decode_replay(data))
        for player in stats.players:
            print(player.tag, player.kill_count, player.openings_per_kill)
    """

    def __init__(self, config: StatsConfig | None = None):
        self.config = config or StatsConfig()

    def aggregate(self, replay: DecodedReplay) -> MatchStats:
        hits = find_hits(replay)
        losses = find_stock_losses(replay)
        conversions = build_conversions(replay, self.config)

        players = [
            self._player_stats(replay, index, hits, losses, conversions)
            for index in replay.player_indices
        ]
        winner, loser = resolve_winner(
            replay, {p.player_index: p.stocks_remaining for p in players}
        )

        logger.debug(
            f"Aggregated {len(players)} players, {len(conversions)} conversions, "
            f"winner={winner} loser={loser}"
        )
        return MatchStats(
            players=players,
            winner_index=winner,
            loser_index=loser,
            conversions=conversions,
        )

    def _player_stats(
        self,
        replay: DecodedReplay,
        index: int,
        hits: list[Hit],
        losses: list[StockLoss],
        conversions: list[Conversion],
    ) -> PlayerMatchStats:
        settings = replay.settings.players[index]
        post = replay.post_frames.get(index, [])
        pre = replay.pre_frames.get(index, [])

        own_losses = [s for s in losses if s.player_index == index]
        kills = [s for s in losses if s.killer_index == index]
        own_conversions = [c for c in conversions if c.player_index == index]

        techniques = count_techniques(post, self.config)
        inputs = count_inputs(pre, self.config)
        minutes = replay.total_frames / (FRAMES_PER_SECOND * 60)
        l_cancels = techniques.l_cancel_success_count + techniques.l_cancel_fail_count

        return PlayerMatchStats(
            player_index=index,
            port=settings.port,
            character_id=settings.character_id,
            character_color=settings.character_color,
            connect_code=settings.connect_code,
            display_name=settings.display_name,
            tag=settings.tag,
            damage_dealt=sum(h.damage for h in hits if h.attacker_index == index),
            damage_taken=sum(h.damage for h in hits if h.recipient_index == index),
            kill_count=len(kills),
            avg_kill_percent=safe_ratio(sum(s.percent for s in kills), len(kills)),
            conversion_count=len(own_conversions),
            successful_conversions=sum(1 for c in own_conversions if c.move_count > 1),
            openings_per_kill=safe_ratio(len(own_conversions), len(kills)),
            damage_per_opening=safe_ratio(
                sum(c.damage for c in own_conversions), len(own_conversions)
            ),
            neutral_win_ratio=_opening_ratio(conversions, index, OpeningType.NEUTRAL),
            counter_hit_ratio=_opening_ratio(conversions, index, OpeningType.COUNTER),
            beneficial_trade_ratio=_beneficial_trade_ratio(
                conversions, index, self.config.trade_window_frames
            ),
            inputs_total=inputs,
            inputs_per_minute=safe_ratio(inputs, minutes),
            l_cancel_ratio=safe_ratio(techniques.l_cancel_success_count, l_cancels),
            stocks_remaining=max(settings.start_stocks - len(own_losses), 0),
            final_percent=own_losses[-1].percent if own_losses else None,
            **techniques.as_dict(),
        )


def aggregate_stats(replay: DecodedReplay, config: StatsConfig | None = None) -> MatchStats:
    """Convenience wrapper around StatAggregator."""
    return StatAggregator(config).aggregate(replay)
