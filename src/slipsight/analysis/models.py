"""
Stat result models.

PlayerMatchStats is the per-participant breakdown that gets persisted;
MatchStats bundles it with the resolved outcome.
"""

from dataclasses import asdict, dataclass, field

from slipsight.analysis.conversions import Conversion


@dataclass
class PlayerMatchStats:
    """Statistics for one participant in one match.

    Ratio fields are None when their denominator is zero.
    """

    player_index: int
    port: int
    character_id: int
    character_color: int
    connect_code: str = ""
    display_name: str = ""
    tag: str = ""

    # Damage and kills
    damage_dealt: float = 0.0
    damage_taken: float = 0.0
    kill_count: int = 0
    avg_kill_percent: float | None = None

    # Openings
    conversion_count: int = 0
    successful_conversions: int = 0
    openings_per_kill: float | None = None
    damage_per_opening: float | None = None
    neutral_win_ratio: float | None = None
    counter_hit_ratio: float | None = None
    beneficial_trade_ratio: float | None = None

    # Inputs
    inputs_total: int = 0
    inputs_per_minute: float | None = None

    # Techniques
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

    # End state
    stocks_remaining: int = 0
    final_percent: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class MatchStats:
    players: list[PlayerMatchStats]
    winner_index: int | None = None
    loser_index: int | None = None
    conversions: list[Conversion] = field(default_factory=list)

    def for_player(self, player_index: int) -> PlayerMatchStats | None:
        for player in self.players:
            if player.player_index == player_index:
                return player
        return None
