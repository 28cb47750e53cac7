"""
Aggregate reporting over persisted player rows.

Works on the rows returned by ``DatabaseManager.query_player_stats``. Null
ratios stay missing: averages are taken over the games where the ratio
exists, never with missing values counted as zero.
"""

import logging
import math
from typing import Any

import pandas as pd

logger = logging.getLogger(__name__)

AVERAGED_FIELDS = (
    "l_cancel_ratio",
    "openings_per_kill",
    "damage_per_opening",
    "neutral_win_ratio",
    "counter_hit_ratio",
    "inputs_per_minute",
    "damage_dealt",
    "kill_count",
)


def _mean(series: pd.Series) -> float | None:
    value = pd.to_numeric(series, errors="coerce").mean()
    if value is None or math.isnan(value):
        return None
    return float(value)


def _win_column(df: pd.DataFrame) -> pd.Series:
    """1.0 for a win, 0.0 for a loss, NaN when the outcome is unresolved."""
    return df["won"].map({True: 1.0, False: 0.0}).astype(float)


def _win_rates(df: pd.DataFrame, column: str) -> dict[Any, dict[str, Any]]:
    result: dict[Any, dict[str, Any]] = {}
    if column not in df.columns:
        return result

    frame = df.assign(_won=_win_column(df)).dropna(subset=[column])
    for key, group in frame.groupby(column):
        decided = group["_won"].dropna()
        result[int(key)] = {
            "games": int(len(group)),
            "wins": int(decided.sum()),
            "win_rate": float(decided.mean()) if len(decided) else None,
        }
    return result


def summarize_player(rows: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Summarize a player's games.

    Returns:
        Dict with games, wins, losses, win_rate, ``avg_<field>`` for each
        averaged field, and per-character and per-stage breakdowns.
        Win rate only counts games with a resolved winner.
    """
    summary: dict[str, Any] = {
        "games": len(rows),
        "wins": 0,
        "losses": 0,
        "win_rate": None,
        "by_character": {},
        "by_opponent_character": {},
        "by_stage": {},
    }
    for name in AVERAGED_FIELDS:
        summary[f"avg_{name}"] = None

    if not rows:
        return summary

    df = pd.DataFrame(rows)
    won = _win_column(df).dropna()

    summary["wins"] = int(won.sum())
    summary["losses"] = int(len(won) - won.sum())
    summary["win_rate"] = float(won.mean()) if len(won) else None

    for name in AVERAGED_FIELDS:
        if name in df.columns:
            summary[f"avg_{name}"] = _mean(df[name])

    summary["by_character"] = _win_rates(df, "character_id")
    summary["by_opponent_character"] = _win_rates(df, "opponent_character_id")
    summary["by_stage"] = _win_rates(df, "stage_id")

    logger.debug(f"Summarized {summary['games']} games, {summary['wins']} wins")
    return summary
