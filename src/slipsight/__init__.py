"""
SlipSight - Slippi Replay Statistics

Decodes Super Smash Bros. Melee replays (.slp) recorded by Slippi, computes
per-player statistics and keeps one canonical record per match, no matter
whether the folder sweep or the end of a recording session saw it first.

Usage:
    from slipsight import decode_replay_file, aggregate_stats

    replay = decode_replay_file("Game_20240101T120000.slp")
    stats = aggregate_stats(replay)

    for player in stats.players:
        print(f"{player.tag}: {player.openings_per_kill}")
"""

__version__ = "0.1.0"
__author__ = "SlipSight Contributors"


def __getattr__(name):
    """Lazy import for heavy dependencies."""
    if name == "decode_replay":
        from slipsight.core.decoder import decode_replay
        return decode_replay
    elif name == "decode_replay_file":
        from slipsight.core.decoder import decode_replay_file
        return decode_replay_file
    elif name == "aggregate_stats":
        from slipsight.analysis.aggregator import aggregate_stats
        return aggregate_stats
    elif name == "extract_conversions":
        from slipsight.analysis.conversions import extract_conversions
        return extract_conversions
    elif name == "ConsistencyCoordinator":
        from slipsight.pipeline.coordinator import ConsistencyCoordinator
        return ConsistencyCoordinator
    elif name == "Indexer":
        from slipsight.pipeline.indexer import Indexer
        return Indexer
    elif name == "Scorer":
        from slipsight.pipeline.scorer import Scorer
        return Scorer
    elif name == "DatabaseManager":
        from slipsight.infra.database import DatabaseManager
        return DatabaseManager
    raise AttributeError(f"module 'slipsight' has no attribute '{name}'")


__all__ = [
    "__version__",
    "decode_replay",
    "decode_replay_file",
    "aggregate_stats",
    "extract_conversions",
    "ConsistencyCoordinator",
    "Indexer",
    "Scorer",
    "DatabaseManager",
]
