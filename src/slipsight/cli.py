"""
SlipSight CLI - Command Line Interface for Slippi replay statistics

Provides commands for:
- Showing per-player stats and conversions of a replay
- Indexing replay folders into the match store
- Watching for new replays
- Scoring a finished recording session and recomputing stored matches
- Aggregate reports over stored matches
"""

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from slipsight import __version__
from slipsight.analysis.aggregator import aggregate_stats
from slipsight.analysis.conversions import extract_conversions
from slipsight.analysis.reports import summarize_player
from slipsight.core.config import (
    SlipSightConfig,
    configure_logging,
    generate_default_config,
    get_config,
    load_config,
    set_config,
)
from slipsight.core.decoder import decode_replay_file
from slipsight.core.errors import DecodeError, PersistenceError, ResolutionError
from slipsight.infra.database import DatabaseManager
from slipsight.infra.watcher import ReplayFileEvent, ReplayWatcher, get_default_replays_folder
from slipsight.pipeline.coordinator import ConsistencyCoordinator
from slipsight.pipeline.indexer import Indexer
from slipsight.pipeline.scorer import Scorer, SessionEnded

app = typer.Typer(
    name="slipsight",
    help="Local Slippi replay statistics - openings, techniques and match history",
    add_completion=False,
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold blue]SlipSight[/bold blue] v{__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable verbose output"),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file (.yaml, .toml or .json)"
    ),
) -> None:
    """SlipSight - Local Slippi Replay Statistics"""
    config = load_config(config_file)
    set_config(config)
    configure_logging(config.logging, verbose)


def _open_store(config: SlipSightConfig) -> ConsistencyCoordinator:
    db = DatabaseManager(config.database.path, echo=config.database.echo)
    return ConsistencyCoordinator(db, config.coordinator)


def _decode_or_exit(replay_path: Path):
    try:
        return decode_replay_file(replay_path)
    except DecodeError as e:
        console.print(f"[red]Could not decode replay:[/red] {e}")
        raise typer.Exit(1)


def _fmt(value: float | None, suffix: str = "", digits: int = 2) -> str:
    return "-" if value is None else f"{value:.{digits}f}{suffix}"


@app.command()
def stats(
    replay_path: Path = typer.Argument(
        ...,
        help="Path to the .slp file",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
) -> None:
    """
    Show per-player statistics for one replay.
    """
    config = get_config()
    replay = _decode_or_exit(replay_path)
    result = aggregate_stats(replay, config.stats)

    console.print(f"\n[bold blue]SlipSight[/bold blue] - {replay_path.name}\n")
    console.print(f"[cyan]Stage:[/cyan] {replay.settings.stage_id}")
    console.print(f"[cyan]Duration:[/cyan] {replay.duration_frames} frames")
    if replay.game_end:
        console.print(f"[cyan]End:[/cyan] {replay.game_end.method_name}")
    winner = result.for_player(result.winner_index) if result.winner_index is not None else None
    console.print(f"[cyan]Winner:[/cyan] {winner.tag if winner else 'undecided'}\n")

    table = Table(title="Player Stats")
    table.add_column("Player", style="cyan")
    table.add_column("Char", justify="right")
    table.add_column("Stocks", justify="right")
    table.add_column("Kills", justify="right")
    table.add_column("Dmg", justify="right")
    table.add_column("Op/Kill", justify="right")
    table.add_column("Dmg/Op", justify="right")
    table.add_column("Neutral", justify="right")
    table.add_column("IPM", justify="right")
    table.add_column("L-Cancel", justify="right")
    table.add_column("WD", justify="right")

    for p in result.players:
        table.add_row(
            p.tag,
            str(p.character_id),
            str(p.stocks_remaining),
            str(p.kill_count),
            f"{p.damage_dealt:.1f}",
            _fmt(p.openings_per_kill),
            _fmt(p.damage_per_opening, digits=1),
            _fmt(None if p.neutral_win_ratio is None else p.neutral_win_ratio * 100, "%", 1),
            _fmt(p.inputs_per_minute, digits=0),
            _fmt(None if p.l_cancel_ratio is None else p.l_cancel_ratio * 100, "%", 1),
            str(p.wavedash_count),
        )

    console.print(table)


@app.command()
def conversions(
    replay_path: Path = typer.Argument(
        ...,
        help="Path to the .slp file",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
    player: Optional[int] = typer.Option(
        None, "--player", "-p", help="Only conversions by this player index"
    ),
) -> None:
    """
    List the conversions (punishes) of one replay.
    """
    try:
        by_player = extract_conversions(replay_path.read_bytes(), get_config().stats)
    except DecodeError as e:
        console.print(f"[red]Could not decode replay:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"Conversions - {replay_path.name}")
    table.add_column("Player", justify="right", style="cyan")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Damage", justify="right")
    table.add_column("Range")
    table.add_column("Moves", justify="right")
    table.add_column("Opening")
    table.add_column("Kill")

    rows = [
        c for index, items in sorted(by_player.items()) if player in (None, index) for c in items
    ]
    for c in sorted(rows, key=lambda c: (c.start_frame, c.player_index)):
        shown = c.to_display()
        table.add_row(
            f"P{c.player_index + 1}",
            shown["start_time"],
            shown["end_time"],
            shown["damage"],
            shown["damage_range"],
            str(shown["moves"]),
            shown["opening_type"],
            "[green]yes[/green]" if c.did_kill else "",
        )

    console.print(table)
    console.print(f"{len(rows)} conversion(s)")


@app.command()
def index(
    folder: Optional[list[Path]] = typer.Option(
        None,
        "--folder",
        "-f",
        help="Replay folder to sweep (repeatable; defaults to the configured folders)",
        file_okay=False,
    ),
    use_cache: bool = typer.Option(
        True, "--cache/--no-cache", help="Skip replays indexed before"
    ),
) -> None:
    """
    Run one Indexer sweep over the replay folders.
    """
    config = get_config()
    if folder:
        config.indexer.replay_folders = [str(f) for f in folder]
    config.indexer.use_cache = use_cache

    indexer = Indexer(_open_store(config), config.indexer)
    report = indexer.sweep()

    console.print(f"\n[bold blue]SlipSight[/bold blue] - {report.summary()}")
    for path, error in report.failed.items():
        console.print(f"  [red]failed[/red] {path}: {error}")


@app.command()
def watch(
    folder: Optional[Path] = typer.Option(
        None,
        "--folder",
        "-f",
        help="Folder to watch (defaults to the Slippi replay folder)",
        file_okay=False,
    ),
) -> None:
    """
    Watch for new replays and index them as they finish.

    Runs one sweep at startup so replays written while the watcher was
    down are picked up too.
    """
    config = get_config()
    folders = [str(folder)] if folder else config.indexer.replay_folders
    if not folders:
        folders = [str(get_default_replays_folder())]
    config.indexer.replay_folders = folders

    indexer = Indexer(_open_store(config), config.indexer)

    console.print("\n[bold blue]SlipSight[/bold blue] - Watching for replays\n")
    for f in folders:
        console.print(f"[cyan]Folder:[/cyan] {f}")
    console.print("\nPress [bold]Ctrl+C[/bold] to stop...\n")

    startup = indexer.sweep()
    console.print(f"[yellow]Startup sweep: {startup.summary()}[/yellow]\n")

    watcher = ReplayWatcher(
        folders,
        recursive=config.watcher.recursive,
        debounce_seconds=config.watcher.debounce_seconds,
        min_file_size=config.watcher.min_file_size_bytes,
    )

    @watcher.on_new_replay
    def handle_new_replay(event: ReplayFileEvent) -> None:
        report = indexer.sweep([event.file_path])
        if report.failed:
            console.print(f"[red]Failed:[/red] {event.filename}")
        elif report.indexed:
            console.print(f"[green]Indexed:[/green] {event.filename}")

    try:
        watcher.start(blocking=True)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping watcher...[/yellow]")
        watcher.stop()


@app.command()
def score(
    video_path: str = typer.Argument(..., help="Path of the recorded video"),
    replay: Optional[str] = typer.Option(
        None, "--replay", "-r", help="Where the replay is expected to be"
    ),
    session_id: Optional[str] = typer.Option(
        None, "--session-id", help="Recording session id to use as the record key"
    ),
) -> None:
    """
    Score a finished recording session, as the recorder would.
    """
    config = get_config()
    scorer = Scorer(
        _open_store(config),
        config.scorer,
        stats_config=config.stats,
        indexer_config=config.indexer,
    )
    try:
        result = scorer.handle_session_ended(
            SessionEnded(video_path=video_path, replay_path_hint=replay, session_id=session_id)
        )
    except PersistenceError as e:
        console.print(f"[red]Could not save:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[cyan]Recording:[/cyan] {result.recording_id}")
    console.print(f"[cyan]Outcome:[/cyan] {result.outcome.value}")
    if result.replay_path:
        console.print(f"[cyan]Replay:[/cyan] {result.replay_path}")


@app.command()
def recompute(
    recording_id: str = typer.Argument(..., help="Recording id to recompute"),
) -> None:
    """
    Re-derive a stored match from its replay, replacing old stats.
    """
    config = get_config()
    scorer = Scorer(
        _open_store(config),
        config.scorer,
        stats_config=config.stats,
        indexer_config=config.indexer,
    )
    try:
        result = scorer.recompute(recording_id)
    except KeyError:
        console.print(f"[yellow]No match[/yellow] {recording_id}")
        raise typer.Exit(1)
    except (ResolutionError, DecodeError) as e:
        console.print(f"[red]Cannot recompute:[/red] {e}")
        raise typer.Exit(1)
    except PersistenceError as e:
        console.print(f"[red]Could not save:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]Recomputed[/green] {result.recording_id} from {result.replay_path}")


@app.command()
def matches(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of matches to show"),
) -> None:
    """
    List stored matches, most recent first.
    """
    config = get_config()
    db = DatabaseManager(config.database.path, echo=config.database.echo)

    table = Table(title="Matches")
    table.add_column("Recording", style="cyan")
    table.add_column("State")
    table.add_column("Started")
    table.add_column("Stage", justify="right")
    table.add_column("Winner", justify="right")
    table.add_column("Replay")

    for record in db.list_match_records(limit=limit):
        table.add_row(
            record["recording_id"],
            record["state"],
            record["started_at"] or "-",
            "-" if record["stage_id"] is None else str(record["stage_id"]),
            "-" if record["winner_index"] is None else f"P{record['winner_index'] + 1}",
            record["replay_path"] or "-",
        )

    console.print(table)


@app.command()
def delete(
    recording_id: str = typer.Argument(..., help="Recording id to delete"),
) -> None:
    """
    Delete a stored match and its player stats.
    """
    config = get_config()
    db = DatabaseManager(config.database.path, echo=config.database.echo)
    if db.delete_match(recording_id):
        console.print(f"[green]Deleted[/green] {recording_id}")
    else:
        console.print(f"[yellow]No match[/yellow] {recording_id}")
        raise typer.Exit(1)


@app.command()
def report(
    tag: Optional[str] = typer.Option(None, "--tag", "-t", help="Connect code or tag"),
    opponent_character: Optional[int] = typer.Option(
        None, "--vs", help="Only games against this character id"
    ),
    stage: Optional[int] = typer.Option(None, "--stage", "-s", help="Only games on this stage id"),
    as_json: bool = typer.Option(False, "--json", help="Print the summary as JSON"),
) -> None:
    """
    Aggregate summary of stored games.
    """
    config = get_config()
    db = DatabaseManager(config.database.path, echo=config.database.echo)
    rows = db.query_player_stats(
        tag=tag, opponent_character=opponent_character, stage_id=stage
    )
    summary = summarize_player(rows)

    if as_json:
        console.print_json(json.dumps(summary, default=str))
        return

    title = f"Report - {tag}" if tag else "Report"
    table = Table(title=title, show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")

    table.add_row("Games", str(summary["games"]))
    table.add_row("Wins", str(summary["wins"]))
    table.add_row("Win rate", _fmt(_pct(summary["win_rate"]), "%", 1))
    table.add_row("L-cancel", _fmt(_pct(summary["avg_l_cancel_ratio"]), "%", 1))
    table.add_row("Openings / kill", _fmt(summary["avg_openings_per_kill"]))
    table.add_row("Damage / opening", _fmt(summary["avg_damage_per_opening"], digits=1))
    table.add_row("Neutral wins", _fmt(_pct(summary["avg_neutral_win_ratio"]), "%", 1))
    table.add_row("Inputs / minute", _fmt(summary["avg_inputs_per_minute"], digits=0))
    console.print(table)

    if summary["by_stage"]:
        stages = Table(title="By stage")
        stages.add_column("Stage", justify="right", style="cyan")
        stages.add_column("Games", justify="right")
        stages.add_column("Win rate", justify="right")
        for stage_id, entry in sorted(summary["by_stage"].items()):
            stages.add_row(str(stage_id), str(entry["games"]), _fmt(_pct(entry["win_rate"]), "%", 1))
        console.print(stages)


def _pct(value: float | None) -> float | None:
    return None if value is None else value * 100


@app.command("init-config")
def init_config(
    path: Path = typer.Argument(Path("slipsight.yaml"), help="Where to write the config"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
) -> None:
    """
    Write a default configuration file.
    """
    if path.exists() and not force:
        console.print(f"[yellow]{path} already exists[/yellow] (use --force)")
        raise typer.Exit(1)
    generate_default_config(path)
    console.print(f"[green]Wrote[/green] {path}")


@app.command()
def info() -> None:
    """
    Display information about SlipSight and the environment.
    """
    import platform as plat

    import sqlalchemy
    import watchdog.version

    config = get_config()
    console.print(f"\n[bold blue]SlipSight[/bold blue] v{__version__}\n")

    table = Table(show_header=False)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Python", plat.python_version())
    table.add_row("Platform", plat.system())
    table.add_row("SQLAlchemy", sqlalchemy.__version__)
    table.add_row("watchdog", watchdog.version.VERSION_STRING)

    try:
        replays_folder = get_default_replays_folder()
        folder_status = (
            "[green]exists[/green]" if replays_folder.exists() else "[yellow]not found[/yellow]"
        )
        table.add_row("Replays Folder", f"{replays_folder} ({folder_status})")
    except ValueError as e:
        table.add_row("Replays Folder", f"[red]{e}[/red]")

    folders = ", ".join(config.indexer.replay_folders) or "(default)"
    table.add_row("Configured Folders", folders)
    table.add_row("Database", config.database.path or "(default)")

    console.print(table)


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
