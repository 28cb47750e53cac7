"""
Replay folder watching and enumeration for Slippi .slp files.

Provides:
- Candidate enumeration for the indexer sweep (bounded depth)
- A fingerprint cache recording which replays were already indexed
- A watchdog observer that triggers work when a replay is finished

Slippi writes a replay incrementally while the game runs, so new files
are only reported once their size has stopped changing.
"""

import hashlib
import json
import logging
import os
import platform
import queue
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from slipsight.core.paths import normalize_path

logger = logging.getLogger(__name__)

REPLAY_SUFFIX = ".slp"

# Cache version - increment to invalidate old caches
CACHE_VERSION = 1

# Bytes hashed for the content fingerprint
FINGERPRINT_BYTES = 65536


def get_default_replays_folder() -> Path:
    """
    Default Slippi Launcher replay folder for this operating system.

    Raises:
        ValueError: If the OS is not supported
    """
    system = platform.system()
    home = Path.home()

    if system == "Windows":
        documents = Path(os.environ.get("USERPROFILE", str(home))) / "Documents"
        return documents / "Slippi"
    elif system in ("Darwin", "Linux"):
        return home / "Slippi"
    else:
        raise ValueError(f"Unsupported operating system: {system}")


def is_replay_file(path: Path | str) -> bool:
    return str(path).lower().endswith(REPLAY_SUFFIX)


def find_replay_files(folders: Iterable[Path | str], max_depth: int = 3) -> list[Path]:
    """
    Enumerate replay files under each folder, at most ``max_depth`` levels deep.

    Depth 1 means files directly inside the folder. Missing folders are
    skipped with a warning. Results are sorted and de-duplicated.
    """
    found: dict[str, Path] = {}
    for folder in folders:
        root = Path(folder).expanduser()
        if not root.is_dir():
            logger.warning(f"Replay folder does not exist: {root}")
            continue

        base_depth = len(root.parts)
        for dirpath, dirnames, filenames in os.walk(root):
            depth = len(Path(dirpath).parts) - base_depth + 1
            if depth >= max_depth:
                dirnames.clear()
            if depth > max_depth:
                continue
            for name in filenames:
                if is_replay_file(name):
                    path = Path(dirpath) / name
                    found.setdefault(normalize_path(path), path)

    return [found[key] for key in sorted(found)]


@dataclass
class ReplayFileEvent:
    """A replay file that finished writing."""

    file_path: Path
    event_type: str  # "created" or "modified"
    timestamp: float

    @property
    def filename(self) -> str:
        return self.file_path.name


@dataclass
class IndexCacheEntry:
    file_path: str
    file_size: int
    mtime: float
    fingerprint: str
    recording_id: str
    indexed_at: float


def compute_fingerprint(path: Path) -> str:
    """SHA256 of the file size plus its first 64KB."""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        sha256.update(str(path.stat().st_size).encode())
        sha256.update(f.read(FINGERPRINT_BYTES))
    return sha256.hexdigest()


class ReplayIndexCache:
    """
    Tracks which replay files the indexer already processed.

    Entries are keyed by normalized path. A file counts as indexed while
    its size matches and either its mtime or its content fingerprint is
    unchanged.
    """

    def __init__(self, cache_dir: Path | None = None):
        """
        Args:
            cache_dir: Directory for the cache file. Defaults to ~/.slipsight/
        """
        if cache_dir is None:
            cache_dir = Path.home() / ".slipsight"
        self.cache_dir = Path(cache_dir)
        self.cache_file = self.cache_dir / "index_cache.json"
        self._cache: dict[str, IndexCacheEntry] = {}
        self._lock = threading.Lock()
        self._load_cache()

    def _load_cache(self) -> None:
        if not self.cache_file.exists():
            return

        try:
            with open(self.cache_file) as f:
                data = json.load(f)

            if data.get("version") != CACHE_VERSION:
                logger.info("Index cache version mismatch, starting fresh")
                return

            for key, entry in data.get("entries", {}).items():
                self._cache[key] = IndexCacheEntry(**entry)

            logger.debug(f"Loaded {len(self._cache)} indexed replays")

        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load index cache: {e}")
            self._cache = {}

    def _save_cache(self) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        data = {
            "version": CACHE_VERSION,
            "entries": {key: asdict(entry) for key, entry in self._cache.items()},
        }
        try:
            with open(self.cache_file, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to save index cache: {e}")

    def is_indexed(self, path: Path) -> bool:
        """True if the file is cached and unchanged since it was indexed."""
        with self._lock:
            entry = self._cache.get(normalize_path(path))
            if entry is None:
                return False

            try:
                stat = path.stat()
                if stat.st_size != entry.file_size:
                    logger.debug(f"Cache miss (size changed): {path.name}")
                    return False
                if stat.st_mtime != entry.mtime:
                    if compute_fingerprint(path) != entry.fingerprint:
                        logger.debug(f"Cache miss (content changed): {path.name}")
                        return False
                    entry.mtime = stat.st_mtime
                    self._save_cache()
                return True
            except OSError:
                return False

    def mark_indexed(self, path: Path, recording_id: str) -> None:
        with self._lock:
            try:
                stat = path.stat()
                key = normalize_path(path)
                self._cache[key] = IndexCacheEntry(
                    file_path=key,
                    file_size=stat.st_size,
                    mtime=stat.st_mtime,
                    fingerprint=compute_fingerprint(path),
                    recording_id=recording_id,
                    indexed_at=time.time(),
                )
                self._save_cache()
            except OSError as e:
                logger.warning(f"Failed to cache {path}: {e}")

    def forget(self, path: Path | str) -> None:
        with self._lock:
            if self._cache.pop(normalize_path(path), None) is not None:
                self._save_cache()

    def clear(self) -> None:
        with self._lock:
            self._cache = {}
            if self.cache_file.exists():
                self.cache_file.unlink()
            logger.info("Index cache cleared")

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "total_entries": len(self._cache),
                "cache_file": str(self.cache_file),
            }


class ReplayFileHandler(FileSystemEventHandler):
    """
    Queues .slp files once they stop growing.

    Events for the same path are coalesced: each new event pushes the
    debounce deadline back, and the file is only queued after a quiet
    period followed by a size stability check.
    """

    STABILITY_CHECKS = 3
    STABILITY_CHECK_INTERVAL = 0.3

    def __init__(
        self,
        event_queue: queue.Queue,
        min_file_size: int = 1024,
        debounce_seconds: float = 2.0,
    ):
        super().__init__()
        self.event_queue = event_queue
        self.min_file_size = min_file_size
        self.debounce_seconds = debounce_seconds
        self._pending: dict[str, float] = {}  # path -> last event time
        self._lock = threading.Lock()

    def _is_file_ready(self, path: Path) -> bool:
        """Multiple size checks over time to make sure writing has finished."""
        try:
            sizes = [path.stat().st_size]
            if sizes[0] < self.min_file_size:
                logger.debug(f"File too small ({sizes[0]} bytes): {path.name}")
                return False
            for _ in range(self.STABILITY_CHECKS):
                time.sleep(self.STABILITY_CHECK_INTERVAL)
                sizes.append(path.stat().st_size)
        except OSError as e:
            logger.debug(f"Error checking file readiness: {e}")
            return False

        if len(set(sizes)) == 1:
            return True
        logger.debug(f"File size changing ({sizes}): {path.name}")
        return False

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and is_replay_file(event.src_path):
            self._touch(str(event.src_path), "created")

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and is_replay_file(event.src_path):
            self._touch(str(event.src_path), "modified")

    def _touch(self, file_path: str, event_type: str) -> None:
        with self._lock:
            already_pending = file_path in self._pending
            self._pending[file_path] = time.time()
        if already_pending:
            return

        logger.debug(f"Replay {event_type}: {file_path}")
        threading.Thread(
            target=self._wait_and_queue, args=(file_path, event_type), daemon=True
        ).start()

    def _wait_and_queue(self, file_path: str, event_type: str) -> None:
        while True:
            time.sleep(self.debounce_seconds)
            with self._lock:
                last_event = self._pending.get(file_path)
                if last_event is None:
                    return
                if time.time() - last_event >= self.debounce_seconds:
                    del self._pending[file_path]
                    break

        path = Path(file_path)
        if self._is_file_ready(path):
            self.event_queue.put(
                ReplayFileEvent(file_path=path, event_type=event_type, timestamp=time.time())
            )
            logger.info(f"Replay ready: {path.name}")


class ReplayWatcher:
    """
    Watches replay folders and calls back for each finished replay.

    Example usage:
        watcher = ReplayWatcher([Path("~/Slippi").expanduser()])
        watcher.add_callback(lambda event: indexer.sweep([event.file_path]))
        watcher.start(blocking=True)
    """

    def __init__(
        self,
        folders: Iterable[Path | str] | None = None,
        recursive: bool = True,
        debounce_seconds: float = 2.0,
        min_file_size: int = 1024,
    ):
        if folders is None:
            folders = [get_default_replays_folder()]
        self.folders = [Path(f).expanduser() for f in folders]
        self.recursive = recursive
        self.debounce_seconds = debounce_seconds
        self.min_file_size = min_file_size

        self._event_queue: queue.Queue[ReplayFileEvent] = queue.Queue()
        self._observer: Observer | None = None
        self._callbacks: list[Callable[[ReplayFileEvent], None]] = []
        self._running = False
        self._processor_thread: threading.Thread | None = None

    def add_callback(self, callback: Callable[[ReplayFileEvent], None]) -> None:
        self._callbacks.append(callback)

    def on_new_replay(
        self, callback: Callable[[ReplayFileEvent], None]
    ) -> Callable[[ReplayFileEvent], None]:
        """
        Decorator form of add_callback.

        Example:
            @watcher.on_new_replay
            def index(event):
                indexer.sweep([event.file_path])
        """
        self._callbacks.append(callback)
        return callback

    def start(self, blocking: bool = False) -> None:
        """
        Start watching.

        Args:
            blocking: If True, blocks until stop() or KeyboardInterrupt
        """
        if self._running:
            logger.warning("Watcher is already running")
            return

        self._running = True
        handler = ReplayFileHandler(
            self._event_queue,
            min_file_size=self.min_file_size,
            debounce_seconds=self.debounce_seconds,
        )
        self._observer = Observer()
        for folder in self.folders:
            if not folder.exists():
                logger.info(f"Creating watch folder: {folder}")
                folder.mkdir(parents=True, exist_ok=True)
            self._observer.schedule(handler, str(folder), recursive=self.recursive)

        self._processor_thread = threading.Thread(target=self._process_events, daemon=True)
        self._processor_thread.start()
        self._observer.start()
        logger.info(f"Watching for replays in: {', '.join(str(f) for f in self.folders)}")

        if blocking:
            try:
                while self._running:
                    time.sleep(1)
            except KeyboardInterrupt:
                self.stop()

    def stop(self) -> None:
        self._running = False
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        logger.info("Replay watcher stopped")

    def _process_events(self) -> None:
        while self._running:
            try:
                event = self._event_queue.get(timeout=1)
            except queue.Empty:
                continue

            for callback in self._callbacks:
                try:
                    callback(event)
                except Exception as e:
                    logger.error(f"Error in replay callback for {event.filename}: {e}")

    @property
    def is_running(self) -> bool:
        return self._running


def watch_replays(
    folders: Iterable[Path | str] | None = None,
    callback: Callable[[ReplayFileEvent], None] | None = None,
    blocking: bool = True,
) -> ReplayWatcher:
    """
    Start watching for replays.

    Args:
        folders: Folders to watch (defaults to the Slippi replay folder)
        callback: Called for each finished replay
        blocking: If True, blocks until interrupted

    Returns:
        The ReplayWatcher instance
    """
    watcher = ReplayWatcher(folders)
    if callback:
        watcher.add_callback(callback)
    watcher.start(blocking=blocking)
    return watcher
