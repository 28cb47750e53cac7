"""
Slippi Replay Decoder

Decodes .slp replay files into game settings, per-player frame tables
and the terminal game-end marker.

A replay is a UBJSON document with two keys: ``raw``, a byte array holding
the event stream, and ``metadata``. The event stream starts with an
Event Payloads command that declares the payload size of every other
command; everything after it is a flat sequence of ``<command><payload>``.

Decoding is all-or-nothing: any structural problem raises DecodeError and
nothing partial is returned.
"""

import logging
import struct
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import ubjson

from slipsight.core.constants import (
    DEFAULT_START_STOCKS,
    FIRST_PLAYABLE_FRAME,
    METADATA_KEY,
    RAW_HEADER,
    Command,
    PlayerType,
    game_end_method_name,
)
from slipsight.core.errors import DecodeError

logger = logging.getLogger(__name__)

# Header bytes plus the int32 raw length
RAW_START = len(RAW_HEADER) + 4

MAX_PORTS = 4


# =============================================================================
# Decoded structures
# =============================================================================


@dataclass
class PlayerSettings:
    """One occupied port from the game start event."""

    index: int
    character_id: int
    character_color: int
    player_type: int
    start_stocks: int = DEFAULT_START_STOCKS
    team_id: int | None = None
    display_name: str = ""
    connect_code: str = ""

    @property
    def port(self) -> int:
        return self.index + 1

    @property
    def tag(self) -> str:
        """Connect code, else display name, else the port label."""
        return self.connect_code or self.display_name or f"P{self.port}"


@dataclass
class GameSettings:
    """Top-level settings from the game start event."""

    version: tuple[int, int, int]
    stage_id: int
    is_teams: bool
    players: dict[int, PlayerSettings]
    is_pal: bool | None = None
    match_id: str | None = None
    game_number: int | None = None
    tiebreaker_number: int | None = None

    @property
    def version_string(self) -> str:
        return ".".join(str(v) for v in self.version)


@dataclass
class PreFrame:
    """Controller state for one player on one frame."""

    frame: int
    player_index: int
    action_state: int
    joystick_x: float
    joystick_y: float
    cstick_x: float
    cstick_y: float
    trigger: float
    buttons: int
    physical_buttons: int
    percent: float | None = None


@dataclass
class PostFrame:
    """Character state for one player after a frame is simulated."""

    frame: int
    player_index: int
    character_id: int
    action_state: int
    x: float
    y: float
    facing: float
    percent: float
    shield_size: float
    last_attack_landed: int
    combo_count: int
    last_hit_by: int
    stocks_remaining: int
    action_frame: float | None = None
    hitstun_remaining: float | None = None
    is_airborne: bool | None = None
    l_cancel_status: int = 0


@dataclass
class Placement:
    player_index: int
    position: int


@dataclass
class GameEnd:
    """Terminal marker: how the game ended and who placed where."""

    method: int
    lras_initiator: int | None = None
    placements: list[Placement] = field(default_factory=list)

    @property
    def method_name(self) -> str | None:
        return game_end_method_name(self.method)


@dataclass
class ReplayMetadata:
    """Fields from the trailing UBJSON metadata block."""

    start_at: str | None = None
    played_on: str | None = None
    last_frame: int | None = None
    netplay_names: dict[int, str] = field(default_factory=dict)
    netplay_codes: dict[int, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplayMetadata":
        names: dict[int, str] = {}
        codes: dict[int, str] = {}
        for key, info in (data.get("players") or {}).items():
            try:
                index = int(key)
            except (TypeError, ValueError):
                continue
            player_names = (info or {}).get("names") or {}
            if player_names.get("netplay"):
                names[index] = str(player_names["netplay"])
            if player_names.get("code"):
                codes[index] = str(player_names["code"])

        last_frame = data.get("lastFrame")
        return cls(
            start_at=data.get("startAt"),
            played_on=data.get("playedOn"),
            last_frame=int(last_frame) if last_frame is not None else None,
            netplay_names=names,
            netplay_codes=codes,
        )


@dataclass
class DecodedReplay:
    """Everything the stat pipeline needs from one replay."""

    settings: GameSettings
    pre_frames: dict[int, list[PreFrame]]
    post_frames: dict[int, list[PostFrame]]
    game_end: GameEnd | None
    metadata: ReplayMetadata
    # Declared raw length 0: Slippi had not finished writing the file
    in_progress: bool = False

    @property
    def player_indices(self) -> list[int]:
        return sorted(self.settings.players)

    @property
    def last_frame(self) -> int:
        """Last simulated frame, from the frame tables or metadata."""
        frames = [f[-1].frame for f in self.post_frames.values() if f]
        if frames:
            return max(frames)
        if self.metadata.last_frame is not None:
            return self.metadata.last_frame
        return FIRST_PLAYABLE_FRAME - 1

    @property
    def total_frames(self) -> int:
        """Number of frames including the countdown."""
        return max(self.last_frame - FIRST_PLAYABLE_FRAME + 1, 0)

    @property
    def duration_frames(self) -> int:
        if self.metadata.last_frame is not None:
            return self.metadata.last_frame
        return max(self.last_frame, 0)

    def opponents_of(self, player_index: int) -> list[int]:
        return [i for i in self.player_indices if i != player_index]


# =============================================================================
# Decoder
# =============================================================================


def _read(fmt: str, buf: bytes, offset: int, default: Any = None) -> Any:
    """Unpack a single big-endian value, or default if the payload is too short."""
    size = struct.calcsize(fmt)
    if offset + size > len(buf):
        return default
    return struct.unpack_from(fmt, buf, offset)[0]


def _read_string(buf: bytes, offset: int, length: int) -> str:
    chunk = buf[offset : offset + length]
    if not chunk:
        return ""
    chunk = chunk.split(b"\x00", 1)[0]
    text = chunk.decode("shift_jis", errors="replace")
    # Connect codes use a fullwidth hash sign
    return unicodedata.normalize("NFKC", text).strip()


class ReplayDecoder:
    """
    Decodes a single replay.

    Example usage:
        replay = ReplayDecoder().decode(Path("Game_20240101T120000.slp").read_bytes())
        print(replay.settings.stage_id, replay.game_end.method_name)
    """

    def decode(self, data: bytes) -> DecodedReplay:
        raw, metadata, in_progress = self._split_container(data)
        sizes, pos = self._read_payload_sizes(raw)

        settings: GameSettings | None = None
        game_end: GameEnd | None = None
        pre: dict[int, dict[int, PreFrame]] = {}
        post: dict[int, dict[int, PostFrame]] = {}

        while pos < len(raw):
            command = raw[pos]
            if command not in sizes:
                raise DecodeError(f"Unknown command 0x{command:02x}", pos)
            end = pos + 1 + sizes[command]
            if end > len(raw):
                raise DecodeError(f"Truncated event 0x{command:02x}", pos)
            payload = raw[pos:end]

            try:
                if command == Command.GAME_START:
                    if settings is None:
                        settings = self._parse_game_start(payload)
                elif command == Command.PRE_FRAME_UPDATE:
                    frame = self._parse_pre_frame(payload, settings, pos)
                    if frame is not None:
                        # Rollback replays resend frames; the last copy wins
                        pre.setdefault(frame.player_index, {})[frame.frame] = frame
                elif command == Command.POST_FRAME_UPDATE:
                    frame = self._parse_post_frame(payload, settings, pos)
                    if frame is not None:
                        post.setdefault(frame.player_index, {})[frame.frame] = frame
                elif command == Command.GAME_END:
                    game_end = self._parse_game_end(payload)
            except struct.error as e:
                raise DecodeError(f"Malformed event 0x{command:02x}: {e}", pos) from e

            pos = end

        if settings is None:
            raise DecodeError("Replay has no game start event")

        self._fill_names(settings, metadata)

        return DecodedReplay(
            settings=settings,
            pre_frames={
                i: [frames[k] for k in sorted(frames)] for i, frames in sorted(pre.items())
            },
            post_frames={
                i: [frames[k] for k in sorted(frames)] for i, frames in sorted(post.items())
            },
            game_end=game_end,
            metadata=metadata,
            in_progress=in_progress,
        )

    def decode_file(self, path: Path | str) -> DecodedReplay:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Replay file not found: {path}")
        return self.decode(path.read_bytes())

    # -------------------------------------------------------------------------
    # Container
    # -------------------------------------------------------------------------

    def _split_container(self, data: bytes) -> tuple[bytes, ReplayMetadata, bool]:
        if not data.startswith(RAW_HEADER):
            raise DecodeError("Unrecognized replay header", 0)
        if len(data) < RAW_START:
            raise DecodeError("Replay truncated inside header", len(data))

        raw_length = struct.unpack_from(">i", data, len(RAW_HEADER))[0]
        if raw_length < 0:
            raise DecodeError(f"Negative raw length {raw_length}", len(RAW_HEADER))

        if raw_length == 0:
            # Still being written: the stream runs up to the metadata, if any
            meta_at = data.rfind(METADATA_KEY, RAW_START)
            raw_end = meta_at if meta_at != -1 else len(data)
        else:
            raw_end = RAW_START + raw_length
            if raw_end > len(data):
                raise DecodeError(
                    f"Replay truncated: raw block declares {raw_length} bytes, "
                    f"{len(data) - RAW_START} present",
                    len(data),
                )

        return data[RAW_START:raw_end], self._parse_metadata(data[raw_end:]), raw_length == 0

    def _parse_metadata(self, tail: bytes) -> ReplayMetadata:
        if not tail.startswith(METADATA_KEY):
            return ReplayMetadata()
        try:
            document = ubjson.loadb(b"{" + tail)
        except (ubjson.DecoderException, ValueError) as e:
            raise DecodeError(f"Invalid metadata block: {e}") from e
        metadata = document.get("metadata") if isinstance(document, dict) else None
        if not isinstance(metadata, dict):
            raise DecodeError("Metadata block is not an object")
        return ReplayMetadata.from_dict(metadata)

    def _read_payload_sizes(self, raw: bytes) -> tuple[dict[int, int], int]:
        if not raw or raw[0] != Command.EVENT_PAYLOADS:
            raise DecodeError("Event stream does not start with payload sizes", RAW_START)
        if len(raw) < 2:
            raise DecodeError("Truncated payload sizes event", RAW_START)

        info_size = raw[1]
        end = 1 + info_size
        if end > len(raw) or (info_size - 1) % 3 != 0:
            raise DecodeError("Malformed payload sizes event", RAW_START)

        sizes = {Command.EVENT_PAYLOADS: info_size}
        for offset in range(2, end, 3):
            command = raw[offset]
            sizes[command] = struct.unpack_from(">H", raw, offset + 1)[0]
        return sizes, end

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def _parse_game_start(self, buf: bytes) -> GameSettings:
        if len(buf) < 0x65 + 0x24 * MAX_PORTS:
            raise DecodeError("Game start event too short for player table")

        version = (buf[1], buf[2], buf[3])
        players: dict[int, PlayerSettings] = {}
        for i in range(MAX_PORTS):
            base = 0x65 + 0x24 * i
            player_type = buf[base + 1]
            if player_type == PlayerType.EMPTY:
                continue
            players[i] = PlayerSettings(
                index=i,
                character_id=buf[base],
                character_color=buf[base + 3],
                player_type=player_type,
                start_stocks=buf[base + 2],
                team_id=buf[base + 9],
                display_name=_read_string(buf, 0x1A5 + 0x1F * i, 0x1F),
                connect_code=_read_string(buf, 0x221 + 0xA * i, 0xA),
            )

        if not players:
            raise DecodeError("Game start lists no players")

        pal = _read(">B", buf, 0x1A1)
        match_id = _read_string(buf, 0x2BE, 51) or None
        game_number = _read(">I", buf, 0x2F1) or None
        tiebreaker = _read(">I", buf, 0x2F5) or None

        return GameSettings(
            version=version,
            stage_id=_read(">H", buf, 0x13),
            is_teams=bool(buf[0xD]),
            players=players,
            is_pal=bool(pal) if pal is not None else None,
            match_id=match_id,
            game_number=game_number,
            tiebreaker_number=tiebreaker,
        )

    def _check_player(self, settings: GameSettings | None, index: int, pos: int) -> None:
        if settings is None:
            raise DecodeError("Frame event before game start", pos)
        if index not in settings.players:
            raise DecodeError(f"Frame references player {index} absent from settings", pos)

    def _parse_pre_frame(
        self, buf: bytes, settings: GameSettings | None, pos: int
    ) -> PreFrame | None:
        frame, index, is_follower = struct.unpack_from(">iBB", buf, 1)
        self._check_player(settings, index, pos)
        if is_follower:
            return None

        jx, jy, cx, cy, trigger = struct.unpack_from(">fffff", buf, 0x19)
        return PreFrame(
            frame=frame,
            player_index=index,
            action_state=_read(">H", buf, 0xB, 0),
            joystick_x=jx,
            joystick_y=jy,
            cstick_x=cx,
            cstick_y=cy,
            trigger=trigger,
            buttons=_read(">I", buf, 0x2D, 0),
            physical_buttons=_read(">H", buf, 0x31, 0),
            percent=_read(">f", buf, 0x3C),
        )

    def _parse_post_frame(
        self, buf: bytes, settings: GameSettings | None, pos: int
    ) -> PostFrame | None:
        frame, index, is_follower, character, state = struct.unpack_from(">iBBBH", buf, 1)
        self._check_player(settings, index, pos)
        if is_follower:
            return None

        x, y, facing, percent, shield = struct.unpack_from(">fffff", buf, 0xA)
        last_attack, combo, last_hit_by, stocks = struct.unpack_from(">BBBB", buf, 0x1E)
        airborne = _read(">B", buf, 0x2F)

        return PostFrame(
            frame=frame,
            player_index=index,
            character_id=character,
            action_state=state,
            x=x,
            y=y,
            facing=facing,
            percent=percent,
            shield_size=shield,
            last_attack_landed=last_attack,
            combo_count=combo,
            last_hit_by=last_hit_by,
            stocks_remaining=stocks,
            action_frame=_read(">f", buf, 0x22),
            hitstun_remaining=_read(">f", buf, 0x2B),
            is_airborne=bool(airborne) if airborne is not None else None,
            l_cancel_status=_read(">B", buf, 0x33, 0),
        )

    def _parse_game_end(self, buf: bytes) -> GameEnd:
        lras = _read(">b", buf, 0x2)
        placements = []
        for i in range(MAX_PORTS):
            position = _read(">b", buf, 0x3 + i)
            if position is not None and position >= 0:
                placements.append(Placement(player_index=i, position=position))

        return GameEnd(
            method=_read(">B", buf, 0x1, 0),
            lras_initiator=lras if lras is not None and lras >= 0 else None,
            placements=placements,
        )

    def _fill_names(self, settings: GameSettings, metadata: ReplayMetadata) -> None:
        """Older replays only carry netplay names in the metadata block."""
        for index, player in settings.players.items():
            if not player.display_name and index in metadata.netplay_names:
                player.display_name = metadata.netplay_names[index]
            if not player.connect_code and index in metadata.netplay_codes:
                player.connect_code = metadata.netplay_codes[index]


def decode_replay(data: bytes) -> DecodedReplay:
    """Decode replay bytes. Raises DecodeError on malformed input."""
    return ReplayDecoder().decode(data)


def decode_replay_file(path: Path | str) -> DecodedReplay:
    """Decode a replay from disk."""
    replay = ReplayDecoder().decode_file(path)
    logger.debug(
        f"Decoded {Path(path).name}: stage {replay.settings.stage_id}, "
        f"{len(replay.settings.players)} players, {replay.total_frames} frames"
    )
    return replay
