"""
Synthetic .slp replay bytes for tests.

Builds the UBJSON container and an event stream with just enough of each
event filled in for the decoder: game start, pre/post frame updates and
game end.
"""

import struct
from pathlib import Path

import ubjson

from slipsight.core.constants import RAW_HEADER, Command, State

GAME_START_SIZE = 0x2FC
PRE_FRAME_SIZE = 0x3F
POST_FRAME_SIZE = 0x48
GAME_END_SIZE = 0x6

NO_ATTACKER = 6


class ReplayBuilder:
    """
    Collects events and serializes them into replay bytes.

    Example:
        builder = ReplayBuilder()
        builder.post(100, 1, percent=14.0, last_hit_by=0)
        data = builder.build()
    """

    def __init__(
        self,
        characters: dict[int, int] | None = None,
        stage_id: int = 31,
        start_stocks: int = 4,
        is_pal: bool = False,
        names: dict[int, str] | None = None,
        codes: dict[int, str] | None = None,
        match_id: str = "",
        game_number: int = 0,
        tiebreaker_number: int = 0,
        version: tuple[int, int, int] = (3, 16, 0),
    ):
        self.characters = characters if characters is not None else {0: 2, 1: 20}
        self.stage_id = stage_id
        self.start_stocks = start_stocks
        self.is_pal = is_pal
        self.names = names or {}
        self.codes = codes or {}
        self.match_id = match_id
        self.game_number = game_number
        self.tiebreaker_number = tiebreaker_number
        self.version = version
        self.events: list[bytes] = []

    # -- events --------------------------------------------------------------

    def game_start(self) -> bytes:
        buf = bytearray(GAME_START_SIZE + 1)
        buf[0] = Command.GAME_START
        buf[1:4] = bytes(self.version)
        struct.pack_into(">H", buf, 0x13, self.stage_id)
        for i in range(4):
            base = 0x65 + 0x24 * i
            if i in self.characters:
                buf[base] = self.characters[i]
                buf[base + 1] = 0
                buf[base + 2] = self.start_stocks
                buf[base + 3] = i
            else:
                buf[base + 1] = 3
            if i in self.names:
                encoded = self.names[i].encode("shift_jis")[:0x1F]
                buf[0x1A5 + 0x1F * i : 0x1A5 + 0x1F * i + len(encoded)] = encoded
            if i in self.codes:
                encoded = self.codes[i].encode("shift_jis")[:0xA]
                buf[0x221 + 0xA * i : 0x221 + 0xA * i + len(encoded)] = encoded
        buf[0x1A1] = 1 if self.is_pal else 0
        match_id = self.match_id.encode("ascii")[:51]
        buf[0x2BE : 0x2BE + len(match_id)] = match_id
        struct.pack_into(">I", buf, 0x2F1, self.game_number)
        struct.pack_into(">I", buf, 0x2F5, self.tiebreaker_number)
        return bytes(buf)

    def pre(
        self,
        frame: int,
        index: int,
        state: int = State.WAIT,
        joystick: tuple[float, float] = (0.0, 0.0),
        cstick: tuple[float, float] = (0.0, 0.0),
        trigger: float = 0.0,
        buttons: int = 0,
        physical_buttons: int = 0,
        percent: float = 0.0,
        follower: bool = False,
    ) -> "ReplayBuilder":
        buf = bytearray(PRE_FRAME_SIZE + 1)
        buf[0] = Command.PRE_FRAME_UPDATE
        struct.pack_into(">iBB", buf, 1, frame, index, 1 if follower else 0)
        struct.pack_into(">H", buf, 0xB, state)
        struct.pack_into(">fffff", buf, 0x19, *joystick, *cstick, trigger)
        struct.pack_into(">I", buf, 0x2D, buttons)
        struct.pack_into(">H", buf, 0x31, physical_buttons)
        struct.pack_into(">f", buf, 0x3C, percent)
        self.events.append(bytes(buf))
        return self

    def post(
        self,
        frame: int,
        index: int,
        state: int = State.WAIT,
        percent: float = 0.0,
        last_hit_by: int = NO_ATTACKER,
        stocks: int = 4,
        l_cancel: int = 0,
        x: float = 0.0,
        y: float = 0.0,
        follower: bool = False,
    ) -> "ReplayBuilder":
        buf = bytearray(POST_FRAME_SIZE + 1)
        buf[0] = Command.POST_FRAME_UPDATE
        character = self.characters.get(index, 0)
        struct.pack_into(">iBBBH", buf, 1, frame, index, 1 if follower else 0, character, state)
        struct.pack_into(">fffff", buf, 0xA, x, y, 1.0, percent, 60.0)
        struct.pack_into(">BBBB", buf, 0x1E, 0, 0, last_hit_by, stocks)
        struct.pack_into(">f", buf, 0x22, 1.0)
        struct.pack_into(">f", buf, 0x2B, 0.0)
        buf[0x2F] = 0
        buf[0x33] = l_cancel
        self.events.append(bytes(buf))
        return self

    def game_end(
        self,
        method: int = 2,
        lras_initiator: int = -1,
        placements: tuple[int, int, int, int] = (-1, -1, -1, -1),
    ) -> "ReplayBuilder":
        buf = bytearray(GAME_END_SIZE + 1)
        buf[0] = Command.GAME_END
        buf[1] = method
        struct.pack_into(">b", buf, 2, lras_initiator)
        struct.pack_into(">bbbb", buf, 3, *placements)
        self.events.append(bytes(buf))
        return self

    # -- serialization -------------------------------------------------------

    def raw(self, include_game_start: bool = True) -> bytes:
        sizes = [
            (Command.GAME_START, GAME_START_SIZE),
            (Command.PRE_FRAME_UPDATE, PRE_FRAME_SIZE),
            (Command.POST_FRAME_UPDATE, POST_FRAME_SIZE),
            (Command.GAME_END, GAME_END_SIZE),
        ]
        header = bytearray([Command.EVENT_PAYLOADS, 1 + 3 * len(sizes)])
        for command, size in sizes:
            header += struct.pack(">BH", command, size)

        body = bytearray(header)
        if include_game_start:
            body += self.game_start()
        for event in self.events:
            body += event
        return bytes(body)

    def build(
        self,
        metadata: dict | None = None,
        include_game_start: bool = True,
        declared_length: int | None = None,
    ) -> bytes:
        raw = self.raw(include_game_start)
        if metadata is None:
            metadata = default_metadata()
        length = len(raw) if declared_length is None else declared_length
        # Drop the leading "{" so the metadata key follows the raw block
        tail = ubjson.dumpb({"metadata": metadata})[1:]
        return RAW_HEADER + struct.pack(">i", length) + raw + tail

    def write(self, path: Path, **kwargs) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.build(**kwargs))
        return path


def default_metadata(last_frame: int = 200) -> dict:
    return {
        "startAt": "2024-01-01T12:00:00Z",
        "lastFrame": last_frame,
        "playedOn": "dolphin",
        "players": {
            "0": {"names": {"netplay": "Alice", "code": "ALI#1"}},
            "1": {"names": {"netplay": "Bob", "code": "BOB#2"}},
        },
    }


def idle(builder: ReplayBuilder, start: int, end: int, index: int, **fields) -> None:
    """Post-frames for every frame in [start, end] with the same fields."""
    for frame in range(start, end + 1):
        builder.post(frame, index, **fields)


def combo_replay(with_kill: bool = True) -> ReplayBuilder:
    """
    Player 0 hits player 1 three times on frames 100, 115 and 130,
    taking them from 0% to 42%. With ``with_kill`` player 1 then enters
    the death animation on frame 150 and respawns at 0%.
    """
    builder = ReplayBuilder()
    for frame in range(90, 201):
        builder.post(frame, 0)

        if frame < 100:
            percent, hit_by = 0.0, NO_ATTACKER
        elif frame < 115:
            percent, hit_by = 14.0, 0
        elif frame < 130:
            percent, hit_by = 28.0, 0
        else:
            percent, hit_by = 42.0, 0

        state = State.WAIT
        stocks = 4
        if with_kill and 150 <= frame < 160:
            state, stocks = State.DYING_START, 3
        elif with_kill and frame >= 160:
            percent, stocks = 0.0, 3
        if 100 <= frame < 140:
            state = State.DAMAGE_START
        builder.post(frame, 1, state=state, percent=percent, last_hit_by=hit_by, stocks=stocks)
    return builder
