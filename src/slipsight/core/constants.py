"""
SlipSight Replay Constants

Event command bytes, action state ids and game-end codes used when
decoding and scoring .slp replays.
"""

from enum import IntEnum, StrEnum


class Command(IntEnum):
    """Event stream command bytes."""

    MESSAGE_SPLITTER = 0x10
    EVENT_PAYLOADS = 0x35
    GAME_START = 0x36
    PRE_FRAME_UPDATE = 0x37
    POST_FRAME_UPDATE = 0x38
    GAME_END = 0x39
    FRAME_START = 0x3A
    ITEM_UPDATE = 0x3B
    FRAME_BOOKEND = 0x3C
    GECKO_LIST = 0x3D


class PlayerType(IntEnum):
    HUMAN = 0
    CPU = 1
    DEMO = 2
    EMPTY = 3


class GameEndMethod(IntEnum):
    UNRESOLVED = 0
    TIME = 1
    GAME = 2
    RESOLVED = 3
    NO_CONTEST = 7


class OpeningType(StrEnum):
    """How a conversion started."""

    NEUTRAL = "Neutral"
    COUNTER = "Counter"
    TRADE = "Trade"
    UNKNOWN = "Unknown"


def game_end_method_name(code: int | None) -> str | None:
    """Stable string for a game-end method code."""
    if code is None:
        return None
    try:
        return GameEndMethod(code).name
    except ValueError:
        return f"UNKNOWN_{code}"


# Frame index of the first playable frame; frames before it are the countdown
FIRST_PLAYABLE_FRAME = -123
FRAMES_PER_SECOND = 60
DEFAULT_START_STOCKS = 4

# Raw UBJSON container markers
RAW_HEADER = b"{U\x03raw[$U#l"
METADATA_KEY = b"U\x08metadata"

# L-cancel status byte on the post-frame update
L_CANCEL_SUCCESS = 1
L_CANCEL_FAIL = 2


class State(IntEnum):
    """Action state ids (common to every character)."""

    DYING_START = 0x000
    DYING_END = 0x00A
    WAIT = 0x00E
    TURN = 0x012
    DASH = 0x014
    KNEE_BEND = 0x018
    CONTROLLED_JUMP_START = 0x018
    CONTROLLED_JUMP_END = 0x022
    GROUND_ATTACK_START = 0x02C
    GROUND_ATTACK_END = 0x040
    AERIAL_ATTACK_START = 0x041
    AERIAL_ATTACK_END = 0x045
    LANDING_FALL_SPECIAL = 0x02B
    DAMAGE_START = 0x04B
    DAMAGE_END = 0x05B
    DAMAGE_FALL = 0x026
    GUARD_START = 0x0B2
    GUARD_END = 0x0B6
    TECH_MISS_UP = 0x0B7
    JAB_RESET_UP = 0x0B9
    TECH_MISS_DOWN = 0x0BF
    JAB_RESET_DOWN = 0x0C1
    NEUTRAL_TECH = 0x0C7
    FORWARD_TECH = 0x0C8
    BACKWARD_TECH = 0x0C9
    WALL_TECH = 0x0CA
    WALL_TECH_JUMP = 0x0CB
    CEILING_TECH = 0x0CC
    GRAB = 0x0D4
    DASH_GRAB = 0x0D6
    GRAB_WAIT = 0x0D8
    THROW_FORWARD = 0x0DB
    THROW_BACK = 0x0DC
    THROW_UP = 0x0DD
    THROW_DOWN = 0x0DE
    CAPTURE_START = 0x0DF
    CAPTURE_END = 0x0E8
    ROLL_FORWARD = 0x0E9
    ROLL_BACKWARD = 0x0EA
    SPOT_DODGE = 0x0EB
    AIR_DODGE = 0x0EC
    MISSED_WALL_TECH = 0x0F7
    CLIFF_CATCH = 0x0FC
    COMMAND_GRAB_RANGE1_START = 0x10A
    COMMAND_GRAB_RANGE1_END = 0x130
    COMMAND_GRAB_RANGE2_START = 0x147
    COMMAND_GRAB_RANGE2_END = 0x152
    SPECIAL_START = 0x155


def is_dead(state: int) -> bool:
    return State.DYING_START <= state <= State.DYING_END


def is_damaged(state: int) -> bool:
    """Hitstun, tumble or being held by an opponent."""
    return (
        State.DAMAGE_START <= state <= State.DAMAGE_END
        or state == State.DAMAGE_FALL
        or State.CAPTURE_START <= state <= State.CAPTURE_END
        or State.COMMAND_GRAB_RANGE1_START <= state <= State.COMMAND_GRAB_RANGE1_END
        or State.COMMAND_GRAB_RANGE2_START <= state <= State.COMMAND_GRAB_RANGE2_END
    )


def is_shielding(state: int) -> bool:
    return State.GUARD_START <= state <= State.GUARD_END


def is_attacking(state: int) -> bool:
    """Normal attacks, aerials, grabs and character specials."""
    return (
        State.GROUND_ATTACK_START <= state <= State.AERIAL_ATTACK_END
        or state in (State.GRAB, State.DASH_GRAB)
        or state >= State.SPECIAL_START
    )


def is_grabbing(state: int) -> bool:
    return state in (State.GRAB, State.DASH_GRAB)


def is_throwing(state: int) -> bool:
    return State.THROW_FORWARD <= state <= State.THROW_DOWN


def is_rolling(state: int) -> bool:
    return state in (State.ROLL_FORWARD, State.ROLL_BACKWARD)


def is_ground_tech(state: int) -> bool:
    return State.NEUTRAL_TECH <= state <= State.BACKWARD_TECH


def is_wall_tech(state: int) -> bool:
    return state in (State.WALL_TECH, State.WALL_TECH_JUMP, State.CEILING_TECH)


def is_missed_tech(state: int) -> bool:
    return state in (
        State.TECH_MISS_UP,
        State.TECH_MISS_DOWN,
        State.MISSED_WALL_TECH,
    )
