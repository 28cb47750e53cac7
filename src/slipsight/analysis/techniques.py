"""
Technique and input counting.

Counters are driven by action state transitions on the post-frame table
and by controller state on the pre-frame table.
"""

from dataclasses import dataclass, fields

from slipsight.core.config import StatsConfig
from slipsight.core.constants import (
    L_CANCEL_FAIL,
    L_CANCEL_SUCCESS,
    State,
    is_grabbing,
    is_ground_tech,
    is_missed_tech,
    is_rolling,
    is_throwing,
    is_wall_tech,
)
from slipsight.core.decoder import PostFrame, PreFrame

# Physical button bits that count as inputs (d-pad, A/B/X/Y/Z, L/R, start)
BUTTON_MASK = 0xFFF


@dataclass
class TechniqueCounts:
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

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def count_techniques(frames: list[PostFrame], config: StatsConfig | None = None) -> TechniqueCounts:
    """Count technique entries for one player's post-frames."""
    config = config or StatsConfig()
    counts = TechniqueCounts()

    prev: PostFrame | None = None
    last_knee_bend: int | None = None
    last_dash: int | None = None
    # Distinct action states in order, newest last
    history: list[int] = []

    for cur in frames:
        state = cur.action_state

        if cur.l_cancel_status and (prev is None or prev.l_cancel_status != cur.l_cancel_status):
            if cur.l_cancel_status == L_CANCEL_SUCCESS:
                counts.l_cancel_success_count += 1
            elif cur.l_cancel_status == L_CANCEL_FAIL:
                counts.l_cancel_fail_count += 1

        if prev is not None and state == prev.action_state:
            prev = cur
            continue

        prev_state = prev.action_state if prev is not None else None

        if state == State.KNEE_BEND:
            last_knee_bend = cur.frame
        elif state == State.AIR_DODGE:
            counts.airdodge_count += 1
        elif state == State.LANDING_FALL_SPECIAL and prev_state == State.AIR_DODGE:
            # The air dodge belonged to the wavedash/waveland
            counts.airdodge_count -= 1
            if (
                last_knee_bend is not None
                and cur.frame - last_knee_bend <= config.wavedash_window_frames
            ):
                counts.wavedash_count += 1
            else:
                counts.waveland_count += 1
        elif state == State.SPOT_DODGE:
            counts.spotdodge_count += 1
        elif state == State.CLIFF_CATCH:
            counts.ledgegrab_count += 1
        elif is_rolling(state):
            counts.roll_count += 1
        elif is_grabbing(state):
            counts.grab_count += 1
        elif is_throwing(state):
            counts.throw_count += 1
        elif is_ground_tech(state):
            counts.ground_tech_count += 1
        elif is_wall_tech(state):
            counts.wall_tech_count += 1
        elif is_missed_tech(state):
            counts.missed_tech_count += 1
        elif state == State.DASH:
            if (
                history[-2:] == [State.DASH, State.TURN]
                and last_dash is not None
                and cur.frame - last_dash <= config.dashdance_window_frames
            ):
                counts.dashdance_count += 1
            last_dash = cur.frame

        history.append(state)
        if len(history) > 3:
            history.pop(0)
        prev = cur

    return counts


def _stick_region(x: float, y: float, threshold: float) -> int:
    """0 for the deadzone, otherwise one of eight directions."""
    dx = 0 if abs(x) <= threshold else (1 if x > 0 else -1)
    dy = 0 if abs(y) <= threshold else (1 if y > 0 else -1)
    if dx == 0 and dy == 0:
        return 0
    return (dx + 1) * 3 + (dy + 1) + 1


def count_inputs(frames: list[PreFrame], config: StatsConfig | None = None) -> int:
    """Button presses plus stick and trigger movements out of the deadzone."""
    config = config or StatsConfig()
    total = 0
    prev: PreFrame | None = None

    for cur in frames:
        if prev is None:
            prev = cur
            continue

        pressed = cur.physical_buttons & ~prev.physical_buttons & BUTTON_MASK
        total += bin(pressed).count("1")

        for axes in (("joystick_x", "joystick_y"), ("cstick_x", "cstick_y")):
            before = _stick_region(
                getattr(prev, axes[0]), getattr(prev, axes[1]), config.stick_threshold
            )
            after = _stick_region(
                getattr(cur, axes[0]), getattr(cur, axes[1]), config.stick_threshold
            )
            if after != before and after != 0:
                total += 1

        if prev.trigger < config.trigger_threshold <= cur.trigger:
            total += 1

        prev = cur

    return total
