"""Exception types shared across SlipSight."""


class SlipSightError(Exception):
    """Base class for SlipSight errors."""


class DecodeError(SlipSightError):
    """Replay bytes are malformed, truncated or internally inconsistent."""

    def __init__(self, message: str, offset: int | None = None):
        self.offset = offset
        if offset is not None:
            message = f"{message} (at byte {offset})"
        super().__init__(message)


class ResolutionError(SlipSightError):
    """The replay file for a recording could not be located."""

    def __init__(self, video_path: str, replay_hint: str | None = None):
        self.video_path = video_path
        self.replay_hint = replay_hint
        hint = f", hint {replay_hint}" if replay_hint else ""
        super().__init__(f"No replay found for {video_path}{hint}")


class PersistenceError(SlipSightError):
    """A store operation kept failing after bounded retries."""

    def __init__(self, recording_id: str, attempts: int, cause: BaseException | None = None):
        self.recording_id = recording_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Failed to persist {recording_id} after {attempts} attempts: {cause}"
        )
