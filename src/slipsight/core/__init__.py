"""
SlipSight Core - Foundation modules for replay decoding.

This module contains the fundamental components:
- constants: Event commands, action states and enums
- config: Application configuration management
- decoder: .slp container and event stream decoding
- errors: Exception types shared across the package
- paths: Path normalization and path-derived recording ids
"""

from slipsight.core.decoder import DecodedReplay, ReplayDecoder, decode_replay, decode_replay_file
from slipsight.core.errors import DecodeError, PersistenceError, ResolutionError, SlipSightError

__all__ = [
    "DecodedReplay",
    "ReplayDecoder",
    "decode_replay",
    "decode_replay_file",
    "DecodeError",
    "PersistenceError",
    "ResolutionError",
    "SlipSightError",
]
